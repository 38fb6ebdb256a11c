# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Single-slot cache for image encoder outputs.

Encoding is the expensive half of SAM; the cache keeps the last image's
encoder tensors together with the original image size they came from, so
every later prompt only pays for the decoder. There is exactly one slot:
storing a new encoding replaces the old one wholesale.

Not thread-safe. The owning session serializes access.
"""

import logging
from typing import NamedTuple, Optional

from samsession.modeling.tensors import EncoderOutputs


class CachedEncoding(NamedTuple):
    outputs: EncoderOutputs
    original_width: int
    original_height: int


class EncoderCache:
    """Holds at most one CachedEncoding."""

    def __init__(self) -> None:
        self._entry: Optional[CachedEncoding] = None
        self.store_count = 0

    def store(self, outputs: EncoderOutputs, original_width: int, original_height: int) -> None:
        """Replace any cached encoding with ``outputs``."""
        self._entry = CachedEncoding(outputs, int(original_width), int(original_height))
        self.store_count += 1
        logging.info(f"Cached encoder outputs for {original_width}x{original_height} image")

    def get(self) -> Optional[CachedEncoding]:
        """Return the cached encoding, or None when empty."""
        return self._entry

    def clear(self) -> None:
        if self._entry is not None:
            logging.info("Cleared cached encoder outputs")
        self._entry = None

    @property
    def is_empty(self) -> bool:
        return self._entry is None
