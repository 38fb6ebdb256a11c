# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Error types raised by the segmentation session engine.

Errors fall into two families so callers can tell a wrong call order apart
from a failing model:

- SessionUsageError: the caller did something the session does not allow
  (non-positive image size, prompting before an image is encoded, decoding
  with no points, running before the models are loaded).
- InferenceError: the backend failed or returned something the engine cannot
  interpret.

Backend exceptions are always chained, so the original traceback survives.
"""


class SegmentationError(RuntimeError):
    """Root of every error raised by samsession."""


class SessionUsageError(SegmentationError):
    """The session was called with bad arguments or in the wrong state."""


class InferenceError(SegmentationError):
    """The inference backend failed or produced unusable output."""


class InvalidDimensions(SessionUsageError, ValueError):
    """Image or target dimensions are non-positive or degenerate."""


class ModelNotLoaded(SessionUsageError):
    """Inference was requested before the models were loaded."""


class NoImageEncoded(SessionUsageError):
    """A prompt or decode was requested while the encoder cache is empty."""


class EmptyPromptSet(SessionUsageError):
    """A decode was requested with zero point prompts."""


class MalformedOutput(InferenceError):
    """Backend output does not match the expected tensor layout."""


class BackendExecutionFailure(InferenceError):
    """Opaque failure inside the inference runtime, wrapped with context."""
