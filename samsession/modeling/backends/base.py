# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Inference backend contract.

The session engine treats both models as opaque functions from named tensors
to named tensors. A backend provides exactly that:

    handle = backend.load_model(path)
    outputs = backend.run(handle, {"name": array, ...})
    backend.release(handle)

Concrete backends only implement ``_load`` and ``_execute``. This base class
checks that the handle is still usable and wraps every runtime exception in
BackendExecutionFailure, keeping the original exception as the cause.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import torch

from samsession.errors import BackendExecutionFailure, ModelNotLoaded, SegmentationError


def get_best_available_device():
    """
    Return the best available compute device: cuda, then mps, then cpu.

    Returns:
        str: Device string compatible with torch.device()
    """
    if torch.cuda.is_available():
        return "cuda"
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return "mps"
    else:
        return "cpu"


@dataclass
class ModelHandle:
    """A loaded model owned by a backend."""

    path: str
    model: Any
    input_names: List[str]
    output_names: List[str]
    released: bool = False


class InferenceBackend(ABC):
    """Loads models and runs them on named numpy tensors."""

    def load_model(self, path) -> ModelHandle:
        """
        Load the model at ``path``.

        Raises:
            BackendExecutionFailure: If the runtime cannot load the file.
        """
        path = str(path)
        logging.info(f"Loading model from: {path}")
        try:
            handle = self._load(path)
        except SegmentationError:
            raise
        except Exception as exc:
            logging.error(f"Failed to load model from {path}: {exc}")
            raise BackendExecutionFailure(f"Failed to load model from {path}: {exc}") from exc
        logging.info(
            f"Model loaded: inputs={handle.input_names}, outputs={handle.output_names}"
        )
        return handle

    def run(self, handle: Optional[ModelHandle], inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """
        Run a loaded model.

        Args:
            handle (ModelHandle): Result of ``load_model``.
            inputs: Named input arrays.

        Returns:
            Dict[str, np.ndarray]: Named output arrays.

        Raises:
            ModelNotLoaded: If ``handle`` is None or was released.
            BackendExecutionFailure: If the runtime fails.
        """
        if handle is None or handle.released:
            raise ModelNotLoaded("Model not loaded. Call load_model() first.")
        try:
            return self._execute(handle, inputs)
        except SegmentationError:
            raise
        except Exception as exc:
            logging.error(f"Inference failed for {handle.path}: {exc}")
            raise BackendExecutionFailure(f"Failed to run inference on {handle.path}: {exc}") from exc

    def release(self, handle: Optional[ModelHandle]) -> None:
        """Drop the runtime resources behind ``handle``."""
        if handle is None or handle.released:
            return
        handle.model = None
        handle.released = True

    def close(self) -> None:
        """Release backend-wide resources. The default backend holds none."""

    @abstractmethod
    def _load(self, path: str) -> ModelHandle:
        ...

    @abstractmethod
    def _execute(self, handle: ModelHandle, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        ...
