# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""ONNX Runtime inference backend."""

import logging
from typing import Dict, List, Mapping, Optional

import numpy as np
import onnxruntime as ort

from samsession.modeling.backends.base import (
    InferenceBackend,
    ModelHandle,
    get_best_available_device,
)

_PROVIDERS_BY_DEVICE = {
    "cuda": "CUDAExecutionProvider",
    "mps": "CoreMLExecutionProvider",
}

# ONNX tensor element types fed from numpy; anything else is fed as float32
_NUMPY_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(int16)": np.int16,
    "tensor(int8)": np.int8,
    "tensor(uint8)": np.uint8,
    "tensor(bool)": np.bool_,
}


class OnnxRuntimeBackend(InferenceBackend):
    """
    Runs ``.onnx`` models with onnxruntime.

    Args:
        providers (List[str], optional): Execution providers, in priority order.
            Derived from ``device`` when omitted.
        device (str, optional): 'cuda', 'mps' or 'cpu'. Auto-detected if None.
    """

    def __init__(self, providers: Optional[List[str]] = None, device: Optional[str] = None) -> None:
        self.device = device or get_best_available_device()
        self.providers = list(providers) if providers else self._default_providers(self.device)
        logging.info(f"Using ONNX Runtime providers: {self.providers}")

    @staticmethod
    def _default_providers(device: str) -> List[str]:
        available = ort.get_available_providers()
        preferred = _PROVIDERS_BY_DEVICE.get(device)
        if preferred and preferred in available:
            return [preferred, "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _load(self, path: str) -> ModelHandle:
        session = ort.InferenceSession(path, providers=self.providers)
        return ModelHandle(
            path=path,
            model=session,
            input_names=[i.name for i in session.get_inputs()],
            output_names=[o.name for o in session.get_outputs()],
        )

    def _execute(self, handle: ModelHandle, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        session = handle.model
        declared = {i.name: i.type for i in session.get_inputs()}

        feed = dict(inputs)
        if len(feed) == 1 and len(declared) == 1:
            # Single-input models (the image encoder) take whatever name they declare
            (value,) = feed.values()
            feed = {next(iter(declared)): value}

        for name, value in feed.items():
            dtype = _NUMPY_DTYPES.get(declared.get(name), np.float32)
            feed[name] = np.asarray(value, dtype=dtype)

        results = session.run(handle.output_names, feed)
        return dict(zip(handle.output_names, results))
