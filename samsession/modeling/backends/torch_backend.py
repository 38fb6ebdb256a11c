# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
TorchScript inference backend.

Scripted modules receive their inputs as keyword arguments and must return
either ``Dict[str, Tensor]`` or a tuple together with an ``output_names``
attribute on the module naming each element.
"""

import logging
from typing import Dict, Mapping, Optional

import numpy as np
import torch

from samsession.errors import MalformedOutput
from samsession.modeling.backends.base import (
    InferenceBackend,
    ModelHandle,
    get_best_available_device,
)


class TorchScriptBackend(InferenceBackend):
    """
    Runs TorchScript (``torch.jit.save``) models.

    Args:
        device (str, optional): Target device ('cuda', 'mps', 'cpu'). Auto-detected if None.
    """

    def __init__(self, device: Optional[str] = None) -> None:
        self.device = torch.device(device or get_best_available_device())
        logging.info(f"Using device: {self.device}")

    def _load(self, path: str) -> ModelHandle:
        module = torch.jit.load(path, map_location=self.device)
        module.eval()
        output_names = list(getattr(module, "output_names", []) or [])
        input_names = [
            arg.name for arg in module.forward.schema.arguments if arg.name != "self"
        ]
        return ModelHandle(path=path, model=module, input_names=input_names, output_names=output_names)

    @torch.no_grad()
    def _execute(self, handle: ModelHandle, inputs: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        feed = {}
        for name, value in inputs.items():
            value = np.asarray(value)
            feed[name] = torch.as_tensor(value, device=self.device)

        if len(feed) == 1 and len(handle.input_names) == 1:
            (tensor,) = feed.values()
            result = handle.model(tensor)
        else:
            result = handle.model(**feed)

        if isinstance(result, dict):
            named = result
        elif isinstance(result, (tuple, list)) and len(result) == len(handle.output_names):
            named = dict(zip(handle.output_names, result))
        else:
            raise MalformedOutput(
                f"{handle.path} returned {type(result).__name__}; expected a dict of tensors "
                f"or a tuple matching output_names={handle.output_names}"
            )
        return {name: tensor.detach().float().cpu().numpy() for name, tensor in named.items()}
