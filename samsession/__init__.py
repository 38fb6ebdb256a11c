# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
samsession - Interactive Segmentation Sessions for SAM 2.1

samsession runs point-prompted segmentation on top of a two-stage SAM 2.1
export: an image encoder run once per image, and a lightweight prompt decoder
run once per click. The model itself is an opaque function from named tensors
to named tensors, executed by a pluggable backend (ONNX Runtime or TorchScript).
The library handles everything around the model:

- Letterbox preprocessing with ImageNet normalization
- Coordinate mapping between display, original image and model space
- Caching the encoder outputs so repeated clicks only run the decoder
- Assembling the eight decoder inputs
- Best-mask selection, de-padding and rescaling back to the original image

Configuration uses Hydra: sessions are built from YAML configs under
``samsession/configs``.

Usage:
    from samsession.build_session import build_session

    session = build_session("configs/session/sam2.1_tiny.yaml",
                            "sam2.1_tiny_preprocess.onnx", "sam2.1_tiny.onnx")
    session.set_image(image)
    mask = session.add_point(120, 80)
"""

from hydra import initialize_config_module
from hydra.core.global_hydra import GlobalHydra

# Make configs/**.yaml composable by name through hydra.compose
if not GlobalHydra.instance().is_initialized():
    initialize_config_module("samsession", version_base="1.2")
