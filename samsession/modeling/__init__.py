# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Model-side components of the segmentation session.

**tensors.py** - Named tensors, encoder outputs, point prompts and masks
**encoder_cache.py** - Single-slot cache of the current image's encoder outputs
**prompt_assembler.py** - Builds the eight named decoder inputs
**mask_postprocessor.py** - Best-mask selection and rescaling to the original image
**backends/** - ONNX Runtime and TorchScript executors behind one contract

The models themselves are opaque: nothing in this package knows how the
encoder or decoder compute their outputs, only the names and shapes of the
tensors they exchange.
"""
