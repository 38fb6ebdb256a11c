# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Image-side utilities for the segmentation session.

**coords.py** - Coordinate Mapping:
- Aspect-fit scale and centered letterbox padding for any image size
- Point transforms between display, original image and model space

**transforms.py** - Encoder Input Preparation:
- Nearest-neighbor resize and padding of packed-pixel images and masks
- ImageNet mean/std normalization into channel-major float buffers

**image_source.py** - Image Buffers:
- Immutable packed-ARGB ImageBuffer
- Decoding PIL images, files, bytes and numpy arrays into ImageBuffers
"""
