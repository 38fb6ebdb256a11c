# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Image preprocessing for the SAM image encoder.

ImagePreprocessor turns a packed-ARGB ImageBuffer into the flat float tensor
the encoder consumes:

1. compute the aspect-fit geometry (see ``samsession.utils.coords``)
2. nearest-neighbor resize to ``(scaled_width, scaled_height)``
3. blit onto an opaque black ``target_size x target_size`` canvas at
   ``(pad_left, pad_top)``
4. scale channels to [0, 1], apply ImageNet mean/std normalization, and lay
   the result out channel-major (all red, then all green, then all blue)

The resize and pad helpers are generic over the array dtype, so the same code
also moves a float mask from original space into model space. Mask
postprocessing relies on this being the exact inverse of its crop+resize.
"""

import logging
from typing import Tuple

import numpy as np

from samsession.utils.coords import (
    DEFAULT_TARGET_SIZE,
    PreprocessingParams,
    compute_params,
)
from samsession.utils.image_source import OPAQUE_BLACK, ImageBuffer

# ImageNet normalization constants (RGB) the encoder was trained with
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


def resize_nearest(array: np.ndarray, params: PreprocessingParams) -> np.ndarray:
    """
    Nearest-neighbor resize of a 2D array to the scaled size in ``params``.

    Destination pixel ``(x, y)`` samples source pixel
    ``(clamp(x / scale, 0, w - 1), clamp(y / scale, 0, h - 1))``.
    """
    height, width = array.shape[:2]
    src_x = np.clip((np.arange(params.scaled_width) / params.scale).astype(np.int64), 0, width - 1)
    src_y = np.clip((np.arange(params.scaled_height) / params.scale).astype(np.int64), 0, height - 1)
    return array[src_y[:, None], src_x[None, :]]


def pad_to_square(array: np.ndarray, params: PreprocessingParams, target_size: int, fill) -> np.ndarray:
    """Place a scaled 2D array on a ``target_size`` square canvas filled with ``fill``."""
    canvas = np.full((target_size, target_size), fill, dtype=array.dtype)
    canvas[
        params.pad_top : params.pad_top + params.scaled_height,
        params.pad_left : params.pad_left + params.scaled_width,
    ] = array
    return canvas


def mask_to_model_space(mask: np.ndarray, params: PreprocessingParams, target_size: int) -> np.ndarray:
    """Resize and pad a 2D original-space mask into model space (padding is 0)."""
    return pad_to_square(resize_nearest(np.asarray(mask, dtype=np.float32), params), params, target_size, 0.0)


def normalize_to_chw(pixels: np.ndarray) -> np.ndarray:
    """
    Normalize a 2D array of packed ARGB pixels into a flat CHW float32 buffer.

    Each channel is divided by 255, shifted by the ImageNet mean and divided by
    the ImageNet std. The output holds every red value first, then every green,
    then every blue, each in row-major pixel order.
    """
    pixels = pixels.astype(np.uint32)
    channels = np.stack(
        [(pixels >> 16) & 0xFF, (pixels >> 8) & 0xFF, pixels & 0xFF]
    ).astype(np.float32) / 255.0
    mean = np.asarray(IMAGENET_MEAN, dtype=np.float32)[:, None, None]
    std = np.asarray(IMAGENET_STD, dtype=np.float32)[:, None, None]
    return ((channels - mean) / std).reshape(-1)


class ImagePreprocessor:
    """
    Letterbox + normalize images into the encoder's fixed input layout.

    Args:
        target_size (int): Side of the square encoder input.
    """

    def __init__(self, target_size: int = DEFAULT_TARGET_SIZE) -> None:
        self.target_size = int(target_size)

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        """Shape of the batched encoder input, ``(1, 3, target_size, target_size)``."""
        return (1, 3, self.target_size, self.target_size)

    def preprocess(self, image: ImageBuffer) -> Tuple[np.ndarray, PreprocessingParams]:
        """
        Produce the normalized encoder tensor for ``image``.

        Args:
            image (ImageBuffer): Packed-ARGB input image.

        Returns:
            Tuple of:
            - tensor (np.ndarray): flat float32 buffer of ``3 * target_size**2``
              values in CHW order.
            - params (PreprocessingParams): geometry used for the transform.

        Raises:
            InvalidDimensions: For zero-sized or degenerate images.
        """
        params = compute_params(image.width, image.height, self.target_size)
        logging.info(
            f"Preprocessing {image.width}x{image.height} image: scale={params.scale:.4f}, "
            f"scaled={params.scaled_width}x{params.scaled_height}, "
            f"pad=({params.pad_left}, {params.pad_top})"
        )

        scaled = resize_nearest(image.as_2d(), params)
        canvas = pad_to_square(scaled, params, self.target_size, OPAQUE_BLACK)
        tensor = normalize_to_chw(canvas)

        assert tensor.size == 3 * self.target_size * self.target_size
        return tensor, params

    __call__ = preprocess
