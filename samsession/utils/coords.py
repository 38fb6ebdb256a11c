# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Coordinate mapping between original image space and model space.

The image encoder expects a fixed square input (e.g. 1024x1024). An image of
arbitrary size is brought there by an aspect-preserving scale followed by
centered letterbox padding. This module computes that affine mapping and moves
points through it in both directions:

    model = original * scale + pad
    original = (model - pad) / scale

Points are plain floats, but every function here also works elementwise on
numpy arrays, so whole point sets can be mapped at once.

A third space, display space, appears when an image is shown scaled on screen.
``display_to_original`` maps a click in display space back to original pixels
before it is taken to model space.
"""

import math
from dataclasses import dataclass
from typing import Tuple

from samsession.errors import InvalidDimensions

# Default square input size of the SAM 2.1 image encoder
DEFAULT_TARGET_SIZE = 1024


@dataclass(frozen=True)
class PreprocessingParams:
    """
    Geometry of the scale+pad transform for one image size.

    Attributes:
        scale (float): Uniform scale factor applied to the original image.
        scaled_width (int): Width of the image after scaling, before padding.
        scaled_height (int): Height of the image after scaling, before padding.
        pad_left (int): Columns of padding to the left of the scaled image.
        pad_top (int): Rows of padding above the scaled image.
    """

    scale: float
    scaled_width: int
    scaled_height: int
    pad_left: int
    pad_top: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_params(
    original_width: int, original_height: int, target_size: int = DEFAULT_TARGET_SIZE
) -> PreprocessingParams:
    """
    Compute the aspect-fit scale and centered padding for an image.

    Args:
        original_width (int): Width of the original image in pixels.
        original_height (int): Height of the original image in pixels.
        target_size (int): Side of the square model input.

    Returns:
        PreprocessingParams: Deterministic geometry for this size triple.

    Raises:
        InvalidDimensions: If any dimension is non-positive, or if the image is
            so elongated that one scaled side collapses to zero pixels.

    Example:
        >>> compute_params(800, 600, 1024)
        PreprocessingParams(scale=1.28, scaled_width=1024, scaled_height=768, pad_left=0, pad_top=128)
    """
    if original_width <= 0 or original_height <= 0 or target_size <= 0:
        raise InvalidDimensions(
            f"dimensions must be positive, got original={original_width}x{original_height}, "
            f"target_size={target_size}"
        )

    scale = min(target_size / original_width, target_size / original_height)
    scaled_width = min(_round_half_up(original_width * scale), target_size)
    scaled_height = min(_round_half_up(original_height * scale), target_size)
    if scaled_width == 0 or scaled_height == 0:
        raise InvalidDimensions(
            f"image {original_width}x{original_height} is too elongated for target_size={target_size}"
        )

    pad_left = (target_size - scaled_width) // 2
    pad_top = (target_size - scaled_height) // 2
    return PreprocessingParams(scale, scaled_width, scaled_height, pad_left, pad_top)


def to_model_space(x, y, params: PreprocessingParams) -> Tuple:
    """Map a point from original image space into model space."""
    return x * params.scale + params.pad_left, y * params.scale + params.pad_top


def to_original_space(x, y, params: PreprocessingParams) -> Tuple:
    """Map a point from model space back into original image space."""
    return (x - params.pad_left) / params.scale, (y - params.pad_top) / params.scale


def display_to_original(
    x, y, display_width: int, display_height: int, original_width: int, original_height: int
) -> Tuple:
    """
    Map a point from a scaled on-screen rendering to original image pixels.

    Args:
        x, y: Point in display coordinates.
        display_width (int): Width at which the image is displayed.
        display_height (int): Height at which the image is displayed.
        original_width (int): Width of the original image.
        original_height (int): Height of the original image.

    Raises:
        InvalidDimensions: If the display size is non-positive.
    """
    if display_width <= 0 or display_height <= 0:
        raise InvalidDimensions(
            f"display dimensions must be positive, got {display_width}x{display_height}"
        )
    return x * original_width / display_width, y * original_height / display_height
