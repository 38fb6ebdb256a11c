# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Packed-pixel image buffers and the sources that produce them.

The session engine never touches a platform image type. Everything it sees is
an ImageBuffer: width, height and a flat array of 32-bit ARGB integers
(``a << 24 | r << 16 | g << 8 | b``), the layout produced by most bitmap APIs.

Turning some opaque image handle (a PIL image, a file, encoded bytes, an
``HxWxC`` array) into an ImageBuffer is the job of an ImageSource. New
platforms plug in by subclassing ImageSource; the engine stays unchanged.
"""

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import numpy as np
from PIL import Image

from samsession.errors import InvalidDimensions

# Opaque black, used for letterbox padding
OPAQUE_BLACK = np.uint32(0xFF000000)


def pack_argb(array: np.ndarray) -> np.ndarray:
    """
    Pack an ``HxWx3`` (RGB) or ``HxWx4`` (RGBA) uint8 array into ARGB integers.

    Returns a flat ``uint32`` array of length ``H*W`` in row-major order.
    Alpha defaults to 255 for RGB input.
    """
    if array.ndim != 3 or array.shape[2] not in (3, 4):
        raise ValueError(f"expected an HxWx3 or HxWx4 array, got shape {array.shape}")
    channels = array.astype(np.uint32)
    r, g, b = channels[..., 0], channels[..., 1], channels[..., 2]
    if array.shape[2] == 4:
        a = channels[..., 3]
    else:
        a = np.full_like(r, 0xFF)
    packed = (a << 24) | (r << 16) | (g << 8) | b
    return packed.reshape(-1)


def unpack_argb(pixels: np.ndarray) -> np.ndarray:
    """Split packed ARGB integers into a trailing ``(r, g, b)`` uint8 axis."""
    pixels = np.asarray(pixels, dtype=np.uint32)
    r = (pixels >> 16) & 0xFF
    g = (pixels >> 8) & 0xFF
    b = pixels & 0xFF
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


@dataclass(frozen=True)
class ImageBuffer:
    """
    An immutable packed-ARGB image.

    Attributes:
        width (int): Image width in pixels.
        height (int): Image height in pixels.
        pixels (np.ndarray): Read-only flat uint32 array of ``width*height``
            ARGB values in row-major order.

    Raises:
        InvalidDimensions: If the size is non-positive or does not match the
            number of pixels.
    """

    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise InvalidDimensions(
                f"image dimensions must be positive, got {self.width}x{self.height}"
            )
        pixels = np.asarray(self.pixels)
        if pixels.size != self.width * self.height:
            raise InvalidDimensions(
                f"expected {self.width * self.height} pixels for a {self.width}x{self.height} "
                f"image, got {pixels.size}"
            )
        # Keep our own read-only copy so the caller's buffer is never altered
        pixels = pixels.astype(np.uint32).reshape(-1)
        pixels.flags.writeable = False
        object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_rgb_array(cls, array: np.ndarray) -> "ImageBuffer":
        """Build a buffer from an ``HxWx3`` or ``HxWx4`` uint8 array."""
        array = np.asarray(array)
        if array.ndim != 3 or array.shape[0] == 0 or array.shape[1] == 0:
            raise InvalidDimensions(f"cannot build an image from array of shape {array.shape}")
        height, width = array.shape[:2]
        return cls(width, height, pack_argb(array))

    def as_2d(self) -> np.ndarray:
        """Return the pixels as a ``(height, width)`` view."""
        return self.pixels.reshape(self.height, self.width)

    def to_rgb_array(self) -> np.ndarray:
        """Return an ``HxWx3`` uint8 RGB array."""
        return unpack_argb(self.as_2d())


class ImageSource(ABC):
    """Decodes an opaque image handle into an ImageBuffer."""

    @abstractmethod
    def decode(self, handle: Any) -> ImageBuffer:
        """Return the packed-pixel buffer for ``handle``."""


class ArrayImageSource(ImageSource):
    """Accepts ``HxWx3`` / ``HxWx4`` uint8 numpy arrays in RGB(A) order."""

    def decode(self, handle: Any) -> ImageBuffer:
        if not isinstance(handle, np.ndarray):
            raise NotImplementedError(
                f"ArrayImageSource cannot decode {type(handle).__name__}"
            )
        logging.info("For numpy array image, we assume (HxWxC) format")
        return ImageBuffer.from_rgb_array(handle)


class PILImageSource(ArrayImageSource):
    """
    Accepts PIL images, file paths, encoded image bytes and numpy arrays.

    Everything is converted to RGB first, so palette, greyscale and alpha
    images all come out as opaque ARGB.
    """

    def decode(self, handle: Union[Image.Image, str, Path, bytes, np.ndarray]) -> ImageBuffer:
        if isinstance(handle, np.ndarray):
            return super().decode(handle)
        if isinstance(handle, Image.Image):
            return self._from_pil(handle)
        if isinstance(handle, (bytes, bytearray)):
            with Image.open(io.BytesIO(handle)) as im:
                return self._from_pil(im)
        if isinstance(handle, (str, Path)):
            with Image.open(handle) as im:
                return self._from_pil(im)
        raise NotImplementedError(f"Image format not supported: {type(handle).__name__}")

    @staticmethod
    def _from_pil(image: Image.Image) -> ImageBuffer:
        width, height = image.size
        if width == 0 or height == 0:
            raise InvalidDimensions(f"image dimensions must be positive, got {width}x{height}")
        rgb = np.asarray(image.convert("RGB"), dtype=np.uint8)
        return ImageBuffer(width, height, pack_argb(rgb))
