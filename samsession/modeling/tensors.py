# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Tensor and prompt value types shared by the session pipeline.

- ModelTensor: a named numpy array handed to or received from a backend.
- EncoderOutputs: the three image-encoder tensors, always held together.
- PointPrompt: a labelled click, stored in model space.
- SegmentationMask: a flat probability mask plus its confidence score.

Encoder tensor shapes depend only on the encoder input size, the same way the
SAM2 backbone feature pyramid does: the high-resolution levels sit at strides
4 and 8 and the image embedding at stride 16.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np

from samsession.errors import MalformedOutput

IMAGE_EMBEDDINGS = "image_embeddings"
HIGH_RES_FEATURES1 = "high_res_features1"
HIGH_RES_FEATURES2 = "high_res_features2"
ENCODER_OUTPUT_NAMES = (IMAGE_EMBEDDINGS, HIGH_RES_FEATURES1, HIGH_RES_FEATURES2)

FOREGROUND = 1
BACKGROUND = 0

MODEL_SPACE = "model"
ORIGINAL_SPACE = "original"


def encoder_output_shapes(target_size: int) -> Dict[str, Tuple[int, ...]]:
    """
    Expected encoder output shapes for a square input of ``target_size``.

    For the default 1024 input this gives ``[1, 256, 64, 64]``,
    ``[1, 32, 256, 256]`` and ``[1, 64, 128, 128]``.
    """
    hires_size = target_size // 4
    return {
        IMAGE_EMBEDDINGS: (1, 256, hires_size // 4, hires_size // 4),
        HIGH_RES_FEATURES1: (1, 32, hires_size, hires_size),
        HIGH_RES_FEATURES2: (1, 64, hires_size // 2, hires_size // 2),
    }


@dataclass(frozen=True)
class ModelTensor:
    """
    A named tensor exchanged with the inference backend.

    ``data`` already carries the tensor shape; only float32 and int64 are used.
    """

    name: str
    data: np.ndarray

    @classmethod
    def from_flat(cls, name: str, values, shape: Sequence[int], dtype=np.float32) -> "ModelTensor":
        """Build a tensor from a flat buffer, checking the element count against ``shape``."""
        array = np.asarray(values, dtype=dtype)
        expected = int(np.prod(shape))
        if array.size != expected:
            raise MalformedOutput(
                f"tensor '{name}' has {array.size} values, expected {expected} for shape {tuple(shape)}"
            )
        return cls(name, array.reshape(tuple(shape)))

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype


@dataclass(frozen=True)
class EncoderOutputs:
    """The three encoder tensors, cached and consumed as one unit."""

    image_embeddings: ModelTensor
    high_res_features1: ModelTensor
    high_res_features2: ModelTensor

    @classmethod
    def from_backend(
        cls,
        outputs: Mapping[str, np.ndarray],
        expected_shapes: Mapping[str, Sequence[int]],
    ) -> "EncoderOutputs":
        """
        Collect the encoder tensors from a raw backend result.

        Backends may return tensors flattened or shaped; both are reshaped to
        the expected shape.

        Raises:
            MalformedOutput: If a tensor is missing or has the wrong size. No
                partial EncoderOutputs is ever built.
        """
        missing = [name for name in ENCODER_OUTPUT_NAMES if name not in outputs]
        if missing:
            raise MalformedOutput(
                f"encoder output is missing {missing}; got {sorted(outputs.keys())}"
            )
        tensors = [
            ModelTensor.from_flat(name, outputs[name], expected_shapes[name])
            for name in ENCODER_OUTPUT_NAMES
        ]
        return cls(*tensors)

    def as_dict(self) -> Dict[str, ModelTensor]:
        return {
            IMAGE_EMBEDDINGS: self.image_embeddings,
            HIGH_RES_FEATURES1: self.high_res_features1,
            HIGH_RES_FEATURES2: self.high_res_features2,
        }


@dataclass(frozen=True)
class PointPrompt:
    """A click in model space; ``label`` is 1 for foreground, 0 for background."""

    x: float
    y: float
    label: int = FOREGROUND

    def __post_init__(self):
        if self.label not in (FOREGROUND, BACKGROUND):
            raise ValueError(f"point label must be 0 or 1, got {self.label}")


@dataclass(frozen=True)
class SegmentationMask:
    """
    A flat ``width*height`` mask with its confidence score.

    ``space`` records which coordinate system the mask lives in: ``"model"``
    straight out of the decoder, ``"original"`` after postprocessing.
    """

    mask: np.ndarray
    width: int
    height: int
    score: float
    space: str = ORIGINAL_SPACE

    def as_2d(self) -> np.ndarray:
        return self.mask.reshape(self.height, self.width)

    def binarize(self, threshold: float = 0.5) -> np.ndarray:
        """Return a ``(height, width)`` uint8 mask of pixels above ``threshold``."""
        return (self.as_2d() > threshold).astype(np.uint8)

    def coverage(self, threshold: float = 0.5) -> float:
        """Fraction of pixels above ``threshold``."""
        if self.mask.size == 0:
            return 0.0
        return float(np.count_nonzero(self.mask > threshold)) / self.mask.size
