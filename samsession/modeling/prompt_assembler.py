# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Decoder input assembly.

The SAM 2.1 prompt decoder takes eight named inputs:

    image_embeddings     [1, 256, 64, 64]    cached encoder output
    high_res_features1   [1, 32, 256, 256]   cached encoder output
    high_res_features2   [1, 64, 128, 128]   cached encoder output
    point_coords         [1, N, 2]           clicks in model space
    point_labels         [1, N]              1 = foreground, 0 = background
    mask_input           [1, 1, 256, 256]    prior mask (always zeros here)
    has_mask_input       [1]                 0.0: no prior mask
    orig_im_size         [2]  int64          (height, width) of the emitted mask

``orig_im_size`` is always the model input size, not the true image size. The
decoder then returns a mask in model space, and MaskPostprocessor removes the
letterbox and rescales it with the same geometry used for the image. Letting
the decoder resize to the original size would stretch the padding into the
mask.
"""

from typing import Dict, Sequence, Tuple, Union

import numpy as np

from samsession.errors import EmptyPromptSet
from samsession.modeling.tensors import EncoderOutputs, ModelTensor, PointPrompt

POINT_COORDS = "point_coords"
POINT_LABELS = "point_labels"
MASK_INPUT = "mask_input"
HAS_MASK_INPUT = "has_mask_input"
ORIG_IM_SIZE = "orig_im_size"

DECODER_INPUT_NAMES = (
    "image_embeddings",
    "high_res_features1",
    "high_res_features2",
    POINT_COORDS,
    POINT_LABELS,
    MASK_INPUT,
    HAS_MASK_INPUT,
    ORIG_IM_SIZE,
)


class PromptAssembler:
    """
    Builds the decoder's named input set from cached features and points.

    Args:
        mask_input_size (int): Side of the (unused) prior-mask input.
    """

    def __init__(self, mask_input_size: int = 256) -> None:
        self.mask_input_size = int(mask_input_size)

    def assemble(
        self,
        cached: EncoderOutputs,
        points: Sequence[PointPrompt],
        output_size: Union[int, Tuple[int, int]],
    ) -> Dict[str, ModelTensor]:
        """
        Assemble decoder inputs for ``points`` over a cached encoding.

        Args:
            cached (EncoderOutputs): Encoder tensors for the current image.
            points (Sequence[PointPrompt]): Prompts in model space, in click order.
            output_size: Requested decoder mask size, either a square side or
                ``(width, height)``.

        Returns:
            Dict[str, ModelTensor]: The eight decoder inputs, keyed by name.

        Raises:
            EmptyPromptSet: If ``points`` is empty.
        """
        if len(points) == 0:
            raise EmptyPromptSet("At least one point prompt is required for segmentation")

        if isinstance(output_size, int):
            output_width = output_height = output_size
        else:
            output_width, output_height = output_size

        num_points = len(points)
        coords = np.array([[p.x, p.y] for p in points], dtype=np.float32)
        labels = np.array([p.label for p in points], dtype=np.float32)

        inputs = dict(cached.as_dict())
        inputs[POINT_COORDS] = ModelTensor(POINT_COORDS, coords.reshape(1, num_points, 2))
        inputs[POINT_LABELS] = ModelTensor(POINT_LABELS, labels.reshape(1, num_points))
        inputs[MASK_INPUT] = ModelTensor(
            MASK_INPUT,
            np.zeros((1, 1, self.mask_input_size, self.mask_input_size), dtype=np.float32),
        )
        inputs[HAS_MASK_INPUT] = ModelTensor(HAS_MASK_INPUT, np.zeros((1,), dtype=np.float32))
        inputs[ORIG_IM_SIZE] = ModelTensor(
            ORIG_IM_SIZE, np.array([output_height, output_width], dtype=np.int64)
        )
        return inputs
