# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Decoder output postprocessing.

The decoder emits several candidate masks (``masks``: ``[1, num_masks, H, W]``)
with one predicted IoU score each (``iou_predictions``, or ``scores`` in some
exports). Postprocessing:

1. picks the candidate with the highest score (the first one wins a tie)
2. crops the ``scaled_width x scaled_height`` image region out of the
   letterboxed model-space mask
3. nearest-neighbor resizes that region to the original image size

Steps 2 and 3 must use the PreprocessingParams that produced the encoder
input. Any other geometry shifts the mask off the object.
"""

import logging
import math
from typing import Mapping, Tuple

import numpy as np

from samsession.debug_utils import capture_debug_state
from samsession.errors import MalformedOutput
from samsession.modeling.tensors import MODEL_SPACE, ORIGINAL_SPACE, SegmentationMask
from samsession.utils.coords import PreprocessingParams

MASKS = "masks"
IOU_PREDICTIONS = "iou_predictions"
SCORES = "scores"


class MaskPostprocessor:
    """
    Selects the best decoder mask and maps it back onto the original image.

    Args:
        coverage_threshold (float): Value above which a pixel counts as covered
            when logging mask coverage.
    """

    def __init__(self, coverage_threshold: float = 0.5) -> None:
        self.coverage_threshold = float(coverage_threshold)

    def select_best_mask(self, raw_masks, scores, mask_size: int) -> Tuple[np.ndarray, float]:
        """
        Return the candidate mask with the maximum score, and that score.

        Args:
            raw_masks: Flat buffer of ``num_masks`` consecutive blocks of
                ``mask_size`` values.
            scores: One score per block.
            mask_size (int): Number of values in each block.

        Raises:
            MalformedOutput: If the buffer is not a whole number of blocks, or
                the score count does not match the block count.
        """
        raw_masks = np.asarray(raw_masks, dtype=np.float32).reshape(-1)
        scores = np.asarray(scores, dtype=np.float32).reshape(-1)
        if mask_size <= 0 or raw_masks.size == 0 or raw_masks.size % mask_size != 0:
            raise MalformedOutput(
                f"mask buffer of {raw_masks.size} values is not a multiple of mask size {mask_size}"
            )
        num_masks = raw_masks.size // mask_size
        if scores.size != num_masks:
            raise MalformedOutput(f"got {scores.size} scores for {num_masks} masks")

        # np.argmax returns the first maximum
        best = int(np.argmax(scores))
        start = best * mask_size
        logging.info(f"Best mask index: {best} with score: {scores[best]:.4f} (of {num_masks})")
        return raw_masks[start : start + mask_size].copy(), float(scores[best])

    def rescale_to_original(
        self,
        model_space_mask,
        params: PreprocessingParams,
        original_width: int,
        original_height: int,
    ) -> np.ndarray:
        """
        Remove letterbox padding from a square model-space mask and resize it to
        the original image size.

        Destination ``(x, y)`` samples the cropped region at
        ``(clamp(x * scaled_width / original_width), clamp(y * scaled_height / original_height))``.

        Returns:
            np.ndarray: flat float32 mask of ``original_width * original_height`` values.

        Raises:
            MalformedOutput: If the mask is not square or is smaller than the
                scaled image region.
        """
        flat = np.asarray(model_space_mask, dtype=np.float32).reshape(-1)
        target_size = math.isqrt(flat.size)
        if target_size * target_size != flat.size:
            raise MalformedOutput(f"model-space mask of {flat.size} values is not square")
        if (
            params.pad_left + params.scaled_width > target_size
            or params.pad_top + params.scaled_height > target_size
        ):
            raise MalformedOutput(
                f"model-space mask {target_size}x{target_size} is smaller than the image region "
                f"{params.scaled_width}x{params.scaled_height} at ({params.pad_left}, {params.pad_top})"
            )

        mask2d = flat.reshape(target_size, target_size)
        cropped = mask2d[
            params.pad_top : params.pad_top + params.scaled_height,
            params.pad_left : params.pad_left + params.scaled_width,
        ]

        # Integer arithmetic keeps the sampling grid exact
        src_x = np.clip(
            (np.arange(original_width) * params.scaled_width) // original_width,
            0,
            params.scaled_width - 1,
        )
        src_y = np.clip(
            (np.arange(original_height) * params.scaled_height) // original_height,
            0,
            params.scaled_height - 1,
        )
        return cropped[src_y[:, None], src_x[None, :]].reshape(-1)

    def postprocess(
        self,
        outputs: Mapping[str, np.ndarray],
        params: PreprocessingParams,
        target_size: int,
        original_width: int,
        original_height: int,
    ) -> SegmentationMask:
        """
        Turn raw decoder outputs into a SegmentationMask in original image space.

        Raises:
            MalformedOutput: If masks or scores are missing or inconsistent.
        """
        best_mask = self.select_model_space_mask(outputs, target_size)
        capture_debug_state("postprocess", "model_space_mask", best_mask.mask, {"score": best_mask.score})
        mask = self.rescale_to_original(best_mask.mask, params, original_width, original_height)
        result = SegmentationMask(
            mask=mask,
            width=original_width,
            height=original_height,
            score=best_mask.score,
            space=ORIGINAL_SPACE,
        )
        capture_debug_state("postprocess", "mask", result.mask, {"score": result.score})
        logging.info(
            f"Final mask: {original_width}x{original_height}, "
            f"coverage={result.coverage(self.coverage_threshold) * 100:.2f}%, score={result.score:.4f}"
        )
        return result

    def select_model_space_mask(self, outputs: Mapping[str, np.ndarray], target_size: int) -> SegmentationMask:
        """Pick the best candidate from raw decoder outputs, still in model space."""
        if MASKS in outputs:
            raw_masks = outputs[MASKS]
        else:
            # Some exports name the mask output differently; take the first tensor
            candidates = [name for name in outputs if name not in (IOU_PREDICTIONS, SCORES)]
            if not candidates:
                raise MalformedOutput(f"no mask output from decoder; got {sorted(outputs.keys())}")
            logging.warning(f"Decoder has no '{MASKS}' output, using '{candidates[0]}'")
            raw_masks = outputs[candidates[0]]

        if IOU_PREDICTIONS in outputs:
            scores = outputs[IOU_PREDICTIONS]
        elif SCORES in outputs:
            scores = outputs[SCORES]
        else:
            raise MalformedOutput(f"no IoU scores from decoder; got {sorted(outputs.keys())}")

        mask, score = self.select_best_mask(raw_masks, scores, target_size * target_size)
        return SegmentationMask(mask, target_size, target_size, score, space=MODEL_SPACE)
