# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Debug Utilities for Segmentation Session Intermediates

This module captures and visualizes the intermediate arrays a segmentation
session produces, so misaligned masks and badly preprocessed inputs can be
inspected without touching the pipeline code.

Key Features:

1. **Non-intrusive Capture**: the session reports each stage to a global
   registry; when debug mode is off the report is a no-op
2. **Per-stage Keys**: states are stored under (component, state), e.g.
   ("preprocess", "input_tensor") or ("decoder", "masks")
3. **Visual Checks**: letterboxed encoder input, candidate masks with their
   scores, and the final mask overlaid on the original image

Captured components:
- preprocess: input_tensor, params
- encoder: image_embeddings, high_res_features1, high_res_features2
- decoder: every raw decoder output
- postprocess: best model-space mask and the final original-space mask

Usage:
    from samsession.debug_utils import enable_debug_mode, get_debug_states
    enable_debug_mode()
    session.set_image(image)
    session.add_point(120, 80)
    states = get_debug_states()
    visualize_mask_candidates(states["decoder"]["masks"]["data"],
                              states["decoder"]["iou_predictions"]["data"],
                              save_path="debug_output/candidates.png")
"""

from collections import defaultdict
from typing import Dict, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from samsession.modeling.tensors import FOREGROUND, PointPrompt, SegmentationMask
from samsession.utils.coords import PreprocessingParams, to_original_space
from samsession.utils.image_source import ImageBuffer
from samsession.utils.transforms import IMAGENET_MEAN, IMAGENET_STD


class DebugStateCapture:
    """
    Central registry for pipeline intermediates.

    Arrays are copied on capture so later pipeline stages cannot mutate them.
    """

    def __init__(self):
        self.states = defaultdict(dict)
        self.enabled = False

    def enable(self):
        self.enabled = True

    def disable(self):
        """Disable debug capture and clear stored states."""
        self.enabled = False
        self.clear()

    def clear(self):
        self.states.clear()

    def capture(self, component_name: str, state_name: str, data, metadata: Optional[Dict] = None):
        """
        Capture a state from one pipeline stage.

        Args:
            component_name: Stage name (e.g. 'preprocess', 'decoder')
            state_name: Name of the specific state (e.g. 'input_tensor', 'masks')
            data: Array or plain value to store
            metadata: Additional metadata about the captured state
        """
        if not self.enabled:
            return

        if isinstance(data, np.ndarray):
            data = data.copy()

        self.states[component_name][state_name] = {
            "data": data,
            "shape": data.shape if isinstance(data, np.ndarray) else None,
            "dtype": data.dtype if isinstance(data, np.ndarray) else None,
            "metadata": metadata or {},
        }

    def get_state(self, component_name: str, state_name: str = None):
        """Retrieve captured state(s) for a component."""
        if state_name is None:
            return self.states.get(component_name, {})
        return self.states.get(component_name, {}).get(state_name)

    def get_all_states(self):
        return dict(self.states)


# Global debug capture instance
_debug_capture = DebugStateCapture()


def enable_debug_mode():
    """Enable global capture of session intermediates."""
    _debug_capture.enable()


def disable_debug_mode():
    """Disable global debug mode."""
    _debug_capture.disable()


def capture_debug_state(component_name: str, state_name: str, data, metadata: Optional[Dict] = None):
    """Capture debug state using the global capture instance."""
    _debug_capture.capture(component_name, state_name, data, metadata)


def get_debug_states():
    """Get all captured debug states."""
    return _debug_capture.get_all_states()


def is_debug_enabled():
    return _debug_capture.enabled


def _finish(fig, save_path: Optional[str], dpi: int):
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, bbox_inches="tight", dpi=dpi)
    return fig


def visualize_preprocessed_image(tensor: np.ndarray, target_size: int, save_path: Optional[str] = None, dpi: int = 100):
    """
    Show the letterboxed encoder input after undoing ImageNet normalization.

    Args:
        tensor: Flat CHW float buffer of ``3 * target_size**2`` values.
        target_size: Side of the square encoder input.
        save_path: File to write the figure to.
    """
    chw = np.asarray(tensor, dtype=np.float32).reshape(3, target_size, target_size)
    mean = np.asarray(IMAGENET_MEAN, dtype=np.float32)[:, None, None]
    std = np.asarray(IMAGENET_STD, dtype=np.float32)[:, None, None]
    rgb = np.clip(chw * std + mean, 0.0, 1.0).transpose(1, 2, 0)

    fig, ax = plt.subplots(1, 1, figsize=(6, 6), dpi=dpi)
    ax.imshow(rgb)
    ax.set_title(f"Encoder input ({target_size}x{target_size})")
    ax.axis("off")
    return _finish(fig, save_path, dpi)


def visualize_mask_candidates(
    raw_masks: np.ndarray,
    scores: Sequence[float],
    mask_shape: Optional[Sequence[int]] = None,
    save_path: Optional[str] = None,
    dpi: int = 100,
):
    """
    Draw every decoder candidate as a heatmap, titled with its score.

    Args:
        raw_masks: ``[1, num_masks, H, W]`` decoder output, or a flat buffer
            when ``mask_shape`` is given.
        scores: Score per candidate.
        mask_shape: ``(H, W)`` of one candidate for flat input.
    """
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    num_masks = scores.size
    if mask_shape is None:
        mask_shape = np.asarray(raw_masks).shape[-2:]
    masks = np.asarray(raw_masks, dtype=np.float32).reshape(num_masks, *mask_shape)
    best = int(np.argmax(scores))

    fig, axes = plt.subplots(1, num_masks, figsize=(4 * num_masks, 4), dpi=dpi, squeeze=False)
    for i, ax in enumerate(axes[0]):
        sns.heatmap(masks[i], ax=ax, cmap="viridis", cbar=True, xticklabels=False, yticklabels=False)
        marker = " (best)" if i == best else ""
        ax.set_title(f"Mask {i}: {scores[i]:.3f}{marker}")
    return _finish(fig, save_path, dpi)


def visualize_mask_overlay(
    image: ImageBuffer,
    mask: SegmentationMask,
    points: Optional[Sequence[PointPrompt]] = None,
    params: Optional[PreprocessingParams] = None,
    threshold: float = 0.5,
    alpha: float = 0.5,
    save_path: Optional[str] = None,
    dpi: int = 100,
):
    """
    Overlay an original-space mask on its image.

    Points are stored in model space; pass the image's PreprocessingParams to
    draw them at their original-space positions (green foreground, red
    background).
    """
    if (mask.width, mask.height) != (image.width, image.height):
        raise ValueError(
            f"mask {mask.width}x{mask.height} does not match image {image.width}x{image.height}"
        )

    fig, ax = plt.subplots(1, 1, figsize=(8, 8 * image.height / image.width), dpi=dpi)
    ax.imshow(image.to_rgb_array())
    overlay = np.zeros((image.height, image.width, 4), dtype=np.float32)
    overlay[..., 2] = 1.0
    overlay[..., 3] = mask.binarize(threshold) * alpha
    ax.imshow(overlay)

    if points and params is not None:
        for point in points:
            x, y = to_original_space(point.x, point.y, params)
            color = "lime" if point.label == FOREGROUND else "red"
            ax.scatter([x], [y], c=color, s=60, edgecolors="white", linewidths=1.5)

    ax.set_title(f"Mask score {mask.score:.3f}, coverage {mask.coverage(threshold) * 100:.1f}%")
    ax.axis("off")
    return _finish(fig, save_path, dpi)
