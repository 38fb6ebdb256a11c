# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Interactive Segmentation Session

This module provides SegmentationSession, the stateful front end of a
two-stage SAM 2.1 pipeline: an expensive image encoder run once per image, and
a cheap prompt decoder run once per click.

Workflow:
1. Create a session around an InferenceBackend and load both models
2. ``set_image`` preprocesses and encodes the image; encoder outputs are cached
3. ``add_point`` appends a click and decodes all clicks so far against the cache
4. ``clear_points`` starts over on the same image without re-encoding
5. ``clear_image`` drops the cache; ``close`` releases the models

State machine:

    EMPTY --set_image--> IMAGE_ENCODED --add_point--> PROMPTED
                               ^                        |
                               +------clear_points------+
    clear_image: any state --> EMPTY

Every transition is all-or-nothing. When encoding or decoding fails, the
session keeps its previous cache, points and mask, and the error reaches the
caller. The session does no locking: callers must not run ``set_image``,
``add_point`` or ``clear_image`` concurrently on the same session.

Example Usage:
    session = build_session("configs/session/sam2.1_tiny.yaml",
                            "sam2.1_tiny_preprocess.onnx", "sam2.1_tiny.onnx")
    with session:
        session.set_image(Image.open("photo.jpg"))
        mask = session.add_point(412, 230)
        mask = session.add_point(500, 40, is_foreground=False)
        binary = mask.binarize()
"""

import logging
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from samsession.debug_utils import capture_debug_state
from samsession.errors import EmptyPromptSet, ModelNotLoaded, NoImageEncoded
from samsession.modeling.backends.base import InferenceBackend, ModelHandle
from samsession.modeling.encoder_cache import CachedEncoding, EncoderCache
from samsession.modeling.mask_postprocessor import MaskPostprocessor
from samsession.modeling.prompt_assembler import PromptAssembler
from samsession.modeling.tensors import (
    BACKGROUND,
    FOREGROUND,
    EncoderOutputs,
    ModelTensor,
    PointPrompt,
    SegmentationMask,
    encoder_output_shapes,
)
from samsession.utils.coords import (
    DEFAULT_TARGET_SIZE,
    PreprocessingParams,
    compute_params,
    display_to_original,
    to_model_space,
)
from samsession.utils.image_source import ImageBuffer, ImageSource, PILImageSource
from samsession.utils.transforms import ImagePreprocessor


class SessionState(Enum):
    EMPTY = "empty"
    IMAGE_ENCODED = "image_encoded"
    PROMPTED = "prompted"


class SegmentationSession:
    """
    Interactive point-prompted segmentation over a cached image encoding.

    The session owns its backend model handles, its EncoderCache, the
    accumulated point prompts and the latest mask. Points are converted to
    model space as soon as they are added and are stored that way.

    Args:
        backend (InferenceBackend): Runtime that executes both models.
        target_size (int): Side of the square encoder input.
        preprocessor (ImagePreprocessor, optional): Built from ``target_size`` if None.
        prompt_assembler (PromptAssembler, optional): Default assembler if None.
        mask_postprocessor (MaskPostprocessor, optional): Default postprocessor if None.
        image_source (ImageSource, optional): Decodes non-ImageBuffer images
            passed to ``set_image``. Defaults to PILImageSource.
        image_input_name (str): Name under which the encoder input is fed.
        owns_backend (bool): If True, ``close`` also closes ``backend``. Leave
            False for a backend shared with other sessions.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        target_size: int = DEFAULT_TARGET_SIZE,
        preprocessor: Optional[ImagePreprocessor] = None,
        prompt_assembler: Optional[PromptAssembler] = None,
        mask_postprocessor: Optional[MaskPostprocessor] = None,
        image_source: Optional[ImageSource] = None,
        image_input_name: str = "image",
        owns_backend: bool = False,
    ) -> None:
        self.backend = backend
        self.owns_backend = owns_backend
        self.target_size = int(target_size)
        self._preprocessor = preprocessor or ImagePreprocessor(self.target_size)
        if self._preprocessor.target_size != self.target_size:
            raise ValueError(
                f"preprocessor target_size {self._preprocessor.target_size} does not match "
                f"session target_size {self.target_size}"
            )
        self._assembler = prompt_assembler or PromptAssembler()
        self._postprocessor = mask_postprocessor or MaskPostprocessor()
        self._image_source = image_source or PILImageSource()
        self.image_input_name = image_input_name
        self._encoder_shapes = encoder_output_shapes(self.target_size)

        self._encoder: Optional[ModelHandle] = None
        self._decoder: Optional[ModelHandle] = None
        self._cache = EncoderCache()

        self._state = SessionState.EMPTY
        self._points: List[PointPrompt] = []
        self._last_mask: Optional[SegmentationMask] = None
        self.encoder_calls = 0
        self.decoder_calls = 0

    # Lifecycle

    def initialize(self, encoder_path, decoder_path) -> None:
        """
        Load the image encoder and prompt decoder models.

        Both handles are replaced only once both loads succeed.
        """
        encoder = self.backend.load_model(encoder_path)
        try:
            decoder = self.backend.load_model(decoder_path)
        except Exception:
            self.backend.release(encoder)
            raise
        self._release_models()
        self._encoder, self._decoder = encoder, decoder
        logging.info("Segmentation models initialized")

    @property
    def is_initialized(self) -> bool:
        return self._encoder is not None and self._decoder is not None

    def close(self) -> None:
        """
        Release both models and clear all session state.

        The backend itself is closed only when the session owns it.
        """
        self.clear_image()
        self._release_models()
        if self.owns_backend:
            self.backend.close()

    def _release_models(self) -> None:
        self.backend.release(self._encoder)
        self.backend.release(self._decoder)
        self._encoder = self._decoder = None

    def __enter__(self) -> "SegmentationSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # State

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def points(self) -> Tuple[PointPrompt, ...]:
        return tuple(self._points)

    @property
    def last_mask(self) -> Optional[SegmentationMask]:
        return self._last_mask

    @property
    def original_size(self) -> Optional[Tuple[int, int]]:
        """``(width, height)`` of the encoded image, or None."""
        cached = self._cache.get()
        if cached is None:
            return None
        return cached.original_width, cached.original_height

    @property
    def cache(self) -> EncoderCache:
        return self._cache

    def get_image_embedding(self) -> ModelTensor:
        """Return the cached ``image_embeddings`` tensor for the current image."""
        return self._require_cache().outputs.image_embeddings

    def preprocessing_params(self) -> PreprocessingParams:
        """Recompute the letterbox geometry of the encoded image."""
        cached = self._require_cache()
        return compute_params(cached.original_width, cached.original_height, self.target_size)

    # Image

    def set_image(self, image: Any, width: Optional[int] = None, height: Optional[int] = None) -> Tuple[int, int]:
        """
        Preprocess, encode and cache ``image``; reset points and mask.

        Args:
            image: An ImageBuffer, a packed ARGB pixel sequence (with ``width``
                and ``height``), or any handle the session's ImageSource decodes.
            width (int, optional): Width for a raw pixel sequence.
            height (int, optional): Height for a raw pixel sequence.

        Returns:
            Tuple[int, int]: The original ``(width, height)``.

        Raises:
            ModelNotLoaded: If ``initialize`` has not run.
            InvalidDimensions: For empty or degenerate images.
            BackendExecutionFailure, MalformedOutput: If encoding fails. The
                previous cache and state are kept.
        """
        encoding = self._encode(image, width, height)
        self._cache.store(encoding.outputs, encoding.original_width, encoding.original_height)
        self._points = []
        self._last_mask = None
        self._state = SessionState.IMAGE_ENCODED
        return encoding.original_width, encoding.original_height

    def _encode(self, image: Any, width: Optional[int], height: Optional[int]) -> CachedEncoding:
        """Run the encoder on ``image`` without touching session state."""
        if self._encoder is None:
            raise ModelNotLoaded("Image encoder not loaded. Call initialize() first.")

        buffer = self._to_image_buffer(image, width, height)
        tensor, params = self._preprocessor.preprocess(buffer)
        capture_debug_state("preprocess", "input_tensor", tensor, {"params": params})

        logging.info("Computing image embeddings for the provided image...")
        raw = self.backend.run(
            self._encoder,
            {self.image_input_name: tensor.reshape(self._preprocessor.input_shape)},
        )
        self.encoder_calls += 1
        outputs = EncoderOutputs.from_backend(raw, self._encoder_shapes)
        for name, value in outputs.as_dict().items():
            capture_debug_state("encoder", name, value.data)
        logging.info("Image embeddings computed.")
        return CachedEncoding(outputs, buffer.width, buffer.height)

    def _to_image_buffer(self, image: Any, width: Optional[int], height: Optional[int]) -> ImageBuffer:
        if isinstance(image, ImageBuffer):
            return image
        if width is not None or height is not None:
            if width is None or height is None:
                raise ValueError("width and height must be given together")
            # Signed 32-bit ARGB (as produced by JVM bitmaps) wraps to the same bits
            return ImageBuffer(int(width), int(height), np.asarray(image))
        return self._image_source.decode(image)

    def clear_image(self) -> None:
        """Drop the cache, points and mask, returning to EMPTY."""
        self._cache.clear()
        self._points = []
        self._last_mask = None
        self._state = SessionState.EMPTY

    # Prompts

    def add_point(
        self,
        x: float,
        y: float,
        is_foreground: bool = True,
        display_width: Optional[int] = None,
        display_height: Optional[int] = None,
    ) -> SegmentationMask:
        """
        Add a click and re-segment using every click so far.

        Args:
            x, y: Click position in original image pixels, or in display pixels
                when ``display_width``/``display_height`` are given.
            is_foreground (bool): True to include the region, False to exclude it.
            display_width (int, optional): Width of the on-screen rendering.
            display_height (int, optional): Height of the on-screen rendering.

        Returns:
            SegmentationMask: The new best mask in original image space.

        Raises:
            NoImageEncoded: If no image is cached.
            BackendExecutionFailure, MalformedOutput: If decoding fails. The
                point list and previous mask are kept.
        """
        cached = self._require_cache()
        click_x, click_y = x, y
        if display_width is not None or display_height is not None:
            if display_width is None or display_height is None:
                raise ValueError("display_width and display_height must be given together")
            x, y = display_to_original(
                x, y, display_width, display_height, cached.original_width, cached.original_height
            )

        params = compute_params(cached.original_width, cached.original_height, self.target_size)
        model_x, model_y = to_model_space(float(x), float(y), params)
        point = PointPrompt(model_x, model_y, FOREGROUND if is_foreground else BACKGROUND)
        logging.info(
            f"Added point at ({click_x:.1f}, {click_y:.1f}) -> model space ({model_x:.1f}, {model_y:.1f}), "
            f"label={point.label}"
        )

        points = self._points + [point]
        mask = self._decode(cached, points, params)

        self._points = points
        self._last_mask = mask
        self._state = SessionState.PROMPTED
        return mask

    def clear_points(self) -> None:
        """Forget all clicks and the mask; the cached encoding is kept."""
        self._points = []
        self._last_mask = None
        if self._state is SessionState.PROMPTED:
            self._state = SessionState.IMAGE_ENCODED
        logging.info("Cleared all points")

    def segment(self) -> SegmentationMask:
        """
        Re-run the decoder over the current points.

        Raises:
            NoImageEncoded: If no image is cached.
            EmptyPromptSet: If there are no points.
        """
        cached = self._require_cache()
        if not self._points:
            raise EmptyPromptSet("At least one point prompt is required for segmentation")
        params = compute_params(cached.original_width, cached.original_height, self.target_size)
        mask = self._decode(cached, self._points, params)
        self._last_mask = mask
        self._state = SessionState.PROMPTED
        return mask

    def segment_image(
        self,
        image: Any,
        points: Sequence[Sequence[float]],
        labels: Optional[Sequence[int]] = None,
    ) -> SegmentationMask:
        """
        Encode ``image`` and segment it with ``points`` in a single decoder call.

        Use this when an image is only prompted once. For repeated prompting,
        call ``set_image`` and then ``add_point``.

        Args:
            image: Anything accepted by ``set_image``.
            points: ``(x, y)`` pairs in original image pixels.
            labels: 1 (foreground) / 0 (background) per point; all foreground if None.

        Raises:
            EmptyPromptSet: If ``points`` is empty.
            ValueError: If a label is not 0 or 1, or the label count is wrong.

        Nothing is committed until the decode succeeds; on any failure the
        previous image, points and mask are kept.
        """
        if len(points) == 0:
            raise EmptyPromptSet("At least one point prompt is required for segmentation")
        if labels is None:
            labels = [FOREGROUND] * len(points)
        if len(labels) != len(points):
            raise ValueError(f"got {len(labels)} labels for {len(points)} points")
        for label in labels:
            # 1.0 passes, 1.7 does not
            if label not in (FOREGROUND, BACKGROUND):
                raise ValueError(f"point label must be 0 or 1, got {label!r}")

        encoding = self._encode(image, None, None)
        params = compute_params(encoding.original_width, encoding.original_height, self.target_size)
        prompts = []
        for (x, y), label in zip(points, labels):
            model_x, model_y = to_model_space(float(x), float(y), params)
            prompts.append(PointPrompt(model_x, model_y, int(label)))

        mask = self._decode(encoding, prompts, params)
        self._cache.store(encoding.outputs, encoding.original_width, encoding.original_height)
        self._points = prompts
        self._last_mask = mask
        self._state = SessionState.PROMPTED
        return mask

    # Internals

    def _require_cache(self) -> CachedEncoding:
        cached = self._cache.get()
        if cached is None:
            raise NoImageEncoded("No image encoded. Call set_image() first.")
        return cached

    def _decode(
        self, cached: CachedEncoding, points: Sequence[PointPrompt], params: PreprocessingParams
    ) -> SegmentationMask:
        if self._decoder is None:
            raise ModelNotLoaded("Prompt decoder not loaded. Call initialize() first.")

        inputs = self._assembler.assemble(cached.outputs, points, self.target_size)
        logging.info(f"Segmenting with {len(points)} point(s)")
        raw = self.backend.run(self._decoder, {name: t.data for name, t in inputs.items()})
        self.decoder_calls += 1
        for name, value in raw.items():
            capture_debug_state("decoder", name, np.asarray(value))

        return self._postprocessor.postprocess(
            raw, params, self.target_size, cached.original_width, cached.original_height
        )
