import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from samsession.modeling.backends.base import InferenceBackend, ModelHandle
from samsession.modeling.prompt_assembler import DECODER_INPUT_NAMES
from samsession.modeling.tensors import EncoderOutputs, encoder_output_shapes
from samsession.sam_session import SegmentationSession
from samsession.utils.image_source import ImageBuffer

TARGET_SIZE = 64


class ScriptedBackend(InferenceBackend):
    """
    In-memory backend standing in for a SAM 2.1 export.

    Any model path containing "encoder" behaves as the image encoder, anything
    else as the prompt decoder. The decoder returns three candidates (zeros,
    a square around the first point, halves) scored [0.2, 0.9, 0.5], so the
    square always wins.
    """

    def __init__(self, target_size=TARGET_SIZE, square_radius=4):
        self.target_size = target_size
        self.square_radius = square_radius
        self.calls = []
        self.fail_next = None
        self.drop_encoder_output = None
        self.released = []
        self.closed = False

    def _load(self, path):
        if "missing" in path:
            raise FileNotFoundError(path)
        if "encoder" in path:
            return ModelHandle(path, "encoder", ["image"], list(encoder_output_shapes(self.target_size)))
        return ModelHandle(path, "decoder", list(DECODER_INPUT_NAMES), ["masks", "iou_predictions"])

    def _execute(self, handle, inputs):
        self.calls.append((handle.model, {k: np.array(v) for k, v in inputs.items()}))
        if self.fail_next == handle.model:
            self.fail_next = None
            raise RuntimeError(f"{handle.model} exploded")
        if handle.model == "encoder":
            outputs = {
                name: np.full(shape, 0.5, dtype=np.float32)
                for name, shape in encoder_output_shapes(self.target_size).items()
            }
            if self.drop_encoder_output:
                outputs.pop(self.drop_encoder_output)
            return outputs

        height, width = (int(v) for v in inputs["orig_im_size"])
        x, y = inputs["point_coords"][0, 0]
        square = np.zeros((height, width), dtype=np.float32)
        r = self.square_radius
        square[max(int(y) - r, 0) : int(y) + r + 1, max(int(x) - r, 0) : int(x) + r + 1] = 1.0
        masks = np.stack([np.zeros_like(square), square, np.full_like(square, 0.5)])[None]
        return {"masks": masks, "iou_predictions": np.array([[0.2, 0.9, 0.5]], dtype=np.float32)}

    def release(self, handle):
        if handle is not None and not handle.released:
            self.released.append(handle.path)
        super().release(handle)

    def close(self):
        self.closed = True

    def calls_to(self, model):
        return [inputs for name, inputs in self.calls if name == model]


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def session(backend):
    session = SegmentationSession(backend, target_size=TARGET_SIZE)
    session.initialize("sam_encoder.onnx", "sam_decoder.onnx")
    return session


def make_outputs(value=0.0, target_size=TARGET_SIZE):
    shapes = encoder_output_shapes(target_size)
    return EncoderOutputs.from_backend(
        {name: np.full(shape, value, dtype=np.float32) for name, shape in shapes.items()},
        shapes,
    )


def solid_image(width, height, rgb=(200, 30, 60)):
    array = np.zeros((height, width, 3), dtype=np.uint8)
    array[..., :] = rgb
    return ImageBuffer.from_rgb_array(array)


@pytest.fixture
def image_800x600():
    return solid_image(800, 600)
