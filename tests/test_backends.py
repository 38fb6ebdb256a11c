from typing import Dict, Tuple

import numpy as np
import pytest
import torch

from samsession.errors import BackendExecutionFailure, MalformedOutput, ModelNotLoaded
from samsession.modeling.backends import onnx_backend
from samsession.modeling.backends.base import get_best_available_device
from samsession.modeling.backends.onnx_backend import OnnxRuntimeBackend
from samsession.modeling.backends.torch_backend import TorchScriptBackend


class Doubler(torch.nn.Module):
    def forward(self, image: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"doubled": image * 2}


class Adder(torch.nn.Module):
    def forward(self, a: torch.Tensor, b: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"sum": a + b, "diff": a - b}


class TupleOutputs(torch.nn.Module):
    def __init__(self):
        super().__init__()
        self.output_names = ["masks", "scores"]

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return x + 1, x.sum().reshape(1)


class BareTensor(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x


def save_scripted(module, tmp_path, name):
    path = tmp_path / name
    torch.jit.script(module).save(str(path))
    return path


@pytest.fixture
def torch_backend():
    return TorchScriptBackend(device="cpu")


def test_best_available_device_is_known():
    assert get_best_available_device() in ("cuda", "mps", "cpu")


def test_torchscript_single_input_ignores_feed_name(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(Doubler(), tmp_path, "doubler.pt"))
    assert handle.input_names == ["image"]

    outputs = torch_backend.run(handle, {"pixels": np.ones((1, 3, 2, 2), dtype=np.float32)})
    assert list(outputs) == ["doubled"]
    assert isinstance(outputs["doubled"], np.ndarray)
    np.testing.assert_array_equal(outputs["doubled"], np.full((1, 3, 2, 2), 2.0))


def test_torchscript_named_inputs(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(Adder(), tmp_path, "adder.pt"))
    assert handle.input_names == ["a", "b"]

    outputs = torch_backend.run(
        handle, {"b": np.array([1.0], dtype=np.float32), "a": np.array([5.0], dtype=np.float32)}
    )
    assert outputs["sum"].tolist() == [6.0]
    assert outputs["diff"].tolist() == [4.0]


def test_torchscript_tuple_outputs_use_output_names(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(TupleOutputs(), tmp_path, "tuple.pt"))
    assert handle.output_names == ["masks", "scores"]

    outputs = torch_backend.run(handle, {"x": np.zeros(3, dtype=np.float32)})
    assert outputs["masks"].tolist() == [1.0, 1.0, 1.0]
    assert outputs["scores"].tolist() == [0.0]


def test_torchscript_unnamed_output_is_malformed(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(BareTensor(), tmp_path, "bare.pt"))
    with pytest.raises(MalformedOutput):
        torch_backend.run(handle, {"x": np.zeros(3, dtype=np.float32)})


def test_torchscript_runtime_errors_are_wrapped(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(Adder(), tmp_path, "adder.pt"))
    with pytest.raises(BackendExecutionFailure) as excinfo:
        torch_backend.run(handle, {"a": np.zeros(1, dtype=np.float32), "c": np.zeros(1, dtype=np.float32)})
    assert excinfo.value.__cause__ is not None


def test_missing_model_file_fails_to_load(torch_backend, tmp_path):
    with pytest.raises(BackendExecutionFailure, match="Failed to load"):
        torch_backend.load_model(tmp_path / "nope.pt")


def test_released_handle_cannot_run(torch_backend, tmp_path):
    handle = torch_backend.load_model(save_scripted(Doubler(), tmp_path, "doubler.pt"))
    torch_backend.release(handle)
    torch_backend.release(handle)
    assert handle.released
    assert handle.model is None
    with pytest.raises(ModelNotLoaded):
        torch_backend.run(handle, {"image": np.zeros(1, dtype=np.float32)})
    with pytest.raises(ModelNotLoaded):
        torch_backend.run(None, {"image": np.zeros(1, dtype=np.float32)})


class FakeNodeArg:
    def __init__(self, name, type):
        self.name = name
        self.type = type


class FakeInferenceSession:
    instances = []

    def __init__(self, path, providers=None):
        self.path = path
        self.providers = providers
        self.feeds = []
        if "encoder" in path:
            self.inputs = [FakeNodeArg("input_image", "tensor(float)")]
            self.outputs = [FakeNodeArg("image_embeddings", "tensor(float)")]
        elif "half" in path:
            self.inputs = [
                FakeNodeArg("point_coords", "tensor(float16)"),
                FakeNodeArg("has_mask_input", "tensor(double)"),
                FakeNodeArg("orig_im_size", "tensor(int32)"),
            ]
            self.outputs = [FakeNodeArg("masks", "tensor(float16)")]
        else:
            self.inputs = [
                FakeNodeArg("point_coords", "tensor(float)"),
                FakeNodeArg("orig_im_size", "tensor(int64)"),
            ]
            self.outputs = [
                FakeNodeArg("masks", "tensor(float)"),
                FakeNodeArg("iou_predictions", "tensor(float)"),
            ]
        FakeInferenceSession.instances.append(self)

    def get_inputs(self):
        return self.inputs

    def get_outputs(self):
        return self.outputs

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return [np.full(2, i, dtype=np.float32) for i, _ in enumerate(output_names)]


@pytest.fixture
def fake_ort(monkeypatch):
    FakeInferenceSession.instances = []
    monkeypatch.setattr(onnx_backend.ort, "InferenceSession", FakeInferenceSession)
    monkeypatch.setattr(
        onnx_backend.ort,
        "get_available_providers",
        lambda: ["CUDAExecutionProvider", "CPUExecutionProvider"],
    )
    return FakeInferenceSession


def test_onnx_providers_follow_device(fake_ort):
    assert OnnxRuntimeBackend(device="cuda").providers == ["CUDAExecutionProvider", "CPUExecutionProvider"]
    assert OnnxRuntimeBackend(device="mps").providers == ["CPUExecutionProvider"]
    assert OnnxRuntimeBackend(device="cpu").providers == ["CPUExecutionProvider"]
    assert OnnxRuntimeBackend(providers=["CPUExecutionProvider"], device="cuda").providers == [
        "CPUExecutionProvider"
    ]


def test_onnx_load_reads_signature(fake_ort):
    backend = OnnxRuntimeBackend(device="cpu")
    handle = backend.load_model("sam_decoder.onnx")
    (session,) = fake_ort.instances
    assert session.providers == ["CPUExecutionProvider"]
    assert handle.input_names == ["point_coords", "orig_im_size"]
    assert handle.output_names == ["masks", "iou_predictions"]


def test_onnx_single_input_takes_declared_name(fake_ort):
    backend = OnnxRuntimeBackend(device="cpu")
    handle = backend.load_model("sam_encoder.onnx")
    outputs = backend.run(handle, {"image": np.zeros((1, 3, 4, 4), dtype=np.float64)})

    (feed,) = fake_ort.instances[0].feeds
    assert list(feed) == ["input_image"]
    assert feed["input_image"].dtype == np.float32
    assert list(outputs) == ["image_embeddings"]


def test_onnx_casts_inputs_to_declared_types(fake_ort):
    backend = OnnxRuntimeBackend(device="cpu")
    handle = backend.load_model("sam_decoder.onnx")
    outputs = backend.run(
        handle,
        {"point_coords": np.zeros((1, 1, 2), dtype=np.float64), "orig_im_size": np.array([64.0, 64.0])},
    )

    (feed,) = fake_ort.instances[0].feeds
    assert feed["point_coords"].dtype == np.float32
    assert feed["orig_im_size"].dtype == np.int64
    assert feed["orig_im_size"].tolist() == [64, 64]
    assert outputs["masks"].tolist() == [0.0, 0.0]
    assert outputs["iou_predictions"].tolist() == [1.0, 1.0]


def test_onnx_casts_to_any_declared_element_type(fake_ort):
    backend = OnnxRuntimeBackend(device="cpu")
    handle = backend.load_model("sam_decoder_half.onnx")
    backend.run(
        handle,
        {
            "point_coords": np.zeros((1, 1, 2), dtype=np.float32),
            "has_mask_input": np.zeros(1, dtype=np.float32),
            "orig_im_size": np.array([64, 64], dtype=np.int64),
        },
    )

    (feed,) = fake_ort.instances[0].feeds
    assert feed["point_coords"].dtype == np.float16
    assert feed["has_mask_input"].dtype == np.float64
    assert feed["orig_im_size"].dtype == np.int32


def test_onnx_runtime_errors_are_wrapped(fake_ort, monkeypatch):
    backend = OnnxRuntimeBackend(device="cpu")
    handle = backend.load_model("sam_decoder.onnx")

    def explode(output_names, feed):
        raise RuntimeError("bad input")

    monkeypatch.setattr(handle.model, "run", explode)
    with pytest.raises(BackendExecutionFailure, match="bad input"):
        backend.run(handle, {"point_coords": np.zeros((1, 1, 2))})
