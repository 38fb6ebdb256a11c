import sys
from typing import Dict

import numpy as np
import pytest
import torch
from hydra import compose

from samsession.build_session import DEFAULT_CONFIG, build_session, build_session_hf
from samsession.modeling.backends.torch_backend import TorchScriptBackend
from samsession.sam_session import SegmentationSession, SessionState

from conftest import TARGET_SIZE, ScriptedBackend, solid_image

TORCHSCRIPT_CONFIG = "configs/session/sam2.1_tiny_torchscript.yaml"
SMALL_INPUT = [f"++session.target_size={TARGET_SIZE}"]


class TinyEncoder(torch.nn.Module):
    def forward(self, image: torch.Tensor) -> Dict[str, torch.Tensor]:
        size = image.shape[-1]
        return {
            "image_embeddings": torch.zeros([1, 256, size // 16, size // 16]),
            "high_res_features1": torch.zeros([1, 32, size // 4, size // 4]),
            "high_res_features2": torch.zeros([1, 64, size // 8, size // 8]),
        }


class TinyDecoder(torch.nn.Module):
    def forward(
        self,
        image_embeddings: torch.Tensor,
        high_res_features1: torch.Tensor,
        high_res_features2: torch.Tensor,
        point_coords: torch.Tensor,
        point_labels: torch.Tensor,
        mask_input: torch.Tensor,
        has_mask_input: torch.Tensor,
        orig_im_size: torch.Tensor,
    ) -> Dict[str, torch.Tensor]:
        height = int(orig_im_size[0])
        width = int(orig_im_size[1])
        weights = torch.tensor([0.1, 1.0, 0.2]).reshape(1, 3, 1, 1)
        return {
            "masks": torch.ones([1, 3, height, width]) * weights,
            "iou_predictions": torch.tensor([[0.2, 0.9, 0.5]]),
        }


def test_bundled_configs_compose():
    for config_file in (DEFAULT_CONFIG, TORCHSCRIPT_CONFIG):
        cfg = compose(config_name=config_file)
        assert cfg.session.target_size == 1024
        assert cfg.model_files.encoder
        assert cfg.model_files.decoder


def test_build_session_with_given_backend():
    session = build_session(
        encoder_path="sam_encoder.onnx",
        decoder_path="sam_decoder.onnx",
        backend=ScriptedBackend(),
        hydra_overrides_extra=SMALL_INPUT,
    )
    assert isinstance(session, SegmentationSession)
    assert session.is_initialized
    assert session.target_size == TARGET_SIZE

    session.set_image(solid_image(800, 600))
    mask = session.add_point(400, 300)
    assert (mask.width, mask.height) == (800, 600)
    assert session.backend.calls_to("encoder")[0]["image"].shape == (1, 3, TARGET_SIZE, TARGET_SIZE)

    session.close()
    assert not session.owns_backend
    assert not session.backend.closed


def test_config_overrides_reach_components():
    session = build_session(
        encoder_path="sam_encoder.onnx",
        decoder_path="sam_decoder.onnx",
        backend=ScriptedBackend(),
        hydra_overrides_extra=SMALL_INPUT + ["++session.prompt_assembler.mask_input_size=32"],
    )
    session.set_image(solid_image(10, 10))
    session.add_point(5, 5)
    (decoder_input,) = session.backend.calls_to("decoder")
    assert decoder_input["mask_input"].shape == (1, 1, 32, 32)


def test_build_session_requires_model_paths():
    with pytest.raises(ValueError):
        build_session(encoder_path="sam_encoder.onnx", backend=ScriptedBackend())


def test_build_session_with_torchscript_models(tmp_path, monkeypatch):
    closed = []
    monkeypatch.setattr(TorchScriptBackend, "close", lambda self: closed.append(self))
    encoder_path = tmp_path / "encoder.pt"
    decoder_path = tmp_path / "decoder.pt"
    torch.jit.script(TinyEncoder()).save(str(encoder_path))
    torch.jit.script(TinyDecoder()).save(str(decoder_path))

    with build_session(
        TORCHSCRIPT_CONFIG,
        encoder_path=encoder_path,
        decoder_path=decoder_path,
        device="cpu",
        hydra_overrides_extra=SMALL_INPUT,
    ) as session:
        assert isinstance(session.backend, TorchScriptBackend)
        assert session.backend.device == torch.device("cpu")

        session.set_image(solid_image(80, 60))
        mask = session.add_point(40, 30)
        assert mask.score == pytest.approx(0.9)
        assert (mask.width, mask.height) == (80, 60)
        np.testing.assert_allclose(mask.mask, 1.0)
        assert session.state is SessionState.PROMPTED

    assert not session.is_initialized
    assert session.owns_backend
    assert closed == [session.backend]


def test_build_session_hf_uses_config_file_names(monkeypatch):
    downloads = []

    def fake_download(repo_id, encoder_filename, decoder_filename):
        downloads.append((repo_id, encoder_filename, decoder_filename))
        return "cache/sam_encoder.onnx", "cache/sam_decoder.onnx"

    monkeypatch.setattr(sys.modules["samsession.build_session"], "_hf_download", fake_download)
    session = build_session_hf(
        "someone/sam2.1-tiny-onnx", backend=ScriptedBackend(), hydra_overrides_extra=SMALL_INPUT
    )
    assert downloads == [
        ("someone/sam2.1-tiny-onnx", "sam2.1_tiny_preprocess.onnx", "sam2.1_tiny.onnx")
    ]
    assert session.is_initialized


def test_build_session_hf_explicit_file_names(monkeypatch):
    downloads = []

    def fake_download(repo_id, encoder_filename, decoder_filename):
        downloads.append((encoder_filename, decoder_filename))
        return "cache/encoder.onnx", "cache/decoder.onnx"

    monkeypatch.setattr(sys.modules["samsession.build_session"], "_hf_download", fake_download)
    build_session_hf(
        "someone/repo",
        encoder_filename="enc.onnx",
        decoder_filename="dec.onnx",
        backend=ScriptedBackend(),
        hydra_overrides_extra=SMALL_INPUT,
    )
    assert downloads == [("enc.onnx", "dec.onnx")]
