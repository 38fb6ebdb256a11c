# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Segmentation Session Builder and Factory Functions

This module builds ready-to-use SegmentationSession instances from Hydra
configs. A config names the session components (preprocessor, prompt
assembler, mask postprocessor, image source) and the inference backend, each
with a ``_target_`` class. The builder composes the config, instantiates
everything, and loads the encoder and decoder models.

Key Functions:
- build_session(): Creates a session from local model files
- build_session_hf(): Downloads the model files from the Hugging Face Hub first

Bundled configs (under ``samsession/configs/session/``):
- sam2.1_tiny.yaml: SAM 2.1 tiny on ONNX Runtime
- sam2.1_tiny_torchscript.yaml: SAM 2.1 tiny on TorchScript

Every session built here is owned by the caller. Call ``close()`` (or use it as
a context manager) to release the models. Nothing is cached process-wide.
"""

import logging

from hydra import compose
from hydra.utils import instantiate
from omegaconf import OmegaConf

DEFAULT_CONFIG = "configs/session/sam2.1_tiny.yaml"


def build_session(
    config_file=DEFAULT_CONFIG,
    encoder_path=None,
    decoder_path=None,
    device=None,
    backend=None,
    hydra_overrides_extra=[],
    **kwargs,
):
    """
    Build a SegmentationSession and load its models.

    Args:
        config_file (str): Config path relative to the samsession package,
            e.g. "configs/session/sam2.1_tiny.yaml".
        encoder_path (str): Path to the image encoder model file.
        decoder_path (str): Path to the prompt decoder model file.
        device (str, optional): Target device ('cuda', 'mps', 'cpu') for the
            configured backend. Auto-detected if None.
        backend (InferenceBackend, optional): Use this backend instead of
            instantiating the configured one. The caller keeps ownership: closing
            the session does not close it.
        hydra_overrides_extra (list): Additional Hydra configuration overrides,
            e.g. ["++session.target_size=512"].
        **kwargs: Additional arguments (currently unused).

    Returns:
        SegmentationSession: Initialized session with both models loaded.

    Raises:
        ValueError: If a model path is missing.
        BackendExecutionFailure: If a model cannot be loaded.
    """
    if encoder_path is None or decoder_path is None:
        raise ValueError("both encoder_path and decoder_path are required")

    # Load configuration using Hydra and resolve any variable references
    cfg = compose(config_name=config_file, overrides=list(hydra_overrides_extra))
    OmegaConf.resolve(cfg)

    # A backend passed in stays the caller's to close
    owns_backend = backend is None
    if owns_backend:
        backend = instantiate(cfg.backend, device=device)
    logging.info(f"Using backend: {type(backend).__name__}")

    session = instantiate(cfg.session, backend=backend, owns_backend=owns_backend, _recursive_=True)
    session.initialize(encoder_path, decoder_path)
    return session


def _hf_download(repo_id, encoder_filename, decoder_filename):
    """
    Download the encoder and decoder model files from the Hugging Face Hub.

    Returns:
        tuple: Local paths ``(encoder_path, decoder_path)``.
    """
    from huggingface_hub import hf_hub_download

    encoder_path = hf_hub_download(repo_id=repo_id, filename=encoder_filename)
    decoder_path = hf_hub_download(repo_id=repo_id, filename=decoder_filename)
    return encoder_path, decoder_path


def build_session_hf(
    repo_id,
    config_file=DEFAULT_CONFIG,
    encoder_filename=None,
    decoder_filename=None,
    **kwargs,
):
    """
    Build a session from model files hosted on the Hugging Face Hub.

    File names default to the config's ``model_files`` entries.

    Args:
        repo_id (str): Hugging Face repository holding both model files.
        config_file (str): Session config to build with.
        encoder_filename (str, optional): Encoder file inside the repository.
        decoder_filename (str, optional): Decoder file inside the repository.
        **kwargs: Additional arguments passed to build_session().
    """
    if encoder_filename is None or decoder_filename is None:
        cfg = compose(config_name=config_file)
        encoder_filename = encoder_filename or cfg.model_files.encoder
        decoder_filename = decoder_filename or cfg.model_files.decoder

    encoder_path, decoder_path = _hf_download(repo_id, encoder_filename, decoder_filename)
    return build_session(
        config_file=config_file, encoder_path=encoder_path, decoder_path=decoder_path, **kwargs
    )
