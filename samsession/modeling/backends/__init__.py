# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Inference backends: ONNX Runtime (``onnx_backend``) and TorchScript
(``torch_backend``), both behind the contract in ``base``.
"""
