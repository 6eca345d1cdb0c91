"""ONNX Runtime session wrapper for the legacy ImageNet classifier."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List

import numpy as np

try:
    import onnxruntime as ort
except ImportError:  # allow import in test/runtime without ORT
    ort = None


def _require_ort() -> None:
    if ort is None:
        raise ImportError("onnxruntime is required for the legacy classifier")


def _pick_providers(prefer_cuda: bool) -> list[str]:
    available = ort.get_available_providers()
    if prefer_cuda and "CUDAExecutionProvider" in available:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def load_labels(path: Path) -> List[str]:
    """Read ``{"labels": [...]}`` or a bare JSON list of class names."""

    if not path.exists():
        raise FileNotFoundError(f"Missing label file: {path}")
    raw = json.loads(path.read_text(encoding="utf-8"))
    labels = raw.get("labels") if isinstance(raw, dict) else raw
    if not isinstance(labels, list) or not labels:
        raise ValueError(f"{path} must contain a non-empty label list")
    return [str(label) for label in labels]


class OnnxInfer:
    def __init__(self, onnx_path: Path, prefer_cuda: bool = False) -> None:
        _require_ort()
        if not onnx_path.exists():
            raise FileNotFoundError(f"Missing ONNX model: {onnx_path}")
        self.session = ort.InferenceSession(
            str(onnx_path), providers=_pick_providers(prefer_cuda)
        )
        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name

    def run(self, batch: np.ndarray) -> np.ndarray:
        if batch.dtype != np.float32:
            batch = batch.astype(np.float32)
        outputs = self.session.run([self.output_name], {self.input_name: batch})
        return outputs[0]
