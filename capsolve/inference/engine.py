"""
inference/engine.py
-------------------
Narrow wrapper around the neural inference backend.

An :class:`InferenceEngine` takes one float32 tensor and returns the first
output tensor.  Backends are not assumed to be reentrant, so every engine
serialises its calls with its own lock; distinct engines (classifier and
detector) still run concurrently.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np
import onnxruntime as ort

from capsolve.core.exceptions import ConfigurationError, EngineError, ShapeError

logger = logging.getLogger(__name__)

# SHA-256 digests of the bundled reference OCR models.  Any other model is
# "custom" and gets ImageNet normalisation.
_REFERENCE_MODEL_DIGESTS = frozenset({
    "33b5cd351ee94e73a6bf8fa18c415ed8b819b3ffd342e267c30d8ad8334e34e8",
    "b8f2ad9cbc1f2e3922a6cb9459e30824e7e2467f3fb4fd61420640e34ea0bf68",
})


def model_digest(model: bytes) -> str:
    return hashlib.sha256(model).hexdigest()


def is_custom_model(model: bytes) -> bool:
    """True unless *model* is one of the bundled reference models."""
    return model_digest(model) not in _REFERENCE_MODEL_DIGESTS


class InferenceEngine(ABC):
    """Interface contract for anything that runs a single-input model."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Run the model on *tensor* and return its first output as float32.

        Raises:
            ShapeError: If *tensor* is not float32.
            EngineError: If the backend fails.
        """
        if tensor.dtype != np.float32:
            raise ShapeError(f"Engine input must be float32, got {tensor.dtype}")
        with self._lock:
            try:
                output = self._infer(np.ascontiguousarray(tensor))
            except (ShapeError, EngineError):
                raise
            except Exception as exc:
                raise EngineError(f"Inference failed: {exc}") from exc
        return np.asarray(output, dtype=np.float32)

    @abstractmethod
    def _infer(self, tensor: np.ndarray) -> np.ndarray:
        """Backend-specific call; invoked with the engine lock held."""


class OnnxEngine(InferenceEngine):
    """:class:`InferenceEngine` backed by an ``onnxruntime`` CPU session."""

    def __init__(self, model: bytes) -> None:
        super().__init__()
        try:
            self._session = ort.InferenceSession(model, providers=["CPUExecutionProvider"])
        except Exception as exc:
            raise EngineError(f"Could not load ONNX model: {exc}") from exc
        self._input_name = self._session.get_inputs()[0].name
        self._output_name = self._session.get_outputs()[0].name

    @classmethod
    def from_file(cls, path: str | Path) -> "OnnxEngine":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Model not found at {path}")
        try:
            model = path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read model {path}: {exc}") from exc
        return cls(model)

    def _infer(self, tensor: np.ndarray) -> np.ndarray:
        return self._session.run([self._output_name], {self._input_name: tensor})[0]
