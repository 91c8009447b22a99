import logging
import os
from typing import Optional, Tuple

import numpy as np

try:
    import onnxruntime as ort  # type: ignore
except Exception:  # pragma: no cover - optional dep
    ort = None  # type: ignore

from .base import FaceEmbedder


logger = logging.getLogger(__name__)


class ONNXFaceEmbedder(FaceEmbedder):
    """
    FaceNet-style ONNX embedder.
    - Expects an RGB face crop; resized to ``input_size`` square and
      standardized per image (FaceNet prewhitening).
    - Produces an L2-normalized embedding (128-dim for the common FaceNet export).

    Pass ``model_path`` or set FACE_BIOMETRICS_MODEL_PATH to an absolute path.
    The model may take NCHW or NHWC input; the layout is read from the graph.
    """

    def __init__(self, model_path: Optional[str] = None, dim: int = 128, input_size: int = 160, threads: Optional[int] = None):
        if ort is None:
            raise RuntimeError("onnxruntime is required for ONNXFaceEmbedder")
        model_path = model_path or os.getenv("FACE_BIOMETRICS_MODEL_PATH")
        if not model_path or not os.path.exists(model_path):
            raise RuntimeError(f"Face embedding ONNX model not found at {model_path}")

        sess_opts = ort.SessionOptions()
        sess_opts.intra_op_num_threads = threads or max(1, (os.cpu_count() or 2) - 1)
        try:
            self.sess = ort.InferenceSession(
                model_path, sess_options=sess_opts, providers=["CUDAExecutionProvider", "CPUExecutionProvider"]
            )
        except Exception:
            # Fallback to CPU only
            self.sess = ort.InferenceSession(model_path, sess_options=sess_opts, providers=["CPUExecutionProvider"])

        inp = self.sess.get_inputs()[0]
        self.inp_name = inp.name
        self.out_name = self.sess.get_outputs()[0].name
        shape = list(inp.shape)
        self.channels_first = len(shape) == 4 and shape[1] == 3
        self.dim = int(dim)
        self.input_size = int(input_size)
        logger.info("Loaded ONNX embedder %s (input %s)", model_path, shape)

    def embed(self, face_rgb: np.ndarray) -> np.ndarray:
        img = face_rgb
        if img is None or img.size == 0:
            return np.zeros((0,), dtype=np.float32)
        h, w = img.shape[:2]
        if (h, w) != (self.input_size, self.input_size):
            img = _resize_nn(img, (self.input_size, self.input_size))
        img = img.astype(np.float32)
        mean = float(img.mean())
        std = max(float(img.std()), 1.0 / np.sqrt(img.size))
        img = (img - mean) / std
        batch = np.transpose(img, (2, 0, 1))[None, ...] if self.channels_first else img[None, ...]

        out = self.sess.run([self.out_name], {self.inp_name: batch})[0]
        vec = out.reshape(-1).astype(np.float32)
        n = float(np.linalg.norm(vec))
        if not np.isfinite(n) or n < 1e-6:
            # Degenerate output, treated as "no embedding" by the extractor
            return np.zeros((0,), dtype=np.float32)
        return vec / n


def _resize_nn(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    h, w = img.shape[:2]
    new_w, new_h = size
    y_idx = (np.linspace(0, h - 1, new_h)).astype(int)
    x_idx = (np.linspace(0, w - 1, new_w)).astype(int)
    if img.ndim == 2:
        return img[y_idx][:, x_idx]
    return img[y_idx][:, x_idx, :]
