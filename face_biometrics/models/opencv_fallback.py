import math
import os
import numpy as np
from typing import List, Optional, Tuple
from .base import FaceDetector, FaceEmbedder, FaceGeometry, FaceRegionExtractor


def _load_cascades(names: List[str]):
    try:
        import cv2  # type: ignore
    except Exception as e:
        raise RuntimeError("OpenCV is required for Haar cascades") from e
    base = cv2.data.haarcascades
    cascades = []
    for n in names:
        path = base + n
        if os.path.exists(path):
            cascades.append(cv2.CascadeClassifier(path))
    if not cascades:
        raise RuntimeError(f"No Haar cascades found among {names}")
    return cv2, cascades


class HaarFaceDetector(FaceDetector):
    """Frontal-face cascade plus an eye cascade inside the upper half of each face.

    The eye cascade only fires on open eyes, so a detected eye reports an
    open probability of 1.0 and a missing one 0.0. Roll is estimated from the
    eye centers when both are found; yaw and pitch are not available.
    """

    input_format = "rgb"

    def __init__(self, min_face_px: int = 60):
        self._cv2, self.cascades = _load_cascades(["haarcascade_frontalface_default.xml"])
        _, self.eye_cascades = _load_cascades(["haarcascade_eye_tree_eyeglasses.xml", "haarcascade_eye.xml"])
        self.min_face_px = int(min_face_px)

    def detect(self, image: np.ndarray) -> List[FaceGeometry]:
        cv2 = self._cv2
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
        gray = cv2.equalizeHist(gray)
        faces: List[Tuple[int, int, int, int]] = []
        for cas in self.cascades:
            found = cas.detectMultiScale(
                gray, scaleFactor=1.1, minNeighbors=5, minSize=(self.min_face_px, self.min_face_px)
            )
            faces.extend((int(x), int(y), int(w), int(h)) for (x, y, w, h) in found)
        faces = _suppress_overlaps(faces)
        return [self._geometry(gray, f) for f in faces]

    def _geometry(self, gray: np.ndarray, face: Tuple[int, int, int, int]) -> FaceGeometry:
        x, y, w, h = face
        upper = gray[y: y + h // 2, x: x + w]
        eyes: List[Tuple[float, float]] = []
        for cas in self.eye_cascades:
            found = cas.detectMultiScale(upper, scaleFactor=1.1, minNeighbors=6, minSize=(w // 10, w // 10))
            eyes = [(ex + ew / 2.0, ey + eh / 2.0) for (ex, ey, ew, eh) in found]
            if eyes:
                break
        # Image-left half holds the subject's right eye; both must blink anyway
        left = [e for e in eyes if e[0] < w / 2.0]
        right = [e for e in eyes if e[0] >= w / 2.0]
        roll = None
        if left and right:
            lx, ly = left[0]
            rx, ry = right[0]
            roll = math.degrees(math.atan2(ry - ly, rx - lx))
        return FaceGeometry(
            bbox=(float(x), float(y), float(x + w), float(y + h)),
            roll=roll,
            left_eye_open=1.0 if left else 0.0,
            right_eye_open=1.0 if right else 0.0,
        )


class HaarRegionExtractor(FaceRegionExtractor):
    """Crops the largest frontal face from an image file and resizes it for the embedder."""

    def __init__(self, output_size: int = 160, min_face_px: int = 40):
        self._cv2, self.cascades = _load_cascades(
            ["haarcascade_frontalface_default.xml", "haarcascade_frontalface_alt2.xml"]
        )
        self.output_size = int(output_size)
        self.min_face_px = int(min_face_px)

    def extract_region(self, image_path: str) -> Optional[np.ndarray]:
        cv2 = self._cv2
        frame_bgr = cv2.imread(image_path, cv2.IMREAD_COLOR)
        if frame_bgr is None:
            return None
        gray = cv2.equalizeHist(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY))
        best: Optional[Tuple[int, int, int, int]] = None
        for cas in self.cascades:
            found = cas.detectMultiScale(
                gray, scaleFactor=1.05, minNeighbors=4, minSize=(self.min_face_px, self.min_face_px)
            )
            for (x, y, w, h) in found:
                if best is None or w * h > best[2] * best[3]:
                    best = (int(x), int(y), int(w), int(h))
            if best is not None:
                break
        if best is None:
            return None
        return crop_face(frame_bgr, best, self.output_size)


class DCTEmbedder(FaceEmbedder):
    dim = 128

    def embed(self, face_rgb: np.ndarray) -> np.ndarray:
        # Use luminance channel, approximate DCT via FFT magnitude top-left block (cv2-free)
        gray = _rgb_to_gray(face_rgb)
        gray = _resize_nn(gray, (32, 32)).astype(np.float32) / 255.0
        f = np.fft.fft2(gray)
        mag = np.abs(f)
        block = mag[:12, :12].flatten()
        if block.size < self.dim:
            block = np.pad(block, (0, self.dim - block.size), mode="constant")
        else:
            block = block[: self.dim]
        vec = block.astype(np.float32)
        # Ensure non-zero vector for degenerate inputs
        n = float(np.linalg.norm(vec))
        if n < 1e-6:
            vec[0] = 1.0
            n = 1.0
        return vec / n


def crop_face(frame_bgr: np.ndarray, box: Tuple[int, int, int, int], size: int) -> np.ndarray:
    """Padded square-ish crop around ``box`` (x, y, w, h), returned as RGB ``size``x``size``."""
    x, y, w, h = box
    pad = int(0.2 * w)
    x0 = max(0, x - pad)
    y0 = max(0, y - pad)
    x1 = min(frame_bgr.shape[1], x + w + pad)
    y1 = min(frame_bgr.shape[0], y + h + pad)
    crop = frame_bgr[y0:y1, x0:x1]
    if crop.size == 0:
        crop = frame_bgr[max(0, y):y + h, max(0, x):x + w]
    rgb = crop[..., ::-1].copy()
    try:
        import cv2  # type: ignore

        return cv2.resize(rgb, (size, size), interpolation=cv2.INTER_LINEAR)
    except ImportError:
        return _resize_nn(rgb, (size, size))


def _suppress_overlaps(faces: List[Tuple[int, int, int, int]]) -> List[Tuple[int, int, int, int]]:
    # Keep the largest of any boxes whose centers fall inside each other
    kept: List[Tuple[int, int, int, int]] = []
    for f in sorted(faces, key=lambda b: b[2] * b[3], reverse=True):
        cx, cy = f[0] + f[2] / 2.0, f[1] + f[3] / 2.0
        if any(k[0] <= cx <= k[0] + k[2] and k[1] <= cy <= k[1] + k[3] for k in kept):
            continue
        kept.append(f)
    return kept


def _rgb_to_gray(img_rgb: np.ndarray) -> np.ndarray:
    if img_rgb.ndim == 2:
        return img_rgb.astype(np.float32)
    return (0.299 * img_rgb[..., 0] + 0.587 * img_rgb[..., 1] + 0.114 * img_rgb[..., 2]).astype(np.float32)


def _resize_nn(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    # Very simple nearest-neighbor resize without cv2
    h, w = img.shape[:2]
    new_w, new_h = size
    y_idx = (np.linspace(0, h - 1, new_h)).astype(int)
    x_idx = (np.linspace(0, w - 1, new_w)).astype(int)
    if img.ndim == 2:
        return img[y_idx][:, x_idx]
    return img[y_idx][:, x_idx, :]
