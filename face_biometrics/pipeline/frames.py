"""Camera frame colour conversion.

Frames arrive either as planar YUV 4:2:0 (three planes, chroma planes may be
interleaved through ``bytes_per_pixel``) or as packed BGRA 8888. The converter
turns them into an RGB raster for analysis and into NV21 for detectors that
consume it. All functions are pure and raise ``FrameConversionError`` for
formats or buffers they cannot read.
"""

from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np

from face_biometrics.app.errors import FrameConversionError


YUV420 = "yuv420"
BGRA8888 = "bgra8888"

_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


@dataclass
class FramePlane:
    data: bytes
    bytes_per_row: int
    bytes_per_pixel: int = 1


@dataclass
class CameraFrame:
    format: str
    width: int
    height: int
    planes: List[FramePlane] = field(default_factory=list)

    @classmethod
    def from_bgr(cls, frame_bgr: np.ndarray) -> "CameraFrame":
        """Wrap an OpenCV BGR image (e.g. from ``VideoCapture.read``) as a BGRA frame."""
        bgra = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2BGRA)
        h, w = bgra.shape[:2]
        return cls(BGRA8888, w, h, [FramePlane(bgra.tobytes(), w * 4, 4)])


class FrameColorConverter:
    def to_rgb(self, frame: CameraFrame) -> np.ndarray:
        if frame.width <= 0 or frame.height <= 0:
            raise FrameConversionError(details=f"Invalid size {frame.width}x{frame.height}")
        if frame.format == YUV420:
            return self._yuv420_to_rgb(frame)
        if frame.format == BGRA8888:
            return self._bgra_to_rgb(frame)
        raise FrameConversionError(details=f"Format: {frame.format}")

    def to_nv21(self, frame: CameraFrame) -> Tuple[bytes, int, int]:
        """Return ``(nv21_bytes, width, height)``: full-res Y, then V/U pairs at half resolution."""
        if frame.width <= 0 or frame.height <= 0:
            raise FrameConversionError(details=f"Invalid size {frame.width}x{frame.height}")
        if frame.format == YUV420:
            y, u, v = self._yuv420_planes(frame)
            chroma = np.stack([v[::2, ::2], u[::2, ::2]], axis=-1)
        else:
            rgb = self.to_rgb(frame).astype(np.float64)
            r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
            luma = 0.299 * r + 0.587 * g + 0.114 * b
            y = _clamp(luma)
            sub = (slice(None, None, 2), slice(None, None, 2))
            vv = _clamp(0.877 * (r[sub] - luma[sub]) + 128.0)
            uu = _clamp(0.492 * (b[sub] - luma[sub]) + 128.0)
            chroma = np.stack([vv, uu], axis=-1)
        out = np.concatenate([y.reshape(-1), chroma.reshape(-1)])
        return out.astype(np.uint8).tobytes(), frame.width, frame.height

    def to_upright_bgr(self, frame: CameraFrame, sensor_orientation: int = 0, mirror: bool = False) -> np.ndarray:
        """RGB conversion, clockwise rotation by the sensor orientation, then un-mirroring."""
        bgr = cv2.cvtColor(self.to_rgb(frame), cv2.COLOR_RGB2BGR)
        bgr = rotate_image(bgr, sensor_orientation)
        if mirror:
            bgr = cv2.flip(bgr, 1)
        return bgr

    def _yuv420_planes(self, frame: CameraFrame) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        if len(frame.planes) < 3:
            raise FrameConversionError(details=f"YUV420 needs 3 planes, got {len(frame.planes)}")
        w, h = frame.width, frame.height
        y_plane, u_plane, v_plane = frame.planes[:3]
        ys = np.arange(h)
        xs = np.arange(w)
        y_idx = ys[:, None] * y_plane.bytes_per_row + xs[None, :]
        # Chroma planes share the row/pixel stride of the U plane
        uv_idx = u_plane.bytes_per_pixel * (xs[None, :] // 2) + u_plane.bytes_per_row * (ys[:, None] // 2)
        y_buf = np.frombuffer(y_plane.data, dtype=np.uint8)
        u_buf = np.frombuffer(u_plane.data, dtype=np.uint8)
        v_buf = np.frombuffer(v_plane.data, dtype=np.uint8)
        if y_idx[-1, -1] >= y_buf.size or uv_idx[-1, -1] >= min(u_buf.size, v_buf.size):
            raise FrameConversionError(details="YUV420 plane buffer too small for frame size")
        return y_buf[y_idx], u_buf[uv_idx], v_buf[uv_idx]

    def _yuv420_to_rgb(self, frame: CameraFrame) -> np.ndarray:
        y, u, v = self._yuv420_planes(frame)
        yf = y.astype(np.float64)
        uf = u.astype(np.float64) - 128.0
        vf = v.astype(np.float64) - 128.0
        r = _clamp(yf + 1.370705 * vf)
        g = _clamp(yf - 0.337633 * uf - 0.698001 * vf)
        b = _clamp(yf + 1.732446 * uf)
        return np.stack([r, g, b], axis=-1)

    def _bgra_to_rgb(self, frame: CameraFrame) -> np.ndarray:
        if not frame.planes:
            raise FrameConversionError(details="BGRA frame has no planes")
        plane = frame.planes[0]
        w, h = frame.width, frame.height
        row = plane.bytes_per_row or w * 4
        buf = np.frombuffer(plane.data, dtype=np.uint8)
        if row < w * 4 or buf.size < row * (h - 1) + w * 4:
            raise FrameConversionError(details="BGRA buffer too small for frame size")
        if buf.size < row * h:
            buf = np.pad(buf, (0, row * h - buf.size))
        bgra = buf[: row * h].reshape(h, row)[:, : w * 4].reshape(h, w, 4)
        return np.ascontiguousarray(bgra[..., [2, 1, 0]])


def rotate_image(img: np.ndarray, angle: int) -> np.ndarray:
    """Rotate clockwise by a multiple of 90 degrees."""
    angle = int(angle) % 360
    if angle == 0:
        return img
    if angle not in _ROTATIONS:
        raise ValueError(f"Unsupported rotation {angle}")
    return cv2.rotate(img, _ROTATIONS[angle])


def write_jpeg(path: str, img_bgr: np.ndarray, quality: int = 95) -> None:
    ok, buf = cv2.imencode(".jpg", img_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok or buf is None or buf.size == 0:
        raise ValueError("Failed to encode image as JPEG")
    with open(path, "wb") as f:
        f.write(buf.tobytes())


def _clamp(x: np.ndarray) -> np.ndarray:
    # Round half up, then clamp to a byte
    return np.clip(np.floor(x + 0.5), 0, 255).astype(np.uint8)
