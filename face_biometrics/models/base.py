from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import numpy as np


@dataclass
class FaceGeometry:
    bbox: Tuple[float, float, float, float]  # left, top, right, bottom
    yaw: Optional[float] = None  # degrees, left/right turn
    roll: Optional[float] = None  # degrees, tilt
    pitch: Optional[float] = None  # degrees, nod
    left_eye_open: Optional[float] = None  # probability in [0,1]
    right_eye_open: Optional[float] = None

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    @property
    def center(self) -> Tuple[float, float]:
        left, top, right, bottom = self.bbox
        return (left + right) / 2.0, (top + bottom) / 2.0


@dataclass
class SignResult:
    signature: str
    signed_payload: str
    public_key: Optional[str] = None
    device_signature: Optional[str] = None


class FaceDetector:
    """Returns zero or more faces for one frame.

    ``input_format`` is ``"rgb"`` (HxWx3 uint8 array) or ``"nv21"``
    (``(bytes, width, height)``), whichever the detector consumes.
    """

    input_format: str = "rgb"

    def detect(self, image) -> List[FaceGeometry]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class FaceRegionExtractor:
    def extract_region(self, image_path: str) -> Optional[np.ndarray]:
        """Return the RGB face crop found in the image file, or None."""
        raise NotImplementedError


class FaceEmbedder:
    dim: int = 128

    def embed(self, face_rgb: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class SignatureService:
    """Hardware-backed signing. Raises HardwareUnavailable or UserCanceled."""

    def is_available(self) -> bool:
        raise NotImplementedError

    def sign_embedding(self, embedding: Sequence[float]) -> SignResult:
        raise NotImplementedError

    def sign_challenge(self, challenge: str) -> SignResult:
        raise NotImplementedError
