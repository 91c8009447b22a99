from dataclasses import dataclass
from typing import Optional

from face_biometrics.app.config import GeometryConfig
from face_biometrics.models.base import FaceGeometry


MSG_CENTER = "Center your face in the oval"
MSG_TOO_CLOSE = "Move back - face too close"
MSG_TOO_FAR = "Move closer - face too far"
MSG_TURN = "Turn face straight - do not turn left or right"
MSG_TILT = "Keep head upright - do not tilt"
MSG_NOD = "Lift chin straight - do not nod"
MSG_BLINK = "Blink to capture"


@dataclass(frozen=True)
class ScanProgress:
    face_detected: bool = False
    face_in_oval: bool = False
    face_good_size: bool = False
    # Yaw, roll and pitch all within their limits
    looking_at_camera: bool = False
    # Both eyes open and pose passing; shown to the user, never gates capture
    eyes_on_camera: bool = False


@dataclass(frozen=True)
class GeometryCheck:
    progress: ScanProgress
    next_step: str
    # Oval, size and pose all pass
    can_capture: bool
    face_size: float


class FaceGeometryEvaluator:
    """Scores one detected face against the oval guide, size band and head-pose limits.

    The guidance string follows a fixed priority: oval, then size, then pose,
    then the blink prompt. Only the first failing check is reported.
    """

    def __init__(self, cfg: Optional[GeometryConfig] = None):
        self.cfg = cfg or GeometryConfig()

    def is_inside_oval(self, nx: float, ny: float) -> bool:
        dx = (nx - 0.5) / self.cfg.oval_half_width
        dy = (ny - 0.5) / self.cfg.oval_half_height
        return dx * dx + dy * dy <= 1.0

    def face_size(self, face: FaceGeometry, image_width: float, image_height: float) -> float:
        return (face.width / image_width + face.height / image_height) / 2.0

    def pose_ok(self, face: FaceGeometry) -> bool:
        # Detectors that omit yaw/roll cannot gate on pose
        if face.yaw is None or face.roll is None:
            return True
        pitch = face.pitch or 0.0
        return (
            abs(face.yaw) <= self.cfg.max_yaw_deg
            and abs(face.roll) <= self.cfg.max_roll_deg
            and abs(pitch) <= self.cfg.max_pitch_deg
        )

    def evaluate(self, face: FaceGeometry, image_width: float, image_height: float) -> GeometryCheck:
        if image_width <= 0 or image_height <= 0:
            raise ValueError(f"Invalid frame size {image_width}x{image_height}")
        cfg = self.cfg
        cx, cy = face.center
        in_oval = self.is_inside_oval(cx / image_width, cy / image_height)
        size = self.face_size(face, image_width, image_height)
        good_size = cfg.face_size_min <= size <= cfg.face_size_max
        looking = self.pose_ok(face)
        left = face.left_eye_open or 0.0
        right = face.right_eye_open or 0.0
        eyes_open = left >= cfg.eyes_open_min and right >= cfg.eyes_open_min

        progress = ScanProgress(
            face_detected=True,
            face_in_oval=in_oval,
            face_good_size=good_size,
            looking_at_camera=looking,
            eyes_on_camera=eyes_open and looking,
        )

        if not in_oval:
            return GeometryCheck(progress, MSG_CENTER, False, size)
        if not good_size:
            return GeometryCheck(progress, MSG_TOO_CLOSE if size > cfg.face_size_max else MSG_TOO_FAR, False, size)
        if not looking:
            return GeometryCheck(progress, self._pose_hint(face), False, size)
        return GeometryCheck(progress, MSG_BLINK, True, size)

    def _pose_hint(self, face: FaceGeometry) -> str:
        if abs(face.yaw or 0.0) > self.cfg.max_yaw_deg:
            return MSG_TURN
        if abs(face.roll or 0.0) > self.cfg.max_roll_deg:
            return MSG_TILT
        return MSG_NOD
