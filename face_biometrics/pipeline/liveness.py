"""Blink-based liveness decision, one frame at a time.

The machine is fed the faces a detector found in each frame together with an
opaque reference to that frame. It never touches pixels: it only decides when
a capture happens and which buffered frame should be exported.

States::

    SEARCHING -> ADJUSTING -> READY_TO_BLINK -> EYES_CLOSED_OBSERVED -> CAPTURED

Zero faces drops back to SEARCHING and forgets the blink. A face that fails a
gate only moves to ADJUSTING; an observed eye closure is kept until the face
is back in position. More than one face stops the session and raises
``MultipleFacesDetected``. CAPTURED is terminal; ``reset()`` starts a new
session.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from face_biometrics.app.config import LivenessConfig
from face_biometrics.app.errors import MultipleFacesDetected
from face_biometrics.models.base import FaceGeometry
from face_biometrics.pipeline.geometry import FaceGeometryEvaluator, ScanProgress


logger = logging.getLogger(__name__)

MSG_NO_FACE = "No face detected - look at the camera"
MSG_OPEN_EYES = "Open your eyes to complete"
MSG_CAPTURED = "Captured"
MSG_STOPPED = "Stopped"


class LivenessState(str, Enum):
    SEARCHING = "searching"
    ADJUSTING = "adjusting"
    READY_TO_BLINK = "ready_to_blink"
    EYES_CLOSED_OBSERVED = "eyes_closed_observed"
    CAPTURED = "captured"


@dataclass(frozen=True)
class FrameDecision:
    state: LivenessState
    progress: ScanProgress
    status: str
    # Set only on the frame that completes the blink
    captured_frame: Any = None

    @property
    def captured(self) -> bool:
        return self.state is LivenessState.CAPTURED and self.captured_frame is not None


class LivenessStateMachine:
    def __init__(self, evaluator: FaceGeometryEvaluator, cfg: Optional[LivenessConfig] = None):
        self.evaluator = evaluator
        self.cfg = cfg or LivenessConfig()
        self.reset()

    def reset(self) -> None:
        self.state = LivenessState.SEARCHING
        self.progress = ScanProgress()
        self.status = MSG_NO_FACE
        self.eyes_were_closed = False
        self.stopped = False
        self._last_good_frame: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.stopped or self.state is LivenessState.CAPTURED

    def stop(self) -> None:
        if not self.stopped:
            logger.debug("Liveness session stopped in state %s", self.state.value)
        self.stopped = True

    def feed(self, faces: List[FaceGeometry], image_width: float, image_height: float, frame: Any = None) -> FrameDecision:
        if self.is_terminal:
            return self._decision()

        if not faces:
            self._forget("no face")
            self.progress = ScanProgress()
            self.status = MSG_NO_FACE
            return self._decision()

        if len(faces) > 1:
            self._forget("multiple faces")
            self.progress = ScanProgress()
            self.stop()
            raise MultipleFacesDetected("Please ensure only one person is in frame")

        face = faces[0]
        check = self.evaluator.evaluate(face, image_width, image_height)
        self.progress = check.progress

        if not check.can_capture:
            # A pending blink survives; the re-open must still pass every gate
            self._set_state(LivenessState.ADJUSTING)
            self.status = check.next_step
            return self._decision()

        left, right = face.left_eye_open, face.right_eye_open
        closed = _both(left, right, lambda p: p < self.cfg.eye_closed_threshold)
        opened = _both(left, right, lambda p: p >= self.cfg.eye_open_threshold)

        if closed:
            self.eyes_were_closed = True
            self._set_state(LivenessState.EYES_CLOSED_OBSERVED)
            self.status = MSG_OPEN_EYES
            return self._decision()

        if self.eyes_were_closed and opened:
            chosen = self._last_good_frame if self._last_good_frame is not None else frame
            source = "last good frame" if self._last_good_frame is not None else "blink frame"
            self._last_good_frame = None
            self._set_state(LivenessState.CAPTURED)
            self.status = MSG_CAPTURED
            self.stopped = True
            logger.info("Blink completed, capturing %s", source)
            return self._decision(captured_frame=chosen)

        if self.eyes_were_closed:
            # Eyes partly open after the closure, wait for a clear re-open
            self._set_state(LivenessState.EYES_CLOSED_OBSERVED)
            self.status = MSG_OPEN_EYES
            return self._decision()

        if opened:
            self._last_good_frame = frame
        self._set_state(LivenessState.READY_TO_BLINK)
        self.status = check.next_step
        return self._decision()

    def _forget(self, reason: str) -> None:
        if self.state is not LivenessState.SEARCHING:
            logger.debug("Liveness progress reset: %s", reason)
        self.eyes_were_closed = False
        self._last_good_frame = None
        self._set_state(LivenessState.SEARCHING)

    def _set_state(self, state: LivenessState) -> None:
        if state is not self.state:
            logger.debug("Liveness %s -> %s", self.state.value, state.value)
            self.state = state

    def _decision(self, captured_frame: Any = None) -> FrameDecision:
        status = self.status
        if self.stopped and self.state is not LivenessState.CAPTURED:
            status = MSG_STOPPED
        return FrameDecision(self.state, self.progress, status, captured_frame)


def _both(left: Optional[float], right: Optional[float], pred) -> bool:
    # Missing probabilities never count as open or closed
    if left is None or right is None:
        return False
    return pred(left) and pred(right)
