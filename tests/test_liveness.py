import pytest

from face_biometrics.app.errors import MultipleFacesDetected
from face_biometrics.pipeline.geometry import MSG_BLINK, MSG_CENTER, FaceGeometryEvaluator
from face_biometrics.pipeline.liveness import MSG_NO_FACE, MSG_OPEN_EYES, LivenessState, LivenessStateMachine

from fakes import face

OPEN = (0.9, 0.9)
CLOSED = (0.1, 0.1)
HALF = (0.3, 0.3)


def _machine():
    return LivenessStateMachine(FaceGeometryEvaluator())


def _feed(m, eyes, frame, **kw):
    return m.feed([face(eyes=eyes, **kw)], 1000, 1000, frame)


def test_starts_searching():
    m = _machine()
    assert m.state is LivenessState.SEARCHING
    assert m.status == MSG_NO_FACE
    assert not m.is_terminal


def test_blink_captures_last_good_frame():
    m = _machine()
    d = _feed(m, OPEN, "f1")
    assert d.state is LivenessState.READY_TO_BLINK
    assert d.status == MSG_BLINK
    d = _feed(m, CLOSED, "f2")
    assert d.state is LivenessState.EYES_CLOSED_OBSERVED
    assert d.status == MSG_OPEN_EYES
    assert not d.captured
    d = _feed(m, OPEN, "f3")
    assert d.state is LivenessState.CAPTURED
    assert d.captured
    assert d.captured_frame == "f1"
    assert m.is_terminal


def test_last_good_frame_is_latest_before_closure():
    m = _machine()
    _feed(m, OPEN, "f1")
    _feed(m, OPEN, "f2")
    _feed(m, CLOSED, "f3")
    d = _feed(m, HALF, "f4")
    assert d.state is LivenessState.EYES_CLOSED_OBSERVED
    assert not d.captured
    d = _feed(m, OPEN, "f5")
    assert d.captured_frame == "f2"


def test_blink_without_prior_open_frame_captures_reopen_frame():
    m = _machine()
    _feed(m, CLOSED, "f1")
    d = _feed(m, OPEN, "f2")
    assert d.captured_frame == "f2"


def test_exactly_one_capture_per_session():
    m = _machine()
    captures = []
    for eyes, frame in [(OPEN, "a"), (CLOSED, "b"), (OPEN, "c"), (CLOSED, "d"), (OPEN, "e")]:
        d = _feed(m, eyes, frame)
        if d.captured:
            captures.append(d.captured_frame)
    assert captures == ["a"]
    assert m.state is LivenessState.CAPTURED


def test_no_face_resets_blink_and_never_raises():
    m = _machine()
    _feed(m, OPEN, "f1")
    _feed(m, CLOSED, "f2")
    d = m.feed([], 1000, 1000, "f3")
    assert d.state is LivenessState.SEARCHING
    assert d.status == MSG_NO_FACE
    assert not m.eyes_were_closed
    d = _feed(m, OPEN, "f4")
    assert not d.captured
    assert d.state is LivenessState.READY_TO_BLINK


def test_repeated_empty_frames_stay_searching():
    m = _machine()
    for _ in range(5):
        assert m.feed([], 640, 480).state is LivenessState.SEARCHING


def test_multiple_faces_raise_and_stop_session():
    m = _machine()
    _feed(m, OPEN, "f1")
    with pytest.raises(MultipleFacesDetected):
        m.feed([face(cx=0.3), face(cx=0.7)], 1000, 1000, "f2")
    assert m.is_terminal
    d = _feed(m, CLOSED, "f3")
    assert not d.captured
    assert d.status == "Stopped"


def test_leaving_the_oval_keeps_the_pending_blink():
    m = _machine()
    _feed(m, OPEN, "f1")
    _feed(m, CLOSED, "f2")
    d = _feed(m, CLOSED, "f3", cx=0.05)
    assert d.state is LivenessState.ADJUSTING
    assert d.status == MSG_CENTER
    assert m.eyes_were_closed
    d = _feed(m, OPEN, "f4")
    assert d.state is LivenessState.CAPTURED
    assert d.captured_frame == "f1"


def test_reopen_outside_the_oval_does_not_capture():
    m = _machine()
    _feed(m, OPEN, "f1")
    _feed(m, CLOSED, "f2")
    d = _feed(m, OPEN, "f3", cx=0.05)
    assert d.state is LivenessState.ADJUSTING
    assert not d.captured
    assert m.eyes_were_closed
    d = _feed(m, HALF, "f4")
    assert d.state is LivenessState.EYES_CLOSED_OBSERVED
    assert _feed(m, OPEN, "f5").captured_frame == "f1"


def test_closure_during_bad_pose_is_not_recorded():
    m = _machine()
    d = _feed(m, CLOSED, "f1", yaw=35)
    assert d.state is LivenessState.ADJUSTING
    assert not m.eyes_were_closed
    d = _feed(m, OPEN, "f2")
    assert not d.captured


def test_blink_survives_a_bad_pose_frame():
    m = _machine()
    _feed(m, CLOSED, "f1")
    _feed(m, CLOSED, "f2", yaw=35)
    assert m.eyes_were_closed
    assert _feed(m, OPEN, "f3").captured_frame == "f3"


def test_missing_eye_probabilities_never_transition():
    m = _machine()
    d = _feed(m, (None, None), "f1")
    assert d.state is LivenessState.READY_TO_BLINK
    d = _feed(m, (0.1, None), "f2")
    assert d.state is LivenessState.READY_TO_BLINK
    assert not m.eyes_were_closed


def test_one_eye_closed_is_not_a_blink():
    m = _machine()
    _feed(m, OPEN, "f1")
    d = _feed(m, (0.1, 0.9), "f2")
    assert d.state is LivenessState.READY_TO_BLINK
    assert not m.eyes_were_closed


def test_reset_starts_a_new_session():
    m = _machine()
    _feed(m, CLOSED, "f1")
    _feed(m, OPEN, "f2")
    m.reset()
    assert m.state is LivenessState.SEARCHING
    assert not m.is_terminal
    _feed(m, CLOSED, "f3")
    assert _feed(m, OPEN, "f4").captured_frame == "f4"


def test_stop_is_idempotent():
    m = _machine()
    m.stop()
    m.stop()
    assert m.is_terminal
    assert not _feed(m, OPEN, "f1").captured
