import math

import pytest

from face_biometrics.app.config import GeometryConfig
from face_biometrics.models.base import FaceGeometry
from face_biometrics.pipeline.geometry import (
    MSG_BLINK,
    MSG_CENTER,
    MSG_NOD,
    MSG_TILT,
    MSG_TOO_CLOSE,
    MSG_TOO_FAR,
    MSG_TURN,
    FaceGeometryEvaluator,
)

from fakes import face


def test_oval_boundary_is_inclusive():
    ev = FaceGeometryEvaluator(GeometryConfig(oval_half_width=0.5, oval_half_height=0.25))
    assert ev.is_inside_oval(0.5, 0.5)
    assert ev.is_inside_oval(1.0, 0.5)
    assert ev.is_inside_oval(0.5, 0.75)
    assert not ev.is_inside_oval(1.0, 0.51)


def test_oval_matches_ellipse_equation():
    ev = FaceGeometryEvaluator()
    a, b = ev.cfg.oval_half_width, ev.cfg.oval_half_height
    for i in range(36):
        t = 2 * math.pi * i / 36
        assert ev.is_inside_oval(0.5 + 0.98 * a * math.cos(t), 0.5 + 0.98 * b * math.sin(t))
        assert not ev.is_inside_oval(0.5 + 1.02 * a * math.cos(t), 0.5 + 1.02 * b * math.sin(t))


def test_centered_good_face_can_capture():
    check = FaceGeometryEvaluator().evaluate(face(), 1000, 1000)
    assert check.can_capture
    assert check.next_step == MSG_BLINK
    assert check.progress.face_detected
    assert check.progress.face_in_oval
    assert check.progress.face_good_size
    assert check.progress.looking_at_camera
    assert check.progress.eyes_on_camera
    assert check.face_size == pytest.approx(0.3)


def test_size_band_hints():
    ev = FaceGeometryEvaluator()
    close = ev.evaluate(face(size=0.7), 1000, 1000)
    assert not close.can_capture
    assert close.next_step == MSG_TOO_CLOSE
    far = ev.evaluate(face(size=0.1), 1000, 1000)
    assert far.next_step == MSG_TOO_FAR
    assert ev.evaluate(face(size=0.18), 1000, 1000).can_capture
    assert ev.evaluate(face(size=0.55), 1000, 1000).can_capture


def test_size_uses_mean_of_width_and_height_fractions():
    f = FaceGeometry(bbox=(0.0, 0.0, 200.0, 100.0))
    assert FaceGeometryEvaluator().face_size(f, 1000, 500) == pytest.approx(0.2)


def test_pose_hints_in_order():
    ev = FaceGeometryEvaluator()
    assert ev.evaluate(face(yaw=25), 1000, 1000).next_step == MSG_TURN
    assert ev.evaluate(face(roll=-25), 1000, 1000).next_step == MSG_TILT
    assert ev.evaluate(face(pitch=30), 1000, 1000).next_step == MSG_NOD
    assert ev.evaluate(face(yaw=25, roll=25, pitch=25), 1000, 1000).next_step == MSG_TURN
    assert ev.evaluate(face(yaw=20, roll=-20, pitch=20), 1000, 1000).can_capture


def test_missing_pose_angles_do_not_gate():
    ev = FaceGeometryEvaluator()
    assert ev.evaluate(face(yaw=None, roll=None, pitch=None), 1000, 1000).can_capture
    assert ev.evaluate(face(yaw=None, roll=None, pitch=80), 1000, 1000).can_capture
    # Pitch alone missing counts as level
    assert ev.evaluate(face(pitch=None), 1000, 1000).can_capture


def test_oval_reported_before_size_and_pose():
    ev = FaceGeometryEvaluator()
    check = ev.evaluate(face(cx=0.05, cy=0.05, size=0.9, yaw=40), 1000, 1000)
    assert check.next_step == MSG_CENTER
    assert not check.progress.face_in_oval
    check = ev.evaluate(face(size=0.9, yaw=40), 1000, 1000)
    assert check.next_step == MSG_TOO_CLOSE
    assert not check.progress.looking_at_camera


def test_eyes_on_camera_is_advisory():
    ev = FaceGeometryEvaluator()
    check = ev.evaluate(face(eyes=(0.3, 0.9)), 1000, 1000)
    assert check.can_capture
    assert not check.progress.eyes_on_camera
    check = ev.evaluate(face(eyes=(0.9, 0.9), yaw=30), 1000, 1000)
    assert not check.progress.eyes_on_camera


def test_invalid_frame_size_raises():
    with pytest.raises(ValueError):
        FaceGeometryEvaluator().evaluate(face(), 0, 1000)
