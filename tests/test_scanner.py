import asyncio
import os

import cv2
import numpy as np
import pytest

from face_biometrics.app.errors import MultipleFacesDetected
from face_biometrics.models.base import FaceDetector
from face_biometrics.pipeline.frames import CameraFrame, FramePlane
from face_biometrics.pipeline.geometry import FaceGeometryEvaluator
from face_biometrics.pipeline.liveness import LivenessState, LivenessStateMachine
from face_biometrics.pipeline.scanner import LivenessScanner

from fakes import ScriptedDetector, face

W, H = 64, 48


def _frame(bgr):
    return CameraFrame.from_bgr(np.full((H, W, 3), bgr, dtype=np.uint8))


def _g(eyes):
    return [face(eyes=eyes, w=W, h=H)]


def _scanner(detector, work_dir, **kw):
    events = {"captured": [], "errors": [], "progress": []}
    scanner = LivenessScanner(
        detector,
        LivenessStateMachine(FaceGeometryEvaluator()),
        on_captured=events["captured"].append,
        on_error=events["errors"].append,
        on_progress=events["progress"].append,
        capture_dir=work_dir,
        **kw,
    )
    return scanner, events


def test_blink_writes_last_good_frame_as_jpeg(work_dir):
    detector = ScriptedDetector([_g((0.9, 0.9)), _g((0.1, 0.1)), _g((0.9, 0.9))])
    scanner, events = _scanner(detector, work_dir)
    frames = [_frame((0, 0, 200)), _frame((0, 200, 0)), _frame((200, 0, 0))]

    async def run():
        for f in frames:
            assert scanner.submit(f)
            await scanner.drain()

    asyncio.run(run())
    assert events["errors"] == []
    assert len(events["captured"]) == 1
    path = events["captured"][0]
    assert os.path.dirname(path) == work_dir
    img = cv2.imread(path)
    assert img.shape == (H, W, 3)
    # First frame was red (BGR 0,0,200)
    assert img[..., 2].mean() > 150
    assert img[..., 0].mean() < 50
    assert scanner.stopped
    assert [d.state for d in events["progress"]] == [
        LivenessState.READY_TO_BLINK,
        LivenessState.EYES_CLOSED_OBSERVED,
        LivenessState.CAPTURED,
    ]


def test_frames_after_capture_are_dropped(work_dir):
    detector = ScriptedDetector([_g((0.1, 0.1)), _g((0.9, 0.9))])
    scanner, events = _scanner(detector, work_dir)

    async def run():
        for _ in range(2):
            scanner.submit(_frame((50, 50, 50)))
            await scanner.drain()
        return scanner.submit(_frame((50, 50, 50)))

    assert asyncio.run(run()) is False
    assert len(events["captured"]) == 1
    assert len(detector.images) == 2


def test_frame_dropped_while_one_is_in_flight(work_dir):
    class SlowDetector(FaceDetector):
        def __init__(self):
            self.release = None
            self.calls = 0

        async def detect_async(self, image):
            self.calls += 1
            await self.release.wait()
            return []

        def detect(self, image):
            raise AssertionError("detect_async should be used")

    detector = SlowDetector()
    scanner, events = _scanner(detector, work_dir)

    async def run():
        detector.release = asyncio.Event()
        assert scanner.submit(_frame((1, 2, 3)))
        await asyncio.sleep(0)
        assert scanner.busy
        assert not scanner.submit(_frame((1, 2, 3)))
        detector.release.set()
        await scanner.drain()
        assert not scanner.busy
        assert scanner.submit(_frame((1, 2, 3)))
        await scanner.drain()

    asyncio.run(run())
    assert detector.calls == 2
    assert scanner.frames_accepted == 2
    assert scanner.frames_dropped == 1


def test_multiple_faces_reported_once_and_session_stops(work_dir):
    detector = ScriptedDetector([[face(cx=0.3, w=W, h=H), face(cx=0.7, w=W, h=H)]])
    scanner, events = _scanner(detector, work_dir)

    async def run():
        scanner.submit(_frame((0, 0, 0)))
        await scanner.drain()
        return scanner.submit(_frame((0, 0, 0)))

    assert asyncio.run(run()) is False
    assert len(events["errors"]) == 1
    assert isinstance(events["errors"][0], MultipleFacesDetected)
    assert events["captured"] == []
    assert scanner.stopped


def test_unconvertible_frame_is_skipped(work_dir):
    detector = ScriptedDetector([])
    scanner, events = _scanner(detector, work_dir)
    bad = CameraFrame("rgb565", W, H, [FramePlane(b"\x00" * (W * H * 2), W * 2, 2)])

    async def run():
        assert scanner.submit(bad)
        await scanner.drain()

    asyncio.run(run())
    assert detector.images == []
    assert events["progress"] == []
    assert not scanner.busy


def test_nv21_detector_gets_nv21_input(work_dir):
    detector = ScriptedDetector([[]])
    detector.input_format = "nv21"
    scanner, _ = _scanner(detector, work_dir)

    async def run():
        scanner.submit(_frame((10, 10, 10)))
        await scanner.drain()

    asyncio.run(run())
    data, w, h = detector.images[0]
    assert (w, h) == (W, H)
    assert len(data) == W * H * 3 // 2


def test_reset_rearms_after_stop(work_dir):
    detector = ScriptedDetector([])
    scanner, _ = _scanner(detector, work_dir)
    scanner.stop()
    scanner.stop()

    async def run():
        dropped = scanner.submit(_frame((0, 0, 0)))
        scanner.reset()
        accepted = scanner.submit(_frame((0, 0, 0)))
        await scanner.drain()
        return dropped, accepted

    assert asyncio.run(run()) == (False, True)


def test_submit_without_loop_raises(work_dir):
    scanner, _ = _scanner(ScriptedDetector([]), work_dir)
    with pytest.raises(RuntimeError):
        scanner.submit(_frame((0, 0, 0)))
    assert not scanner.busy


def test_submit_from_camera_thread(work_dir):
    detector = ScriptedDetector([_g((0.1, 0.1)), _g((0.9, 0.9))])

    async def run():
        loop = asyncio.get_running_loop()
        scanner, events = _scanner(detector, work_dir, loop=loop)
        for _ in range(2):
            accepted = await loop.run_in_executor(None, scanner.submit, _frame((0, 90, 0)))
            assert accepted
            await scanner.drain()
        return events

    events = asyncio.run(run())
    assert len(events["captured"]) == 1
    assert os.path.isfile(events["captured"][0])


def test_empty_frame_for_nv21_detector_is_skipped(work_dir):
    detector = ScriptedDetector([])
    detector.input_format = "nv21"
    scanner, events = _scanner(detector, work_dir)
    empty = CameraFrame("yuv420", 0, 0, [FramePlane(b"", 0), FramePlane(b"", 0), FramePlane(b"", 0)])

    # Awaited directly so a stray exception would surface here
    asyncio.run(scanner.process_frame(empty))
    assert detector.images == []
    assert events["errors"] == []
    assert not scanner.busy
