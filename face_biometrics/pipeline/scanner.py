import asyncio
import concurrent.futures
import logging
import os
import tempfile
import threading
from typing import Any, Callable, List, Optional

from face_biometrics.app.errors import EmbeddingFailure, FaceBiometricsError, FrameConversionError, MultipleFacesDetected
from face_biometrics.app.utils import remove_quietly
from face_biometrics.models.base import FaceDetector, FaceGeometry
from face_biometrics.pipeline.frames import CameraFrame, FrameColorConverter, write_jpeg
from face_biometrics.pipeline.liveness import FrameDecision, LivenessStateMachine


logger = logging.getLogger(__name__)


class LivenessScanner:
    """Feeds camera frames through detection and the liveness machine, one at a time.

    ``submit`` is meant to be called from the camera's frame callback. It
    returns immediately: the frame is either taken for evaluation (True) or
    dropped because another frame is still being evaluated or the session is
    over (False). Detection runs in the default executor unless the detector
    offers an ``async detect_async``.

    On capture the chosen frame is written upright to a temporary JPEG and
    handed to ``on_captured``; the receiver owns and must delete that file.
    """

    def __init__(
        self,
        detector: FaceDetector,
        machine: LivenessStateMachine,
        on_captured: Callable[[str], Any],
        on_error: Callable[[FaceBiometricsError], Any],
        on_progress: Optional[Callable[[FrameDecision], Any]] = None,
        converter: Optional[FrameColorConverter] = None,
        sensor_orientation: int = 0,
        mirror: bool = False,
        capture_dir: Optional[str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.detector = detector
        self.machine = machine
        self.on_captured = on_captured
        self.on_error = on_error
        self.on_progress = on_progress
        self.converter = converter or FrameColorConverter()
        self.sensor_orientation = sensor_orientation
        self.mirror = mirror
        self.capture_dir = capture_dir
        self._loop = loop
        self._gate = threading.Lock()
        self._in_flight = False
        self._stopped = False
        self._task: Any = None
        self.frames_accepted = 0
        self.frames_dropped = 0

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def stopped(self) -> bool:
        return self._stopped

    def submit(self, frame: CameraFrame) -> bool:
        with self._gate:
            if self._stopped or self.machine.is_terminal or self._in_flight:
                self.frames_dropped += 1
                return False
            self._in_flight = True
            self.frames_accepted += 1

        coro = self.process_frame(frame)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None and (self._loop is None or running is self._loop):
            self._task = running.create_task(coro)
        elif self._loop is not None:
            self._task = asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            self._in_flight = False
            raise RuntimeError("LivenessScanner.submit needs a running event loop or an explicit loop")
        return True

    async def drain(self) -> None:
        """Wait for the frame currently under evaluation, if any."""
        task = self._task
        if isinstance(task, concurrent.futures.Future):
            task = asyncio.wrap_future(task)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def stop(self) -> None:
        self._stopped = True
        self.machine.stop()

    def reset(self) -> None:
        """Re-arm after a capture or a failed session."""
        self.machine.reset()
        self._stopped = False

    async def process_frame(self, frame: CameraFrame) -> None:
        try:
            await self._evaluate(frame)
        finally:
            self._in_flight = False

    async def _evaluate(self, frame: CameraFrame) -> None:
        try:
            image = self._detector_input(frame)
        except FrameConversionError as e:
            logger.debug("Skipping frame: %s", e)
            return

        faces = await self._detect(image)
        if self._stopped:
            return

        try:
            decision = self.machine.feed(faces, frame.width, frame.height, frame)
        except MultipleFacesDetected as e:
            self.stop()
            logger.info("Session aborted: %s", e)
            self.on_error(e)
            return

        if self.on_progress is not None:
            self.on_progress(decision)
        if decision.captured:
            self.stop()
            await self._deliver(decision.captured_frame)

    def _detector_input(self, frame: CameraFrame):
        if getattr(self.detector, "input_format", "rgb") == "nv21":
            return self.converter.to_nv21(frame)
        return self.converter.to_rgb(frame)

    async def _detect(self, image) -> List[FaceGeometry]:
        detect_async = getattr(self.detector, "detect_async", None)
        if detect_async is not None:
            return list(await detect_async(image))
        loop = asyncio.get_running_loop()
        return list(await loop.run_in_executor(None, self.detector.detect, image))

    async def _deliver(self, frame: CameraFrame) -> None:
        loop = asyncio.get_running_loop()
        try:
            path = await loop.run_in_executor(None, self.write_capture, frame)
        except Exception as e:
            logger.warning("Capture could not be saved: %s", e)
            self.on_error(EmbeddingFailure("Failed to save capture", str(e)))
            return
        self.on_captured(path)

    def write_capture(self, frame: CameraFrame) -> str:
        """Write ``frame`` upright (and un-mirrored) to a new temporary JPEG."""
        image = self.converter.to_upright_bgr(frame, self.sensor_orientation, self.mirror)
        fd, path = tempfile.mkstemp(prefix="face_capture_", suffix=".jpg", dir=self.capture_dir)
        os.close(fd)
        try:
            write_jpeg(path, image, quality=95)
        except Exception:
            remove_quietly(path)
            raise
        logger.debug("Capture written to %s", path)
        return path
