import logging
import os
from contextlib import ExitStack
from typing import List, Optional, Sequence

import cv2
import numpy as np
from PIL import Image, ImageOps

from face_biometrics.app.errors import EmbeddingFailure, FaceBiometricsError, FrameConversionError, NoFaceDetected
from face_biometrics.app.utils import temp_path
from face_biometrics.models.base import FaceEmbedder, FaceRegionExtractor
from face_biometrics.pipeline.frames import CameraFrame, FrameColorConverter, rotate_image, write_jpeg


logger = logging.getLogger(__name__)

ROTATION_LADDER: Sequence[int] = (0, 90, 180, 270)


class EmbeddingExtractor:
    """Image file -> face embedding, with an orientation-recovery ladder.

    The image is first made upright from its EXIF orientation. Each angle in
    ``ROTATION_LADDER`` is then tried in turn: the face-region extractor runs
    on the rotated working image and, if it finds a face, the embedder turns
    the region into a vector. The first non-empty vector wins. Every temp file
    written along the way is removed before returning or raising.
    """

    def __init__(
        self,
        region_extractor: FaceRegionExtractor,
        embedder: FaceEmbedder,
        converter: Optional[FrameColorConverter] = None,
        temp_dir: Optional[str] = None,
        jpeg_quality: int = 95,
    ):
        self.region_extractor = region_extractor
        self.embedder = embedder
        self.converter = converter or FrameColorConverter()
        self.temp_dir = temp_dir
        self.jpeg_quality = jpeg_quality
        self._ready = False

    @property
    def dim(self) -> int:
        return int(getattr(self.embedder, "dim", 0))

    def ensure_ready(self) -> None:
        """Run the embedder once so model loading failures surface before the first capture."""
        if self._ready:
            return
        try:
            self.embedder.embed(np.zeros((160, 160, 3), dtype=np.uint8))
        except Exception as e:
            raise EmbeddingFailure("Failed to load face verification model", str(e)) from e
        self._ready = True

    def extract(self, image_path: str) -> List[float]:
        if not os.path.isfile(image_path):
            raise EmbeddingFailure("Image file does not exist", image_path)

        with ExitStack() as stack:
            upright = self._load_upright(image_path)
            if upright is not None:
                baseline_path = stack.enter_context(temp_path("exif_", directory=self.temp_dir))
                write_jpeg(baseline_path, upright, self.jpeg_quality)
            else:
                baseline_path = image_path

            last_error: Optional[NoFaceDetected] = None
            for angle in ROTATION_LADDER:
                try:
                    vec = self._attempt(baseline_path, upright, angle)
                except NoFaceDetected as e:
                    last_error = e
                    continue
                except FaceBiometricsError:
                    raise
                except Exception as e:
                    msg = str(e).lower()
                    if "no face" in msg or "face not found" in msg:
                        last_error = NoFaceDetected(str(e))
                        continue
                    raise EmbeddingFailure("Embedding extraction failed", str(e)) from e
                if vec:
                    if angle:
                        logger.info("Face found after rotating %s by %d degrees", os.path.basename(image_path), angle)
                    return vec

        raise last_error or NoFaceDetected("No face found in image by face verification")

    def extract_from_frame(self, frame: CameraFrame, sensor_orientation: int = 0, mirror: bool = False) -> List[float]:
        try:
            image = self.converter.to_upright_bgr(frame, sensor_orientation, mirror)
        except FrameConversionError as e:
            raise EmbeddingFailure("Failed to convert camera frame", str(e)) from e
        with temp_path("face_biometrics_", directory=self.temp_dir) as path:
            try:
                write_jpeg(path, image, self.jpeg_quality)
            except ValueError as e:
                raise EmbeddingFailure("Failed to encode image as JPEG", str(e)) from e
            return self.extract(path)

    def _attempt(self, baseline_path: str, upright: Optional[np.ndarray], angle: int) -> Optional[List[float]]:
        with ExitStack() as stack:
            work_path = baseline_path
            if angle:
                if upright is None:
                    raise EmbeddingFailure("Could not decode image", baseline_path)
                work_path = stack.enter_context(temp_path(f"rotated_{angle}_", directory=self.temp_dir))
                try:
                    write_jpeg(work_path, rotate_image(upright, angle), self.jpeg_quality)
                except ValueError as e:
                    raise EmbeddingFailure("Could not encode rotated image", str(e)) from e

            region = self.region_extractor.extract_region(work_path)
            if region is None:
                logger.debug("No face region at %d degrees", angle)
                return None
            emb = self.embedder.embed(region)
            vec = [float(x) for x in np.asarray(emb, dtype=np.float64).reshape(-1)]
            if not vec:
                logger.debug("Empty embedding at %d degrees", angle)
            return vec

    def _load_upright(self, image_path: str) -> Optional[np.ndarray]:
        """Decode and apply EXIF orientation. None if the file cannot be decoded."""
        try:
            with Image.open(image_path) as im:
                im = ImageOps.exif_transpose(im)
                rgb = np.asarray(im.convert("RGB"))
        except Exception as e:
            logger.warning("Could not decode %s, using original bytes: %s", image_path, e)
            return None
        return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
