import logging
from typing import Any, Callable, Optional

import requests

from face_biometrics.api.client import ExportService
from face_biometrics.app.config import AppConfig
from face_biometrics.app.errors import FaceBiometricsError
from face_biometrics.db import EnrollmentRecord, LocalStore
from face_biometrics.models import (
    DCTEmbedder,
    FaceDetector,
    HaarFaceDetector,
    HaarRegionExtractor,
    ONNXFaceEmbedder,
    SignatureService,
)
from face_biometrics.pipeline.embedding import EmbeddingExtractor
from face_biometrics.pipeline.frames import FrameColorConverter
from face_biometrics.pipeline.geometry import FaceGeometryEvaluator
from face_biometrics.pipeline.liveness import FrameDecision, LivenessStateMachine
from face_biometrics.pipeline.scanner import LivenessScanner
from face_biometrics.pipeline.verifier import LocalVerifier, VerificationOutcome


logger = logging.getLogger(__name__)


class BiometricsPipeline:
    """Wires the default backends, store, verifier and export service from config.

    Any collaborator can be passed in explicitly; only the ones left as None
    are built from ``cfg``.
    """

    def __init__(
        self,
        cfg: AppConfig,
        detector: Optional[FaceDetector] = None,
        extractor: Optional[EmbeddingExtractor] = None,
        store: Optional[LocalStore] = None,
        signer: Optional[SignatureService] = None,
        session: Optional[requests.Session] = None,
    ):
        self.cfg = cfg
        self.converter = FrameColorConverter()
        self._detector = detector
        self.extractor = extractor or EmbeddingExtractor(
            HaarRegionExtractor(output_size=cfg.backend.input_size),
            self._build_embedder(),
            converter=self.converter,
            temp_dir=cfg.paths.temp_dir,
        )
        self.store = store or LocalStore(
            cfg.paths.data_dir, cfg.paths.record_filename, cfg.paths.enrolled_image_filename
        )
        self.verifier = LocalVerifier(
            self.store,
            self.extractor,
            similarity_threshold=cfg.thresholds.similarity_threshold,
            verify_signature=cfg.thresholds.verify_signature,
            require_public_key=cfg.thresholds.require_public_key,
        )
        self.export = ExportService(
            self.extractor,
            signer=signer,
            session=session,
            timeout_s=cfg.export.timeout_s,
            default_headers=cfg.export.headers,
            temp_dir=cfg.paths.temp_dir,
        )

    @property
    def detector(self) -> FaceDetector:
        """Built on first use; raises ``FaceBiometricsError`` when the cascades cannot be loaded."""
        if self._detector is None:
            self._detector = self._build_detector()
        return self._detector

    def _build_detector(self) -> FaceDetector:
        backend = self.cfg.backend.face_backend.lower()
        if backend != "haar":
            logger.warning("Unknown face backend %r, using haar", backend)
        try:
            return HaarFaceDetector()
        except RuntimeError as e:
            raise FaceBiometricsError("Face detector unavailable", str(e)) from e

    def _build_embedder(self):
        backend = self.cfg.backend.embedder_backend.lower()
        if backend in ("onnx", "facenet", "onnx_facenet") and ONNXFaceEmbedder is not None:
            try:
                return ONNXFaceEmbedder(
                    model_path=self.cfg.backend.model_path,
                    dim=self.cfg.backend.embedding_dim,
                    input_size=self.cfg.backend.input_size,
                    threads=self.cfg.backend.threads,
                )
            except RuntimeError as e:
                logger.warning("ONNX embedder unavailable (%s), falling back to DCT", e)
        return DCTEmbedder()

    def new_scanner(
        self,
        on_captured: Callable[[str], Any],
        on_error: Callable[[FaceBiometricsError], Any],
        on_progress: Optional[Callable[[FrameDecision], Any]] = None,
        loop=None,
    ) -> LivenessScanner:
        machine = LivenessStateMachine(FaceGeometryEvaluator(self.cfg.geometry), self.cfg.liveness)
        return LivenessScanner(
            self.detector,
            machine,
            on_captured=on_captured,
            on_error=on_error,
            on_progress=on_progress,
            converter=self.converter,
            sensor_orientation=self.cfg.camera.sensor_orientation,
            mirror=self.cfg.camera.mirror,
            capture_dir=self.cfg.paths.temp_dir,
            loop=loop,
        )

    def enroll(self, image_path: str, with_signature: Optional[bool] = None) -> EnrollmentRecord:
        """Build the record from ``image_path`` and store it with a copy of the image."""
        record = self.export.build_export_data(image_path, with_signature=with_signature)
        with open(image_path, "rb") as f:
            image = f.read()
        return self.store.save(record, image)

    def verify(self, image_path: str, lenient: bool = False, public_key: Optional[str] = None) -> VerificationOutcome:
        threshold = self.cfg.thresholds.lenient_similarity_threshold if lenient else None
        return self.verifier.verify(image_path, public_key=public_key, threshold=threshold)

    def close(self) -> None:
        self.export.close()
        if self._detector is not None:
            self._detector.close()
