import logging
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from face_biometrics import __version__
from face_biometrics.app.config import load_config
from face_biometrics.app.errors import FaceBiometricsError, NoFaceDetected
from face_biometrics.app.utils import setup_logging, temp_path
from face_biometrics.pipeline.face_pipeline import BiometricsPipeline
from face_biometrics.pipeline.verifier import EmbeddingMismatch, SignatureMismatch, VerificationError, VerificationSuccess


logger = logging.getLogger(__name__)


class StatusResponse(BaseModel):
    enrolled: bool
    embedding_dim: Optional[int] = None
    has_signature: bool = False
    has_image: bool = False
    saved_at: Optional[str] = None


class EnrollResponse(BaseModel):
    embedding_dim: int
    has_signature: bool
    saved_at: Optional[str] = None


class VerifyResponse(BaseModel):
    outcome: str
    score: Optional[float] = None
    reason: Optional[str] = None


def create_app(pipeline: Optional[BiometricsPipeline] = None) -> FastAPI:
    if pipeline is None:
        cfg = load_config()
        setup_logging(cfg.log_level)
        pipeline = BiometricsPipeline(cfg)
    app = FastAPI(title="Face Biometrics API", version=__version__)
    app.state.pipeline = pipeline

    @app.get("/status", response_model=StatusResponse)
    def status():
        record = pipeline.store.load()
        if record is None:
            return StatusResponse(enrolled=False)
        return StatusResponse(
            enrolled=True,
            embedding_dim=len(record.embedding),
            has_signature=record.has_signature,
            has_image=record.enrolled_image_path is not None,
            saved_at=record.saved_at,
        )

    @app.post("/enroll", response_model=EnrollResponse)
    def enroll(file: UploadFile = File(...), with_signature: Optional[bool] = Form(None)):
        raw = file.file.read()
        with temp_path("upload_", directory=pipeline.cfg.paths.temp_dir) as path:
            with open(path, "wb") as f:
                f.write(raw)
            try:
                record = pipeline.enroll(path, with_signature=with_signature)
            except NoFaceDetected as e:
                raise HTTPException(status_code=422, detail=str(e))
            except FaceBiometricsError as e:
                logger.warning("Enrollment rejected: %s", e)
                raise HTTPException(status_code=400, detail=str(e))
        return EnrollResponse(
            embedding_dim=len(record.embedding), has_signature=record.has_signature, saved_at=record.saved_at
        )

    @app.post("/verify", response_model=VerifyResponse)
    def verify(file: UploadFile = File(...), lenient: bool = Form(False)):
        raw = file.file.read()
        with temp_path("upload_", directory=pipeline.cfg.paths.temp_dir) as path:
            with open(path, "wb") as f:
                f.write(raw)
            outcome = pipeline.verify(path, lenient=lenient)
        return _verify_response(outcome)

    @app.delete("/enrollment")
    def clear():
        pipeline.store.clear()
        return {"cleared": True}

    return app


def _verify_response(outcome) -> VerifyResponse:
    if isinstance(outcome, VerificationSuccess):
        return VerifyResponse(outcome=outcome.kind, score=outcome.score)
    if isinstance(outcome, EmbeddingMismatch):
        return VerifyResponse(outcome=outcome.kind, score=outcome.score, reason=outcome.reason)
    if isinstance(outcome, (SignatureMismatch, VerificationError)):
        return VerifyResponse(outcome=outcome.kind, reason=outcome.reason)
    return VerifyResponse(outcome=outcome.kind, reason="Nothing enrolled yet")
