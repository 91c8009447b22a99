"""Builds enrollment/verification records and talks to the biometric backend.

Registration and recovery send the full record (embedding plus signing
material); challenge verification sends only the signed challenge. The
backend answers with ``{"code": ..., "message": ...}`` (older servers use
``status`` instead of ``code``), which is mapped onto the ``Server*``
outcome types below. Transport problems on those calls are outcomes too;
only the raw ``upload``/``upload_raw`` calls raise ``UploadFailure``.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union

import cv2
import numpy as np
import requests

from face_biometrics.app.errors import EmbeddingFailure, HardwareUnavailable, UploadFailure, UserCanceled
from face_biometrics.app.utils import remove_quietly
from face_biometrics.db.record import EnrollmentRecord
from face_biometrics.models.base import SignatureService
from face_biometrics.pipeline.embedding import EmbeddingExtractor
from face_biometrics.pipeline.frames import write_jpeg


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

# Square size of saved face crops
FACE_CROP_SIZE = 400


@dataclass(frozen=True)
class ServerSuccess:
    kind: ClassVar[str] = "success"
    message: Optional[str] = None


@dataclass(frozen=True)
class ServerSignatureInvalid:
    """This device's key is not registered; the app should start recovery."""

    kind: ClassVar[str] = "signature_invalid"
    message: Optional[str] = None


@dataclass(frozen=True)
class ServerEmbeddingMismatch:
    kind: ClassVar[str] = "embedding_mismatch"
    message: Optional[str] = None


@dataclass(frozen=True)
class ServerError:
    kind: ClassVar[str] = "error"
    message: Optional[str] = None


ServerOutcome = Union[ServerSuccess, ServerSignatureInvalid, ServerEmbeddingMismatch, ServerError]


def parse_server_response(status_code: int, body: str) -> ServerOutcome:
    if status_code < 200 or status_code >= 300:
        return ServerError(f"HTTP {status_code}: {body}")
    try:
        data = json.loads(body)
    except ValueError:
        return ServerError("Invalid response")
    if not isinstance(data, dict):
        return ServerError("Invalid response")

    raw = data.get("code")
    if raw is None:
        raw = data.get("status")
    code = str(raw).lower() if raw is not None else None
    message = data.get("message")
    message = str(message) if message is not None else None

    if code in ("success", "verified"):
        return ServerSuccess(message)
    if code in ("signature_invalid", "signature_not_registered"):
        return ServerSignatureInvalid(message or "Signature not valid. Please add this device to your account.")
    if code in ("embedding_mismatch", "face_mismatch"):
        return ServerEmbeddingMismatch(message or "Your face does not match our records.")
    return ServerError(message or f"Unknown response: {code}")


class ExportService:
    def __init__(
        self,
        extractor: EmbeddingExtractor,
        signer: Optional[SignatureService] = None,
        session: Optional[requests.Session] = None,
        timeout_s: float = 15.0,
        default_headers: Optional[Mapping[str, str]] = None,
        temp_dir: Optional[str] = None,
    ):
        self.extractor = extractor
        self.signer = signer
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.default_headers = dict(DEFAULT_HEADERS)
        self.default_headers.update(default_headers or {})
        self.temp_dir = temp_dir

    @property
    def has_signature_service(self) -> bool:
        return self.signer is not None

    def ensure_model_loaded(self) -> None:
        self.extractor.ensure_ready()

    def is_hardware_available(self) -> bool:
        return self.signer.is_available() if self.signer is not None else False

    def get_embedding_from_file(self, image_path: str) -> List[float]:
        self.ensure_model_loaded()
        return self.extractor.extract(image_path)

    def extract_face_crop(self, image_path: str) -> Optional[str]:
        """Save an enhanced, upscaled crop of the face to a temp JPEG.

        Uses the same region extractor as embedding, so the crop always holds
        a detectable face. Returns None when no face is found; the caller then
        keeps the full image. The returned file belongs to the caller.
        """
        self.ensure_model_loaded()
        try:
            region = self.extractor.region_extractor.extract_region(image_path)
            if region is None:
                return None
            bgr = cv2.cvtColor(np.asarray(region, dtype=np.uint8), cv2.COLOR_RGB2BGR)
            upscaled = cv2.resize(bgr, (FACE_CROP_SIZE, FACE_CROP_SIZE), interpolation=cv2.INTER_CUBIC)
            enhanced = enhance_face_crop(upscaled)
            fd, out = tempfile.mkstemp(prefix="face_crop_", suffix=".jpg", dir=self.temp_dir)
            os.close(fd)
            try:
                write_jpeg(out, enhanced, quality=95)
            except ValueError:
                remove_quietly(out)
                raise
            return out
        except (cv2.error, OSError, ValueError) as e:
            logger.warning("Face crop failed for %s: %s", image_path, e)
            return None

    def build_export_data(self, image_path: str, with_signature: Optional[bool] = None) -> EnrollmentRecord:
        """Embedding from ``image_path``, signed when asked (default: when a signer is configured)."""
        self.ensure_model_loaded()
        embedding = self.extractor.extract(image_path)
        do_sign = with_signature if with_signature is not None else self.signer is not None
        if not do_sign:
            return EnrollmentRecord.embedding_only(embedding)
        if self.signer is None:
            raise HardwareUnavailable(
                "SignatureService not configured. Pass a signer to ExportService, or use with_signature=False."
            )
        try:
            result = self.signer.sign_embedding(embedding)
        except (HardwareUnavailable, UserCanceled):
            raise
        except Exception as e:
            raise EmbeddingFailure("Signing failed", str(e)) from e
        return EnrollmentRecord(
            embedding=embedding,
            biometric_signature=result.signature,
            biometric_public_key=result.public_key,
            signed_payload=result.signed_payload,
            device_signature=result.device_signature,
        )

    def upload(self, api_url: str, record: EnrollmentRecord, headers: Optional[Mapping[str, str]] = None) -> str:
        return self.upload_raw(api_url, record.to_upload_json(), headers=headers)

    def upload_raw(self, api_url: str, payload: Dict[str, Any], headers: Optional[Mapping[str, str]] = None) -> str:
        """POST ``payload`` as JSON and return the response body. Raises UploadFailure."""
        try:
            resp = self._post(api_url, payload, headers)
        except requests.RequestException as e:
            raise UploadFailure("Upload failed", str(e)) from e
        if 200 <= resp.status_code < 300:
            return resp.text
        raise UploadFailure("Upload failed", f"HTTP {resp.status_code}: {resp.text}", resp.status_code, resp.text)

    def verify_and_upload(
        self, api_url: str, record: EnrollmentRecord, headers: Optional[Mapping[str, str]] = None
    ) -> ServerOutcome:
        """Registration or recovery: same payload, the endpoint decides which."""
        return self._post_and_parse(api_url, record.to_upload_json(), headers)

    def verify_with_challenge(
        self, api_url: str, challenge: str, headers: Optional[Mapping[str, str]] = None
    ) -> ServerOutcome:
        """Sign the server's challenge and post it, proving possession of the enrolled key.

        ``ServerSignatureInvalid`` means this device is not enrolled (e.g. a new
        phone): capture a selfie, build a record and send it to the recovery
        endpoint with ``verify_and_upload``.
        """
        if self.signer is None:
            raise HardwareUnavailable("verify_with_challenge requires a SignatureService")
        try:
            result = self.signer.sign_challenge(challenge)
        except (HardwareUnavailable, UserCanceled):
            raise
        except Exception as e:
            raise EmbeddingFailure("Signing failed", str(e)) from e
        payload: Dict[str, Any] = {"biometricSignature": result.signature}
        if result.public_key is not None:
            payload["biometricPublicKey"] = result.public_key
        payload["signedPayload"] = result.signed_payload
        if result.device_signature is not None:
            payload["deviceSignature"] = result.device_signature
        return self._post_and_parse(api_url, payload, headers)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def _post(self, api_url: str, payload: Dict[str, Any], headers: Optional[Mapping[str, str]]) -> requests.Response:
        all_headers = dict(self.default_headers)
        all_headers.update(headers or {})
        body = json.dumps(payload).encode("utf-8")
        return self.session.post(api_url, data=body, headers=all_headers, timeout=self.timeout_s)

    def _post_and_parse(
        self, api_url: str, payload: Dict[str, Any], headers: Optional[Mapping[str, str]]
    ) -> ServerOutcome:
        try:
            resp = self._post(api_url, payload, headers)
        except requests.RequestException as e:
            logger.warning("POST %s failed: %s", api_url, e)
            return ServerError(str(e))
        outcome = parse_server_response(resp.status_code, resp.text)
        logger.info("POST %s -> %s", api_url, outcome.kind)
        return outcome


def enhance_face_crop(img_bgr: np.ndarray) -> np.ndarray:
    """Brighten, add contrast, slightly desaturate, then sharpen an upscaled crop."""
    x = img_bgr.astype(np.float32) / 255.0
    # Gamma 0.88 with a 5% lift for dim indoor selfies
    x = np.clip(np.power(x, 0.88) * 1.05, 0.0, 1.0)
    # Contrast 115%
    x = np.clip((x - 0.5) * 1.15 + 0.5, 0.0, 1.0)
    # Saturation 0.85
    gray = (0.114 * x[..., 0] + 0.587 * x[..., 1] + 0.299 * x[..., 2])[..., None]
    x = np.clip(gray + (x - gray) * 0.85, 0.0, 1.0)
    out = (x * 255.0).astype(np.uint8)
    kernel = np.array([[0, -1, 0], [-1, 5, -1], [0, -1, 0]], dtype=np.float32)
    sharp = cv2.filter2D(out, -1, kernel)
    # Blend at 0.6 to avoid haloing
    return cv2.addWeighted(out, 0.4, sharp, 0.6, 0)
