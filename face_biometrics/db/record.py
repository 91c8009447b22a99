import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class EnrollmentRecord:
    """Face embedding plus optional signing material, as enrolled or exported.

    ``biometric_signature`` is empty for embedding-only records.
    """

    embedding: List[float] = field(default_factory=list)
    biometric_signature: str = ""
    biometric_public_key: Optional[str] = None
    signed_payload: Optional[str] = None
    device_signature: Optional[str] = None
    enrolled_image_path: Optional[str] = None
    saved_at: Optional[str] = None

    @classmethod
    def embedding_only(cls, embedding) -> "EnrollmentRecord":
        return cls(embedding=[float(v) for v in embedding])

    @property
    def has_signature(self) -> bool:
        return bool(self.biometric_signature)

    def to_json(self) -> Dict[str, Any]:
        """Wire/storage form; absent optional fields are omitted rather than null."""
        out: Dict[str, Any] = {"embedding": [float(v) for v in self.embedding]}
        if self.biometric_signature:
            out["biometricSignature"] = self.biometric_signature
        if self.biometric_public_key is not None:
            out["biometricPublicKey"] = self.biometric_public_key
        if self.signed_payload is not None:
            out["signedPayload"] = self.signed_payload
        if self.device_signature is not None:
            out["deviceSignature"] = self.device_signature
        if self.enrolled_image_path is not None:
            out["enrolledImagePath"] = self.enrolled_image_path
        if self.saved_at is not None:
            out["savedAt"] = self.saved_at
        return out

    def to_upload_json(self) -> Dict[str, Any]:
        """Registration/recovery request body: no local paths or timestamps."""
        out = self.to_json()
        out.pop("enrolledImagePath", None)
        out.pop("savedAt", None)
        return out

    @classmethod
    def from_json(cls, data: Any) -> "EnrollmentRecord":
        """Parse a stored document. Raises ValueError if the shape is wrong."""
        if not isinstance(data, dict):
            raise ValueError("Record must be a JSON object")
        emb = data.get("embedding")
        if not isinstance(emb, list) or not emb:
            raise ValueError("Record has no embedding")
        embedding = [_as_float(v) for v in emb]
        return cls(
            embedding=embedding,
            biometric_signature=_opt_str(data, "biometricSignature") or "",
            biometric_public_key=_opt_str(data, "biometricPublicKey"),
            signed_payload=_opt_str(data, "signedPayload"),
            device_signature=_opt_str(data, "deviceSignature"),
            enrolled_image_path=_opt_str(data, "enrolledImagePath"),
            saved_at=_opt_str(data, "savedAt"),
        )


def _as_float(v: Any) -> float:
    if isinstance(v, bool):
        raise ValueError("Embedding values must be numbers")
    if not isinstance(v, (int, float, str)):
        raise ValueError(f"Embedding value of type {type(v).__name__}")
    try:
        f = float(v)
    except OverflowError as e:
        raise ValueError("Embedding value out of range") from e
    if not math.isfinite(f):
        raise ValueError("Embedding values must be finite")
    return f


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    v = data.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValueError(f"{key} must be a string")
    return v
