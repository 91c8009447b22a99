from typing import Optional


class FaceBiometricsError(Exception):
    """Base for every failure the capture, extraction and export flow raises."""

    default_message = "Face biometrics error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.message} ({self.details})" if self.details else self.message


class NoFaceDetected(FaceBiometricsError):
    default_message = "No face detected"

    def __init__(self, details: Optional[str] = None):
        super().__init__(None, details)


class MultipleFacesDetected(FaceBiometricsError):
    default_message = "Multiple faces detected"

    def __init__(self, details: Optional[str] = None):
        super().__init__(None, details)


class HardwareUnavailable(FaceBiometricsError):
    default_message = "Biometric hardware unavailable"

    def __init__(self, details: Optional[str] = None):
        super().__init__(None, details)


class UserCanceled(FaceBiometricsError):
    default_message = "User canceled"

    def __init__(self, details: Optional[str] = None):
        super().__init__(None, details)


class EmbeddingFailure(FaceBiometricsError):
    default_message = "Embedding failed"


class FrameConversionError(FaceBiometricsError):
    default_message = "Frame conversion failed"


class UploadFailure(FaceBiometricsError):
    default_message = "Upload failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.status = status
        self.body = body
        super().__init__(message, details)
