from .base import FaceGeometry, SignResult, FaceDetector, FaceRegionExtractor, FaceEmbedder, SignatureService
from .opencv_fallback import HaarFaceDetector, HaarRegionExtractor, DCTEmbedder
try:
    from .onnx_facenet import ONNXFaceEmbedder
except Exception:  # optional dependency may be missing
    ONNXFaceEmbedder = None  # type: ignore

__all__ = [
    "FaceGeometry",
    "SignResult",
    "FaceDetector",
    "FaceRegionExtractor",
    "FaceEmbedder",
    "SignatureService",
    "HaarFaceDetector",
    "HaarRegionExtractor",
    "DCTEmbedder",
    "ONNXFaceEmbedder",
]
