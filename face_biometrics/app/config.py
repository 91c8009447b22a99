import logging
import os
import yaml
from dataclasses import dataclass, field
from typing import Dict, Optional


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = [
    os.environ.get("FACE_BIOMETRICS_CONFIG", ""),
    ".face-biometrics.yaml",
    "./config.yaml",
    "/etc/face-biometrics/config.yaml",
]


@dataclass
class CameraConfig:
    device_index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30
    # Clockwise rotation that makes sensor frames upright (0/90/180/270)
    sensor_orientation: int = 0
    # Front cameras stream a mirrored image
    mirror: bool = True


@dataclass
class GeometryConfig:
    # Normalized half-axes of the oval guide
    oval_half_width: float = 0.42
    oval_half_height: float = 0.40
    # Mean of normalized bbox width and height
    face_size_min: float = 0.18
    face_size_max: float = 0.55
    max_yaw_deg: float = 20.0
    max_roll_deg: float = 20.0
    max_pitch_deg: float = 20.0
    # Progress indicator only, never gates capture
    eyes_open_min: float = 0.50


@dataclass
class LivenessConfig:
    eye_closed_threshold: float = 0.25
    eye_open_threshold: float = 0.45


@dataclass
class BackendConfig:
    face_backend: str = "haar"
    # Embedder backend: 'dct' (fallback) | 'onnx'
    embedder_backend: str = "dct"
    model_path: Optional[str] = None
    embedding_dim: int = 128
    input_size: int = 160
    threads: int = max(1, os.cpu_count() - 1 if os.cpu_count() else 1)


@dataclass
class Thresholds:
    # Cosine similarity, >= threshold means same person
    similarity_threshold: float = 0.6
    # Gallery photo vs camera capture
    lenient_similarity_threshold: float = 0.4
    verify_signature: bool = True
    # Treat a missing public key on either side as a signature mismatch
    require_public_key: bool = False


@dataclass
class Paths:
    data_dir: str = os.path.abspath("./data")
    record_filename: str = "biometric_export_data.json"
    enrolled_image_filename: str = "enrolled_face.jpg"
    temp_dir: Optional[str] = None


@dataclass
class ExportConfig:
    api_url: Optional[str] = None
    recovery_url: Optional[str] = None
    timeout_s: float = 15.0
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class AppConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    thresholds: Thresholds = field(default_factory=Thresholds)
    paths: Paths = field(default_factory=Paths)
    export: ExportConfig = field(default_factory=ExportConfig)
    log_level: str = "INFO"


def _merge_dict(d: dict, u: dict) -> dict:
    for k, v in u.items():
        if isinstance(v, dict) and isinstance(d.get(k), dict):
            d[k] = _merge_dict(d[k], v)
        else:
            d[k] = v
    return d


def _as_dict(cfg: AppConfig) -> dict:
    return {
        "camera": dict(cfg.camera.__dict__),
        "geometry": dict(cfg.geometry.__dict__),
        "liveness": dict(cfg.liveness.__dict__),
        "backend": dict(cfg.backend.__dict__),
        "thresholds": dict(cfg.thresholds.__dict__),
        "paths": dict(cfg.paths.__dict__),
        "export": dict(cfg.export.__dict__),
        "log_level": cfg.log_level,
    }


def config_from_dict(data: dict, base: Optional[AppConfig] = None) -> AppConfig:
    """Deep-merge ``data`` over ``base`` (or the defaults) and rebuild the dataclasses."""
    merged = _merge_dict(_as_dict(base or AppConfig()), data or {})
    return AppConfig(
        camera=CameraConfig(**merged["camera"]),
        geometry=GeometryConfig(**merged["geometry"]),
        liveness=LivenessConfig(**merged["liveness"]),
        backend=BackendConfig(**merged["backend"]),
        thresholds=Thresholds(**merged["thresholds"]),
        paths=Paths(**merged["paths"]),
        export=ExportConfig(**merged["export"]),
        log_level=str(merged.get("log_level", "INFO")),
    )


def load_config(path: Optional[str] = None) -> AppConfig:
    cfg = AppConfig()
    candidates = [path] if path else [p for p in DEFAULT_CONFIG_PATHS if p]
    for p in candidates:
        if os.path.exists(p):
            try:
                with open(p, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                cfg = config_from_dict(data, cfg)
            except Exception as e:
                # Fall back to what we have so far on parse errors
                logger.warning("Ignoring config %s: %s", p, e)
    env_model = os.getenv("FACE_BIOMETRICS_MODEL_PATH")
    if env_model:
        cfg.backend.model_path = env_model
    # Ensure dirs
    os.makedirs(cfg.paths.data_dir, exist_ok=True)
    if cfg.paths.temp_dir:
        os.makedirs(cfg.paths.temp_dir, exist_ok=True)
    return cfg
