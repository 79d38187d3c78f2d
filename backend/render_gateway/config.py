"""
Gateway configuration.

All settings come from environment variables with module-level defaults.
GatewaySettings is frozen: build a new one (dataclasses.replace) to change
a value, e.g. in tests.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .routing.engines import EngineId

DEFAULT_HOST = "127.0.0.1"  # Localhost only by default
DEFAULT_PORT = 3000
DEFAULT_DATA_DIR = "./data"
DEFAULT_MAX_FILE_SIZE = 200 * 1024 * 1024
DEFAULT_MAX_RENDER_TIME = 600
DEFAULT_TIMEOUT_FACTOR = 10.0
DEFAULT_MIN_TIMEOUT = 60

DEFAULT_ALLOWED_MIME_TYPES: Tuple[str, ...] = (
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "image/jpeg",
    "image/png",
    "image/webp",
    "audio/mpeg",
    "audio/wav",
    "audio/x-wav",
    "audio/aac",
)

HW_ACCEL_MODES = ("auto", "cuda", "videotoolbox", "off")


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""
    pass


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class GatewaySettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_mime_types: Tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES
    max_render_time: int = DEFAULT_MAX_RENDER_TIME
    timeout_factor: float = DEFAULT_TIMEOUT_FACTOR
    min_timeout: int = DEFAULT_MIN_TIMEOUT
    ffmpeg_path: Optional[str] = None
    hw_accel: str = "auto"
    engines: Tuple[EngineId, ...] = (EngineId.SERVER_FFMPEG,)
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    # Multiplier on NETWORK retry delays; 0 disables waiting (tests)
    backoff_scale: float = 1.0

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def outputs_dir(self) -> Path:
        return self.data_dir / "outputs"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def errors_db(self) -> Path:
        return self.data_dir / "errors.db"

    def ensure_dirs(self) -> None:
        for path in (self.uploads_dir, self.outputs_dir, self.temp_dir):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        """
        Read settings from the environment.

        Args:
            env: Mapping to read instead of os.environ

        Raises:
            ConfigError: On malformed numbers, unknown engines or HW accel modes
        """
        env = os.environ if env is None else env

        hw_accel = env.get("FFMPEG_HW_ACCEL", "auto").strip().lower() or "auto"
        if hw_accel not in HW_ACCEL_MODES:
            raise ConfigError(
                f"FFMPEG_HW_ACCEL must be one of {', '.join(HW_ACCEL_MODES)}, got {hw_accel!r}"
            )

        engines = []
        for name in _split(env.get("RENDER_GATEWAY_ENGINES", EngineId.SERVER_FFMPEG.value)):
            try:
                engines.append(EngineId(name))
            except ValueError as e:
                raise ConfigError(f"Unknown engine in RENDER_GATEWAY_ENGINES: {name!r}") from e

        mime_types = env.get("RENDER_GATEWAY_ALLOWED_MIME_TYPES")

        return cls(
            host=env.get("RENDER_GATEWAY_HOST", DEFAULT_HOST),
            port=_int(env, "RENDER_GATEWAY_PORT", DEFAULT_PORT),
            data_dir=Path(env.get("RENDER_GATEWAY_DATA_DIR", DEFAULT_DATA_DIR)),
            max_file_size=_int(env, "RENDER_GATEWAY_MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            allowed_mime_types=_split(mime_types) if mime_types else DEFAULT_ALLOWED_MIME_TYPES,
            max_render_time=_int(env, "MAX_RENDER_TIME", DEFAULT_MAX_RENDER_TIME),
            timeout_factor=_float(env, "RENDER_GATEWAY_TIMEOUT_FACTOR", DEFAULT_TIMEOUT_FACTOR),
            min_timeout=_int(env, "RENDER_GATEWAY_MIN_TIMEOUT", DEFAULT_MIN_TIMEOUT),
            ffmpeg_path=env.get("FFMPEG_PATH") or None,
            hw_accel=hw_accel,
            engines=tuple(engines) or (EngineId.SERVER_FFMPEG,),
            cors_origins=_split(env.get("RENDER_GATEWAY_CORS_ORIGINS", "*")) or ("*",),
            log_level=env.get("RENDER_GATEWAY_LOG_LEVEL", "INFO").upper(),
        )
