import os
import tempfile


def _env_int(name: str, fallback: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return fallback


def _env_float(name: str, fallback: float) -> float:
    try:
        return float(os.getenv(name, ""))
    except ValueError:
        return fallback


class Settings:
    GEMINI_API_KEY: str = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-lite")
    UPLOAD_DIR: str = os.getenv("ZASSHA_UPLOAD_DIR", os.path.join(tempfile.gettempdir(), "zassha_uploads"))
    WORK_DIR: str = os.getenv("ZASSHA_WORK_DIR", os.path.join(tempfile.gettempdir(), "zassha_runs"))
    CHUNK_THRESHOLD_BYTES: int = _env_int("ZASSHA_CHUNK_THRESHOLD_BYTES", 50 * 1024 * 1024)
    CHUNK_SIZE_BYTES: int = _env_int("ZASSHA_CHUNK_SIZE_BYTES", 5 * 1024 * 1024)
    # 0 disables segmentation.
    SEGMENT_LEN_SEC: int = _env_int("ZASSHA_SEGMENT_LEN", 0)
    # UI progress allocation: upload 0..UPLOAD_PROGRESS_MAX, analysis UPLOAD_PROGRESS_MAX..100.
    UPLOAD_PROGRESS_MAX: int = _env_int("ZASSHA_UPLOAD_PROGRESS_MAX", 20)
    # 0 disables reaping of abandoned upload sessions.
    UPLOAD_SESSION_TTL_SEC: int = _env_int("ZASSHA_UPLOAD_SESSION_TTL_SEC", 0)
    FILE_POLL_INTERVAL_SEC: float = _env_float("ZASSHA_FILE_POLL_INTERVAL_SEC", 0.8)
    FILE_READY_TIMEOUT_SEC: float = _env_float("ZASSHA_FILE_READY_TIMEOUT_SEC", 120.0)
    RUN_TIMEOUT_SEC: float = _env_float("ZASSHA_RUN_TIMEOUT_SEC", 300.0)
    FFMPEG_BIN: str = os.getenv("ZASSHA_FFMPEG_BIN", "ffmpeg")
    MEDIA_CORS_ALLOWED_ORIGINS: list[str] = [
        origin.strip()
        for origin in os.getenv("MEDIA_CORS_ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    API_ROOT_PATH: str = os.getenv("API_ROOT_PATH", "")
    API_PREFIX: str = os.getenv("API_PREFIX", "/api")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
