from typing import Dict, List, Optional
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    PROJECT_NAME: str = "ScribeFlow"
    VERSION: str = "1.0.0"

    # Transcription service
    API_BASE_URL: str = "http://localhost:8000/api/v1/audio/transcriptions"
    API_KEY: Optional[str] = None

    # Provider selection
    TRANSCRIPTION_PROVIDER: str = "service"  # "service" or "custom"
    REMOTE_JOBS_ENABLED: bool = True
    CUSTOM_TRANSCRIPTION_ENDPOINT: Optional[str] = None
    CUSTOM_TRANSCRIPTION_API_KEY: Optional[str] = None
    CUSTOM_TRANSCRIPTION_MODEL: Optional[str] = None

    # Input limits
    SUPPORTED_AUDIO_EXTENSIONS: List[str] = ["wav", "m4a", "webm", "ogg", "mp3"]
    AUDIO_MIME_TYPES: Dict[str, str] = {
        "wav": "audio/wav",
        "m4a": "audio/mp4",
        "webm": "audio/webm",
        "ogg": "audio/ogg",
        "mp3": "audio/mpeg",
    }
    MAX_FILE_SIZE: int = 2 * 1024 * 1024 * 1024  # 2 GB
    JOB_MAX_AUDIO_BYTES: int = 500 * 1024 * 1024  # 500 MB
    DIRECT_UPLOAD_MAX_BYTES: int = 25 * 1024 * 1024  # 25 MB
    CUSTOM_UPLOAD_MAX_BYTES: int = 25 * 1024 * 1024  # 25 MB

    # Audio processing
    TARGET_SAMPLE_RATES: Dict[str, int] = {
        "wav": 16000,
        "m4a": 16000,
        "mp3": 16000,
        "webm": 48000,
        "ogg": 16000,
    }
    DEFAULT_TARGET_SAMPLE_RATE: int = 16000
    AUTO_RESAMPLING_ENABLED: bool = True
    CHUNK_OVERLAP_SECONDS: float = 1.0
    WAV_ATTENUATION: float = 0.8

    # Remote jobs
    JOB_POLL_INTERVAL: float = 2.0  # seconds
    JOB_KICK_INTERVAL: float = 60.0  # seconds
    JOB_TIMEOUT: float = 30 * 60.0  # seconds
    REQUEST_TIMEOUT: float = 120.0  # seconds

    # Upload scheduling
    MAX_CONCURRENT_UPLOADS: int = 1
    MAX_RETRIES: int = 2
    RETRY_DELAY: float = 1.0  # Initial retry delay in seconds
    RETRY_MAX_DELAY: float = 10.0
    QUEUE_UPDATE_INTERVAL: float = 2.0

    # Errors and logging
    ERROR_MESSAGE_MAX_LENGTH: int = 120
    LOG_DIR: str = "logs"
    LOG_TO_FILE: bool = False

    @field_validator("TRANSCRIPTION_PROVIDER")
    def normalize_provider(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("service", "custom"):
            raise ValueError(f"Unknown transcription provider: {v}")
        return v

    @field_validator("SUPPORTED_AUDIO_EXTENSIONS")
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [ext.lower().lstrip(".") for ext in v]

    @property
    def is_custom_provider(self) -> bool:
        return self.TRANSCRIPTION_PROVIDER == "custom"

    def direct_upload_limit(self) -> int:
        """Largest payload a single direct transcription call may carry"""
        return self.CUSTOM_UPLOAD_MAX_BYTES if self.is_custom_provider else self.DIRECT_UPLOAD_MAX_BYTES

    def target_sample_rate(self, extension: str) -> int:
        if self.is_custom_provider:
            return self.DEFAULT_TARGET_SAMPLE_RATE
        return self.TARGET_SAMPLE_RATES.get(extension.lower(), self.DEFAULT_TARGET_SAMPLE_RATE)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
