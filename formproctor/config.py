"""
Proctoring Monitor Configuration Settings

Timing values are in milliseconds, matching the browser monitor they mirror.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration for the proctoring monitor service."""

    APP_NAME: str = "Form Proctoring Service"
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    LOG_LEVEL: str = "INFO"

    # Camera
    CAMERA_INDEX: int = 0  # front-facing webcam on most laptops
    FRAME_WIDTH: int = 320
    FRAME_HEIGHT: int = 240

    # Detection loop
    DETECTION_INTERVAL_MS: int = 2500
    VIOLATION_COOLDOWN_MS: int = 5000
    ALERT_TTL_MS: int = 4000
    OBJECT_CONFIDENCE_THRESHOLD: float = 0.5
    FACE_CONFIDENCE_THRESHOLD: float = 0.5

    # "dual" = face detector + object detector, "single" = object detector only
    CLASSIFIER_BACKEND: str = "dual"
    FACE_MODEL_PATH: str = (
        "https://storage.googleapis.com/mediapipe-models/face_detector/"
        "blaze_face_short_range/float16/1/blaze_face_short_range.tflite"
    )
    OBJECT_MODEL_PATH: str = (
        "https://storage.googleapis.com/mediapipe-models/object_detector/"
        "efficientdet_lite0/int8/1/efficientdet_lite0.tflite"
    )
    OBJECT_MAX_RESULTS: int = 10
    MODEL_DOWNLOAD_TIMEOUT: float = 30.0

    # Violation ingestion endpoint (empty disables remote reporting)
    INGESTION_URL: str = "http://127.0.0.1:8081/api/proctoring"
    INGESTION_TIMEOUT: float = 5.0

    @field_validator("DETECTION_INTERVAL_MS")
    @classmethod
    def _interval_in_range(cls, value: int) -> int:
        if not 2000 <= value <= 2500:
            raise ValueError("DETECTION_INTERVAL_MS must be between 2000 and 2500")
        return value

    @field_validator("CLASSIFIER_BACKEND")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("dual", "single"):
            raise ValueError("CLASSIFIER_BACKEND must be 'dual' or 'single'")
        return value

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
