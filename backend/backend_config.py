# backend/config.py - Application configuration

import os
from typing import List

class Settings:
    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./gridsync.db"
    )

    # CORS
    CORS_ORIGINS: List[str] = os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")

    # Debug mode
    DEBUG: bool = os.getenv("DEBUG", "true").lower() == "true"

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    # Streaming
    STREAM_COUNT_THROTTLE_MS: int = int(os.getenv("STREAM_COUNT_THROTTLE_MS", "100"))
    CONNECT_TIMEOUT_SECONDS: float = float(os.getenv("CONNECT_TIMEOUT_SECONDS", "30"))
    MAX_BATCH_SIZE: int = int(os.getenv("MAX_BATCH_SIZE", "5000"))
    DEFAULT_KEY_COLUMN: str = os.getenv("DEFAULT_KEY_COLUMN", "id")

    # Profiles
    COMPONENT_TYPE: str = os.getenv("COMPONENT_TYPE", "DataGridStompShared")

settings = Settings()
