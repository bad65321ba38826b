# backend/config.py
from functools import lru_cache
from typing import Any, List
import json

from pydantic_settings import BaseSettings


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # Application
    APP_NAME: str = "Lab Records API"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production-12345"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Database
    DATABASE_URL: str = "sqlite:///./lab_records.db"
    DB_ECHO: bool = False

    # CORS - comma separated or JSON list
    CORS_ORIGINS_STR: str = "*"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # Students log in with their roll number and this shared password
    # until they change it. There is no rotation or expiry.
    DEFAULT_STUDENT_PASSWORD: str = "cse@nbkr"

    # Progress record upsert
    UPSERT_MAX_ATTEMPTS: int = 3
    UPSERT_RETRY_DELAY: float = 0.05  # seconds, multiplied by attempt number

    # Records view
    RECORDS_INCREMENTAL_REFRESH: bool = False

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return parse_cors_origins(self.CORS_ORIGINS_STR)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
