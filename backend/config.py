"""Configuration management for the e-voting API."""
import os
from pydantic_settings import BaseSettings


BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "college-evoting-api"
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # PostgreSQL configuration
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "college_voting"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_CONNECT_TIMEOUT: int = 5

    # Auth
    SECRET_KEY: str = "change-this-secret-key-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Bootstrap admin, created on startup when no admin exists
    ADMIN_EMAIL: str = "admin@example.com"
    ADMIN_PASSWORD: str = "admin123"
    ADMIN_FULL_NAME: str = "Admin User"

    # Candidate photo uploads
    UPLOAD_DIR: str = os.path.join(BACKEND_DIR, "uploads")
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024

    # CORS settings
    CORS_ORIGINS: list = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
