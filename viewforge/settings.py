# settings.py
import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "ViewForge Backend"
    API_PREFIX: str = "/api"

    # Security
    JWT_SECRET: str = os.getenv("JWT_SECRET", "super-secret-key")
    JWT_ALGORITHM: str = "HS256"

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite+aiosqlite:///./dev.db"  # default local SQLite
    )

    # Gemini
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    IMAGE_MODEL: str = os.getenv("IMAGE_MODEL", "gemini-3-pro-image-preview")
    IMAGE_FALLBACK_MODEL: str = os.getenv("IMAGE_FALLBACK_MODEL", "gemini-2.5-flash-image-preview")
    FEATURE_MODEL: str = os.getenv("FEATURE_MODEL", "gemini-2.5-flash")
    GENERATOR_RETRY_BUDGET: int = 5
    GENERATOR_BACKOFF_BASE_SECONDS: float = 2.0

    # Cloudinary
    CLOUDINARY_CLOUD_NAME: str = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_API_KEY: str = os.getenv("CLOUDINARY_API_KEY", "")
    CLOUDINARY_API_SECRET: str = os.getenv("CLOUDINARY_API_SECRET", "")
    CLOUDINARY_FOLDER: str = os.getenv("CLOUDINARY_FOLDER", "viewforge/products")

    # Credits
    FRONT_VIEW_CREDITS: int = 2
    REMAINING_VIEWS_CREDITS: int = 3

    # Workflow
    DUPLICATE_WINDOW_SECONDS: float = 5.0
    PERSIST_MAX_ATTEMPTS: int = 3
    PERSIST_RETRY_DELAY_SECONDS: float = 2.0
    HTTP_TIMEOUT_SECONDS: float = 60.0

    # Frontend URLs (CORS)
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
