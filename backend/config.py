"""
Configuration management for the FastAPI backend
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./storyboard_studio.db")

    # Redis
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    REDIS_SOCKET_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    REDIS_SOCKET_CONNECT_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    REDIS_RETRY_ON_TIMEOUT: bool = os.getenv("REDIS_RETRY_ON_TIMEOUT", "true").lower() == "true"
    REDIS_HEALTH_CHECK_INTERVAL: int = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Session verification (HMAC-signed bearer tokens)
    SESSION_SECRET: str = os.getenv("SESSION_SECRET", "dev-session-secret")

    # External collaborators
    CONTENT_GENERATOR_URL: str = os.getenv("CONTENT_GENERATOR_URL", "")
    RENDERER_URL: str = os.getenv("RENDERER_URL", "")
    EXTERNAL_TIMEOUT: float = float(os.getenv("EXTERNAL_TIMEOUT", "60"))
    EXTERNAL_MAX_RETRIES: int = int(os.getenv("EXTERNAL_MAX_RETRIES", "2"))
    EXTERNAL_RETRY_BASE_DELAY: float = float(os.getenv("EXTERNAL_RETRY_BASE_DELAY", "1.0"))

    # Deterministic in-process collaborators for local development
    MOCK_CONTENT_GENERATION: bool = os.getenv("MOCK_CONTENT_GENERATION", "false").lower() == "true"
    MOCK_RENDERS: bool = os.getenv("MOCK_RENDERS", "false").lower() == "true"

    # AWS S3 Configuration
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    # Download URLs never outlive one hour
    MAX_PRESIGNED_URL_EXPIRY: int = 3600
    PRESIGNED_URL_EXPIRY: int = min(int(os.getenv("PRESIGNED_URL_EXPIRY", "3600")), 3600)
    UPLOAD_URL_EXPIRY: int = min(int(os.getenv("UPLOAD_URL_EXPIRY", "900")), 3600)

    # Render queue / worker
    RENDER_QUEUE_NAME: str = os.getenv("RENDER_QUEUE_NAME", "render_queue")
    RENDER_POLL_INTERVAL: float = float(os.getenv("RENDER_POLL_INTERVAL", "3.0"))

    # Rate limiting
    RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory")  # Options: "memory" or "redis"
    RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    RATE_LIMIT_GENERATE: int = int(os.getenv("RATE_LIMIT_GENERATE", "10"))
    RATE_LIMIT_REGENERATE_SCENE: int = int(os.getenv("RATE_LIMIT_REGENERATE_SCENE", "20"))
    RATE_LIMIT_GENERATE_ASSETS: int = int(os.getenv("RATE_LIMIT_GENERATE_ASSETS", "30"))
    RATE_LIMIT_RENDER: int = int(os.getenv("RATE_LIMIT_RENDER", "5"))

    @property
    def rate_limits(self) -> dict:
        """Per-operation request ceilings within one window"""
        return {
            "generate": self.RATE_LIMIT_GENERATE,
            "regenerate_scene": self.RATE_LIMIT_REGENERATE_SCENE,
            "generate_assets": self.RATE_LIMIT_GENERATE_ASSETS,
            "render": self.RATE_LIMIT_RENDER,
        }

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    def validate_storage_config(self) -> None:
        """
        Validate storage configuration at startup.
        Raises ValueError if cloud rendering is enabled without a bucket.
        """
        if not self.MOCK_RENDERS and not self.STORAGE_BUCKET:
            raise ValueError("STORAGE_BUCKET is required when MOCK_RENDERS=false")


# Global settings instance
settings = Settings()
