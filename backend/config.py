"""
Configuration management for the studio media backend
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./studio_media.db")

    # Redis (optional shared logo cache)
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
    # Externally reachable base URL of this service, used for signed AI source links
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "")

    # Outbound HTTP
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "30"))

    # Replicate Configuration
    REPLICATE_API_KEY: str = os.getenv("REPLICATE_API_KEY", "")
    REPLICATE_API_TOKEN: str = os.getenv("REPLICATE_API_TOKEN", "")  # Alternative naming
    REPLICATE_MAX_RETRIES: int = int(os.getenv("REPLICATE_MAX_RETRIES", "3"))
    REPLICATE_TIMEOUT: int = int(os.getenv("REPLICATE_TIMEOUT", "600"))
    # Kling only accepts 5 or 10 second clips
    AI_VIDEO_MODEL: str = os.getenv("AI_VIDEO_MODEL", "kwaivgi/kling-v2.5-turbo-pro")

    # Dropbox Configuration
    DROPBOX_CLIENT_ID: str = os.getenv("DROPBOX_CLIENT_ID", "")
    DROPBOX_CLIENT_SECRET: str = os.getenv("DROPBOX_CLIENT_SECRET", "")
    DROPBOX_API_URL: str = os.getenv("DROPBOX_API_URL", "https://api.dropboxapi.com")
    DROPBOX_CONTENT_URL: str = os.getenv("DROPBOX_CONTENT_URL", "https://content.dropboxapi.com")
    DROPBOX_OAUTH_URL: str = os.getenv("DROPBOX_OAUTH_URL", "https://api.dropbox.com")

    # Logo cache for watermarking
    LOGO_CACHE_BACKEND: str = os.getenv("LOGO_CACHE_BACKEND", "memory")  # Options: "memory" or "redis"
    LOGO_CACHE_TTL: int = int(os.getenv("LOGO_CACHE_TTL", "3600"))  # 1 hour in seconds

    # Persistence relay (Dropbox save_url job polling)
    RELAY_POLL_INTERVAL: float = float(os.getenv("RELAY_POLL_INTERVAL", "1.5"))
    RELAY_TIMEOUT: float = float(os.getenv("RELAY_TIMEOUT", "120"))  # 2 minutes

    # Signed source links handed to the generation provider
    AI_SOURCE_SIGNING_SECRET: Optional[str] = os.getenv("AI_SOURCE_SIGNING_SECRET", None)
    AI_SOURCE_LINK_TTL: int = int(os.getenv("AI_SOURCE_LINK_TTL", "3600"))

    @property
    def replicate_token(self) -> str:
        """Replicate token under either supported variable name."""
        return self.REPLICATE_API_TOKEN or self.REPLICATE_API_KEY

    def validate_storage_config(self) -> None:
        """
        Validate storage provider configuration at startup.
        Raises ValueError if token refresh could never succeed.
        """
        if bool(self.DROPBOX_CLIENT_ID) != bool(self.DROPBOX_CLIENT_SECRET):
            raise ValueError("DROPBOX_CLIENT_ID and DROPBOX_CLIENT_SECRET must be set together")
        if self.LOGO_CACHE_BACKEND not in ("memory", "redis"):
            raise ValueError(f"Unknown LOGO_CACHE_BACKEND: {self.LOGO_CACHE_BACKEND}")

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
