"""
Configuration management for certflow.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class UserEntry(BaseModel):
    """A login known to the static authenticator."""

    password_sha256: str
    role: str
    display: Optional[str] = None


# Demo accounts (admin/admin123, auth1/auth123, auth2/auth123).
DEFAULT_USERS: Dict[str, UserEntry] = {
    "admin": UserEntry(
        password_sha256="240be518fabd2724ddb6f04eeb1da5967448d7e831c08c8fa822809f74c720a9",
        role="issuer",
        display="Administrator",
    ),
    "auth1": UserEntry(
        password_sha256="5ba5ebb1b522d8be13642282aa03f74122603a3924ffbe04dfe667e10d9ed477",
        role="first_signer",
        display="First Authority",
    ),
    "auth2": UserEntry(
        password_sha256="5ba5ebb1b522d8be13642282aa03f74122603a3924ffbe04dfe667e10d9ed477",
        role="second_signer",
        display="Second Authority",
    ),
}


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CERTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="certflow")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Persistence
    database_url: str = Field(default="sqlite:///./certflow.db")
    artifact_store_uri: str = Field(
        default="file://./data/artifacts",
        description="Blob backend for artifacts and assets (file:// or memory://)",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # Authentication
    users: Dict[str, UserEntry] = Field(default_factory=lambda: dict(DEFAULT_USERS))

    # Signature geometry (PDF points, origin bottom-left)
    signature_width: float = Field(default=120.0)
    signature_height: float = Field(default=60.0)
    first_signature_x: float = Field(default=100.0)
    second_signature_right_margin: float = Field(default=86.0)
    signature_y: float = Field(default=160.0)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
