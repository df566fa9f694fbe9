"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from agrolink.infra.instamojo import InstamojoConfig
from agrolink.services.email_service import MailConfig

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./agrolink.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Email (SendGrid)
    sendgrid_api_key: str = ""
    mail_from: str = "noreply@agrolink.app"
    admin_email: str = "admin@agrolink.app"

    # Payment gateway (Instamojo)
    instamojo_api_key: str = ""
    instamojo_auth_token: str = ""
    instamojo_salt: str = ""
    instamojo_sandbox: bool = True
    gateway_timeout_seconds: float = 30.0

    # CORS / URLs
    cors_origins: str = "http://localhost:3000"
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:4000"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def instamojo_config(self) -> InstamojoConfig:
        """Build the gateway client configuration."""
        return InstamojoConfig(
            api_key=self.instamojo_api_key,
            auth_token=self.instamojo_auth_token,
            salt=self.instamojo_salt,
            sandbox=self.instamojo_sandbox,
            timeout_seconds=self.gateway_timeout_seconds,
            redirect_base_url=self.frontend_url.rstrip("/"),
            webhook_url=f"{self.backend_url.rstrip('/')}/api/v1/payments/webhook",
        )

    def mail_config(self) -> MailConfig:
        """Build the mailer configuration."""
        return MailConfig(
            api_key=self.sendgrid_api_key,
            from_email=self.mail_from,
            admin_email=self.admin_email,
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
