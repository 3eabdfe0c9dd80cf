from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from the environment, then from `config.env` / `.env` in the
    repository root or the current working directory.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Full SQLAlchemy URL; when unset the DB_* parts below are used.
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")
    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="postgres", validation_alias="DB_USER")
    db_password: str = Field(default="postgres", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="postgres", validation_alias="DB_NAME")

    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", validation_alias="SUPABASE_SERVICE_ROLE_KEY")

    # Operator identity allowed to invite staff outside tenant scoping
    owner_email: str = Field(default="", validation_alias="OWNER_EMAIL")

    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")

    # Used to build invitation redirect links
    app_base_url: str = Field(default="", validation_alias="APP_BASE_URL")

    cors_origins: str = Field(default="http://localhost:3000", validation_alias="CORS_ORIGINS")

    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")

    delivery_webhook_secret: str | None = Field(default=None, validation_alias="DELIVERY_WEBHOOK_SECRET")

    # Email (SMTP)
    smtp_host: str = Field(default="", validation_alias="SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="SMTP_PORT")
    smtp_user: str = Field(default="", validation_alias="SMTP_USER")
    smtp_password: str = Field(default="", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, validation_alias="SMTP_USE_TLS")
    email_from: str = Field(default="", validation_alias="EMAIL_FROM")
    email_from_name: str = Field(default="IslaPOS", validation_alias="EMAIL_FROM_NAME")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # Managed Postgres through the psycopg (v3) driver.
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def invite_redirect_url(self) -> str | None:
        base = self.app_base_url.strip().rstrip("/")
        if not base:
            return None
        return f"{base}/auth/callback"


settings = Settings()
