"""Application settings powered by Pydantic BaseSettings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Centralized environment configuration.

    Unset optional values mean "use the fetch layer defaults".
    """

    model_config = SettingsConfigDict(
        env_prefix="ROBUSTFETCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    user_agent: str | None = None
    sec_user_agent: str = Field(
        default="robustfetch admin@example.com",
        description="SEC requires 'Company contact@email' style agents",
    )
    request_timeout_seconds: float | None = None
    probe_targets: tuple[str, ...] | None = None
    probe_timeout_seconds: float | None = None


def get_settings() -> AppSettings:
    """Get a settings instance."""
    return AppSettings()
