# /app/config/settings.py

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RETRY_EXHAUSTED_POLICIES = ("fail", "advance")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Deployment
    environment: str = Field(default="production")
    log_level: str = "INFO"
    workers: int = 4

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    rate_limit_enabled: bool = True

    # Comma-separated
    cors_allowed_origins: str = Field(default="http://localhost:3000,http://localhost:5173")
    allowed_hosts: str = Field(default="localhost,127.0.0.1,testserver")

    # Simulation
    simulation_auto_advance: bool = False
    retry_exhausted_policy: str = "fail"
    default_max_retries: int = 3
    max_history_entries: int = 0  # 0 keeps every snapshot
    max_active_runs: int = 500

    # ---------------- Validators ---------------- #

    @field_validator("retry_exhausted_policy")
    @classmethod
    def policy_must_be_known(cls, v: str) -> str:
        v = v.lower()
        if v not in RETRY_EXHAUSTED_POLICIES:
            raise ValueError(f"RETRY_EXHAUSTED_POLICY must be one of {', '.join(RETRY_EXHAUSTED_POLICIES)}")
        return v

    @field_validator("max_history_entries", "max_active_runs", "default_max_retries")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Limits must not be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()


settings = Settings()
