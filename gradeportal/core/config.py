import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Grade Portal Backend"
    env: str = "dev"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # ADMIN
    admin_api_token: str | None = None

    # LOGIN GUARD
    login_guard_max_attempts: int = Field(default=5, ge=1)
    login_guard_window_seconds: int = Field(default=15 * 60, ge=1)
    login_guard_lockout_seconds: int = Field(default=30 * 60, ge=1)
    login_guard_base_delay_seconds: float = Field(default=2.0, ge=0)
    login_guard_max_delay_seconds: float = Field(default=10.0, ge=0)
    login_guard_fail_closed: bool = False
    suspicious_activity_threshold: int = Field(default=10, ge=1)
    suspicious_activity_window_seconds: int = Field(default=5 * 60, ge=1)
    attempt_retention_days: int = Field(default=30, ge=1, le=3650)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("admin_api_token", "cors_origin_regex", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_login_guard_delays(self) -> "Settings":
        if self.login_guard_max_delay_seconds < self.login_guard_base_delay_seconds:
            raise ValueError(
                "LOGIN_GUARD_MAX_DELAY_SECONDS cannot be lower than LOGIN_GUARD_BASE_DELAY_SECONDS"
            )
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_tokens = {"change_me", "admin", "dev-admin-token"}
        if self.admin_api_token is not None and (
            self.admin_api_token in weak_tokens or len(self.admin_api_token) < 32
        ):
            raise ValueError("ADMIN_API_TOKEN must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
