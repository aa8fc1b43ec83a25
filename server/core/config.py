"""Environment-driven configuration with Pydantic v2."""

from datetime import timedelta
from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5000, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Authentication
    jwt_secret_key: str = Field(min_length=32)
    jwt_algorithm: str = Field(default="HS256")
    jwt_access_expire_minutes: int = Field(default=15, ge=1, le=1440)
    jwt_refresh_expire_days: int = Field(default=7, ge=1, le=30)
    auth_dev_bypass: bool = Field(default=False)  # Honoured only when DEBUG is on

    # Security
    cors_origins: List[str] = Field(default=["http://localhost:3000"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/renoai.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Cache Configuration (seconds)
    cache_default_ttl: float = Field(default=300, gt=0)
    cache_max_size: int = Field(default=1000, ge=1)
    cache_sweep_interval: float = Field(default=60, gt=0)
    cache_response_ttl: float = Field(default=60, gt=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.jwt_access_expire_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.jwt_refresh_expire_days)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
