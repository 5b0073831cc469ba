"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)
    cors_origins: List[str] = Field(default=["*"])

    # Spreadsheet (transport)
    spreadsheet_id: str = Field(default="")
    google_service_account_file: Optional[str] = Field(default=None)
    sheets_value_render_option: Literal[
        "FORMATTED_VALUE", "UNFORMATTED_VALUE", "FORMULA"
    ] = Field(default="FORMATTED_VALUE")

    # Cache Configuration
    cache_enabled: bool = Field(default=True)
    cache_ttl: int = Field(default=300, ge=1)
    cache_check_period: int = Field(default=60, ge=1)
    cache_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: Optional[str] = Field(default=None)
    cache_namespace: str = Field(default="sheetsbase:")

    # Id allocation
    id_default_strategy: str = Field(default="uuid")
    id_default_prefix: str = Field(default="item", min_length=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("google_service_account_file")
    @classmethod
    def validate_service_account_file(cls, v):
        """Expand ``~`` in the credentials path."""
        if v:
            return str(Path(v).expanduser())
        return v

    @property
    def sheets_configured(self) -> bool:
        """Both a spreadsheet and credentials are set."""
        return bool(self.spreadsheet_id and self.google_service_account_file)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
