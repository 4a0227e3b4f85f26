"""
HTTP transport settings.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP transport configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    audit_page_size: int = Field(default=100, description="Default audit history page size")
    max_audit_page_size: int = Field(default=500, description="Maximum audit history page size")

    model_config = {"env_prefix": "PLANNER_HTTP_"}
