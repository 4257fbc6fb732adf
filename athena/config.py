from pathlib import Path
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Configuration
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8080)
    api_prefix: str = Field(default="/api/v1")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Graph Store Configuration
    graph_storage_path: Optional[str] = Field(
        default=None,
        description="JSON snapshot file. If unset, the graph lives in memory only.",
    )
    lock_timeout: float = Field(default=5.0, gt=0)
    query_max_limit: int = Field(default=10000, gt=0)

    # Agents are opaque identifiers reported by GET /agents
    agents: List[str] = Field(default_factory=list)

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default="logs/athena.log")

    @property
    def log_dir(self) -> Optional[Path]:
        """Get log directory path."""
        return Path(self.log_file).parent if self.log_file else None

    @property
    def storage_dir(self) -> Optional[Path]:
        """Get graph snapshot directory path."""
        return Path(self.graph_storage_path).parent if self.graph_storage_path else None

    def ensure_directories(self):
        """Ensure necessary directories exist."""
        for directory in (self.log_dir, self.storage_dir):
            if directory is not None:
                directory.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_directories()
