"""Configuration management for modelfinder."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Embedding classifier
    embedding_model: str = Field(default="sentence-transformers/all-MiniLM-L6-v2")
    top_k: int = Field(default=5, ge=1)
    voting_method: Literal["simple", "weighted"] = Field(default="weighted")
    confidence_threshold: float = Field(default=0.70, ge=0.0, le=1.0)

    # Model acquisition
    model_cache_dir: Optional[Path] = Field(default=None)
    init_timeout_seconds: float = Field(default=120.0, gt=0)

    # Data paths
    taxonomy_path: Optional[Path] = Field(default=None)
    calibration_file: Optional[Path] = Field(default=None)
    results_dir: Path = Field(default=Path("./validation-results"))

    # Logging
    log_level: str = Field(default="INFO")

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return Path(__file__).parent.parent

    def resolve_path(self, path: Path) -> Path:
        """Resolve a path relative to the project root."""
        if path.is_absolute():
            return path
        return self.project_root / path


# Global settings instance
settings = Settings()
