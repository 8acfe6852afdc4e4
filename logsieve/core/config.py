# logsieve/core/config.py
"""
Configuration management for LogSieve
All settings in one place, can be overridden via environment variables
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


# Default exclude list for local log crawling.
# Regexes are matched (re.search) against the path relative to the crawl root.
DEFAULT_EXCLUDES: List[str] = [
    # binary data with known extension
    r"\.ico$",
    r"\.png$",
    r"\.clf$",
    r"\.tar$",
    r"\.tar\.bzip2$",
    r"\.subunit$",
    r"\.sqlite$",
    r"\.db$",
    r"\.bin$",
    r"\.pcap\.log\.txt$",
    # fonts
    r"\.eot$",
    r"\.otf$",
    r"\.woff2?$",
    r"\.ttf$",
    # config
    r"\.yaml$",
    r"\.ini$",
    r"\.conf$",
    # not relevant
    r"job-output\.json$",
    r"zuul-manifest\.json$",
    r"\.html$",
    # binary data with known location
    r"cacerts$",
    r"local/creds$",
    r"/authkey$",
    r"mysql/tc\.log\.txt$",
    # swift rings
    r"object\.builder$",
    r"account\.builder$",
    r"container\.builder$",
    # system config
    r"(^|/)etc/",
    # hidden files
    r"(^|/)\.",
]


class Settings(BaseSettings):
    """
    Global application settings
    Can be overridden with LOGSIEVE_* environment variables
    """

    # ===== APP METADATA =====
    app_name: str = "LogSieve"
    version: str = "0.1.0"

    # ===== STORAGE PATHS =====
    data_dir: Path = Field(default=Path.home() / ".logsieve")
    cache_dir: Optional[Path] = Field(default=None)  # Serialized models live here

    # ===== TOKENIZER =====
    tokenizer_max_tokens: int = 128  # Longer lines are truncated to this many tokens
    tokenizer_max_line_chars: int = 4096  # Raw text cap before any regex runs

    # ===== SPARSE INDEX =====
    # Changing either value makes previously saved models incomparable
    index_dimension: int = 2 ** 16  # Hashed feature space size (D)
    index_seed: int = 1729  # Fixed hash seed, persisted with every index

    # ===== SCORING =====
    anomaly_threshold: float = Field(default=0.3, ge=0.0, le=1.0)  # score > threshold = anomaly
    threshold_overrides: Dict[str, float] = Field(default_factory=dict)  # {source: threshold}
    context_lines: int = Field(default=3, ge=0)  # Lines kept before/after each anomaly
    score_batch_size: int = Field(default=64, ge=1)  # Query rows per distance batch
    score_unknown_sources: bool = False  # True = lines without baseline score 1.0
    report_repeated_anomalies: bool = True  # False = flag a repeated line only once
    stop_markers: List[str] = Field(default_factory=list)  # Stop scoring a source at these

    # ===== WORKERS =====
    max_workers: int = Field(default=4, ge=1)  # Threads for training/scoring

    # ===== MODEL CACHE =====
    cache_max_entries: int = Field(default=16, ge=1)  # LRU bound
    cache_max_age_seconds: Optional[float] = None  # None = entries never expire
    cache_persist: bool = False  # Also keep serialized models in cache_dir

    # ===== LOCAL FILES =====
    max_file_size_mb: int = 100  # Skip files larger than this
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDES))

    # ===== LOGGING =====
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    model_config = SettingsConfigDict(
        env_prefix="LOGSIEVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v):
        """Expand ~ and resolve path"""
        if isinstance(v, str):
            return Path(v).expanduser().resolve()
        return v

    @model_validator(mode="after")
    def init_paths(self):
        """Initialize derived paths after all fields are set"""
        if self.cache_dir is None:
            self.cache_dir = self.data_dir / "models"

        if isinstance(self.cache_dir, str):
            self.cache_dir = Path(self.cache_dir)

        # Directories are created lazily by whoever writes into them
        return self

    def threshold_for(self, source: str) -> float:
        """Anomaly threshold for a source (per-source override or global)"""
        return self.threshold_overrides.get(source, self.anomaly_threshold)

    def __repr__(self):
        return f"<Settings(app={self.app_name} v{self.version}, data_dir={self.data_dir})>"


# ===== GLOBAL SETTINGS INSTANCE =====
# This is imported throughout the app
settings = Settings()


# ===== HELPER FUNCTIONS =====

def get_settings() -> Settings:
    """
    Get the global settings instance
    Useful for dependency injection in tests
    """
    return settings


def reload_settings():
    """
    Reload settings from environment
    Useful if env vars change during runtime
    """
    global settings
    settings = Settings()
    return settings


def configure_logging(level: str = None):
    """Apply the configured log level to the root logger"""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
