"""
Pipeline configuration.

Settings live in config/config.yaml and are validated here.  Secrets never go
in the YAML: OPENAI_API_KEY / ANTHROPIC_API_KEY are read from the environment
(optionally populated from .env) by the SDK clients themselves.
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, model_validator

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: str = "logs/docassist.log"


class ChunkingSettings(BaseModel):
    parent_size: int = Field(default=2000, gt=0)
    parent_overlap: int = Field(default=200, ge=0)
    child_size: int = Field(default=400, gt=0)
    child_overlap: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _overlaps_fit(self) -> "ChunkingSettings":
        if self.parent_overlap >= self.parent_size:
            raise ValueError("parent_overlap must be smaller than parent_size")
        if self.child_overlap >= self.child_size:
            raise ValueError("child_overlap must be smaller than child_size")
        return self


class EmbeddingSettings(BaseModel):
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = Field(default=100, gt=0)
    # 1 = fail fast.  Raise for bulk ingestion only; the core never retries
    # on its own.
    max_attempts: int = Field(default=1, ge=1)


class IndexSettings(BaseModel):
    dir: str = "data/index"


class RetrievalSettings(BaseModel):
    top_k: int = Field(default=10, gt=0)
    reformulation_max_tokens: int = 200


class MemorySettings(BaseModel):
    recent_window: int = Field(default=6, ge=0)      # 3 user/assistant pairs
    summary_max_words: int = 200
    summary_max_tokens: int = 300


class GenerationSettings(BaseModel):
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    # Reformulation and summarisation run on the cheap model regardless of
    # the answer model.
    auxiliary_provider: Literal["openai", "anthropic"] = "openai"
    auxiliary_model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    temperature: float = 0.2


class TimeoutSettings(BaseModel):
    """Seconds per network sub-call."""

    completion: float = 60.0
    embedding: float = 30.0
    search: float = 10.0


class Settings(BaseModel):
    project_name: str = "DocAssist"
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """
    Load settings from YAML, falling back to defaults when the file is absent.

    Also loads .env so API keys are visible to the SDK clients.
    """
    load_dotenv()
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        logger.debug(f"[Config] {config_path} not found, using defaults")
        return Settings()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    project = raw.pop("project", {}) or {}
    if "name" in project:
        raw["project_name"] = project["name"]
    settings = Settings.model_validate(raw)
    logger.debug(f"[Config] Loaded {config_path}")
    return settings
