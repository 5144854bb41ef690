"""Configuration models for the harvester.

This module defines the configuration structure for the Slack source, the
pipeline, both sinks and the downstream call policy, and loads it from YAML.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from slack_harvester.exceptions import ConfigurationError
from slack_harvester.pipeline.batcher import MAX_BATCH_SIZE
from slack_harvester.sinks.datastore import DatastoreConfig
from slack_harvester.sinks.embedding import EmbeddingConfig
from slack_harvester.sources.policy import PolicyConfig
from slack_harvester.sources.slack import SlackConfig


class PipelineConfig(BaseModel):
    """Batching and concurrency settings."""

    batch_size: int = Field(default=MAX_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE, description="Records per batch")
    reply_concurrency: int = Field(default=MAX_BATCH_SIZE, ge=1, description="Max concurrent thread fetches")


class HarvesterConfig(BaseModel):
    """Main configuration for the harvester."""

    slack: SlackConfig = Field(default_factory=SlackConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    datastore: DatastoreConfig = Field(default_factory=DatastoreConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    @model_validator(mode="after")
    def _at_least_one_sink(self) -> "HarvesterConfig":
        if not (self.datastore.enabled or self.embedding.enabled):
            raise ValueError("At least one of datastore or embedding must be enabled")
        return self


class ConfigLoader:
    """Utility class for loading configuration from YAML files."""

    @staticmethod
    def load(path: str, overrides: Optional[Dict[str, Any]] = None) -> HarvesterConfig:
        """Load configuration from a YAML file.

        A missing file yields the defaults. Variables from a `.env` file in the
        working directory are loaded first; `EMBEDDING_ACCESS_TOKEN` fills the
        embedding token when the file does not set one.

        Args:
            path: Path to the YAML configuration file.
            overrides: Optional section -> {key: value} overrides (e.g. from CLI flags).

        Returns:
            HarvesterConfig: Loaded configuration object.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation.
        """
        load_dotenv()
        p = Path(path)
        raw_data: Dict[str, Any] = {}
        if p.exists():
            try:
                with open(p, "r", encoding="utf-8") as f:
                    raw_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
            if not isinstance(raw_data, dict):
                raise ConfigurationError(f"Configuration root in {path} must be a mapping")

        for section, values in (overrides or {}).items():
            raw_data[section] = {**(raw_data.get(section) or {}), **values}

        embedding = raw_data.get("embedding") or {}
        if not embedding.get("access_token") and os.getenv("EMBEDDING_ACCESS_TOKEN"):
            embedding["access_token"] = os.getenv("EMBEDDING_ACCESS_TOKEN")
        raw_data["embedding"] = embedding

        try:
            return HarvesterConfig(**raw_data)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
