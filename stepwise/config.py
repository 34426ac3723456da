from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis change feed."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    stream_prefix: str = "stepwise"


class TransportConfig(BaseModel):
    """Change feed transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Progression rules."""

    skip_policy: Literal["pass_through", "block"] = "pass_through"
    manage_roles: List[str] = Field(default_factory=lambda: ["admin", "manager"])


class RetryConfig(BaseModel):
    """Bounded retry settings for calls to the data service."""

    attempts: int = 3
    base: float = 1.5
    jitter: float = 0.5


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    retry: RetryConfig = RetryConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
