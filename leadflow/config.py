from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_SWEEP_BATCH_SIZE,
    DEFAULT_TIMEZONE,
    MAX_SWEEP_BATCH_SIZE,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None


class TransportConfig(BaseModel):
    """Provider event bus settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    # Webhooks publish to the bus instead of resuming runs in-process.
    publish_events: bool = False


class SchedulerConfig(BaseModel):
    """Sweep sizing and claim lease."""

    batch_size: int = DEFAULT_SWEEP_BATCH_SIZE
    max_batch_size: int = MAX_SWEEP_BATCH_SIZE
    lease_seconds: int = DEFAULT_LEASE_SECONDS


class VapiConfig(BaseModel):
    """Voice call provider settings."""

    api_key: Optional[str] = None
    base_url: str = "https://api.vapi.ai"
    phone_number_id: Optional[str] = None
    assistant_id: Optional[str] = None
    timeout_seconds: float = 15.0


class TwilioConfig(BaseModel):
    """WhatsApp provider settings."""

    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    base_url: str = "https://api.twilio.com/2010-04-01"
    timeout_seconds: float = 15.0


class LlmConfig(BaseModel):
    """Model used by the extraction and agent-scoring agents."""

    model: str = "openai:gpt-4o-mini"


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    vapi: VapiConfig = VapiConfig()
    twilio: TwilioConfig = TwilioConfig()
    llm: LlmConfig = LlmConfig()
    timezone: str = DEFAULT_TIMEZONE
    templates_path: Optional[str] = None
    directory_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("LEADFLOW_TEMPLATES_PATH"):
        config.templates_path = os.environ["LEADFLOW_TEMPLATES_PATH"]
    if os.getenv("LEADFLOW_DIRECTORY_PATH"):
        config.directory_path = os.environ["LEADFLOW_DIRECTORY_PATH"]

    # Provider secrets usually live in the environment, not the YAML file.
    config.vapi.api_key = os.getenv("VAPI_API_KEY") or config.vapi.api_key
    config.twilio.account_sid = (
        os.getenv("TWILIO_ACCOUNT_SID") or config.twilio.account_sid
    )
    config.twilio.auth_token = os.getenv("TWILIO_AUTH_TOKEN") or config.twilio.auth_token
    return config
