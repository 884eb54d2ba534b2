"""
Client configuration.

All tunables live in one pydantic model; load_config() reads KER_* environment
variables and falls back to the defaults below.
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class KerConfig(BaseModel):
    """Key exchange client settings"""
    relay_url: str = "http://localhost:8000"
    storage_dir: str = "client_data"

    # Lifetime of an unanswered exchange request
    request_ttl_seconds: float = 24 * 60 * 60

    # Duplicate suppression window and sweep cadence (in gate operations)
    dedup_ttl_seconds: float = 5 * 60
    dedup_sweep_interval: int = 64

    # Transport sends
    send_timeout_seconds: float = 10.0
    retry_base_delay: float = 0.5
    retry_factor: float = 2.0
    retry_max_attempts: int = 4

    # Confirmation notices after materialization
    confirmation_max_attempts: int = 5

    # Inbound dispatcher
    dispatcher_queue_size: int = 256
    expiry_sweep_interval_seconds: float = 60.0

    log_level: str = "INFO"


_ENV_PREFIX = "KER_"


def load_config(overrides: Optional[dict] = None) -> KerConfig:
    """
    Build configuration from the environment.

    Args:
        overrides: Values that take precedence over the environment

    Returns:
        KerConfig
    """
    values = {}
    for name in KerConfig.model_fields:
        env_value = os.environ.get(_ENV_PREFIX + name.upper())
        if env_value is not None:
            values[name] = env_value
    if overrides:
        values.update(overrides)
    return KerConfig(**values)


def configure_logging(level: str = "INFO"):
    """Set up root logging once for an entry point"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
