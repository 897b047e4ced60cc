"""Transport factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import JobflowConfig, load_config
from ..errors import ConfigurationError
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[JobflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport.

    ``JOBFLOW_TRANSPORT`` is applied when the configuration is loaded.
    """

    config = config or load_config()
    backend = (backend or config.transport.backend).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ConfigurationError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
