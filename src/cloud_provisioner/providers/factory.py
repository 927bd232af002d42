"""Factory functions for provider bindings."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from cloud_provisioner.config.models import PlatformConfig, ProviderMode
from cloud_provisioner.providers.base import ProviderClients

logger = structlog.get_logger()


@asynccontextmanager
async def open_provider(platform: PlatformConfig) -> AsyncIterator[ProviderClients]:
    """Yield the per-kind clients for the configured provider mode.

    Transport resources (HTTP connection pools) are released on exit.
    """
    if platform.provider_mode == ProviderMode.REST:
        assert platform.rest is not None
        from cloud_provisioner.providers.rest.resources import create_rest_clients

        transport, clients = create_rest_clients(platform.rest)
        logger.info(
            "provider.opened",
            mode=str(platform.provider_mode),
            endpoint=platform.rest.endpoint,
        )
        async with transport:
            yield clients
        return

    if platform.provider_mode == ProviderMode.MEMORY:
        from cloud_provisioner.providers.memory import create_memory_clients

        _, clients = create_memory_clients(platform.memory)
        logger.info("provider.opened", mode=str(platform.provider_mode))
        yield clients
        return

    msg = f"Unsupported provider mode: {platform.provider_mode}"
    raise ValueError(msg)
