"""Registry of local backends.

Discovers which models the configured backends currently serve and routes
completions to the adapter matching a model's backend type.
"""

import asyncio
import logging
from typing import Any, Iterable, Optional

from .backends import BACKEND_CLASSES, BackendAdapter
from .config import load_config
from .messages import (
    BACKEND_ERROR,
    BackendResult,
    BackendType,
    CompletionOptions,
    ErrorDetail,
    ModelDescriptor,
)

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Set of backend adapters keyed by backend type."""

    def __init__(self, adapters: Iterable[BackendAdapter]):
        self.adapters: dict[BackendType, BackendAdapter] = {}
        for adapter in adapters:
            self.adapters[adapter.backend_type] = adapter

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "BackendRegistry":
        """Build adapters for every backend with a configured URL."""
        config = config if config is not None else load_config()
        timeout = config["BACKEND_TIMEOUT"]
        urls = {
            BackendType.OLLAMA: config["OLLAMA_URL"],
            BackendType.LMSTUDIO: config["LMSTUDIO_URL"],
            BackendType.EXO: config["EXO_URL"],
        }
        return cls(
            BACKEND_CLASSES[kind](url, timeout=timeout)
            for kind, url in urls.items()
            if url
        )

    async def discover_models(self) -> list[ModelDescriptor]:
        """Query every backend concurrently.

        A name served by more than one backend is kept only for the first
        backend in registration order.
        """
        logger.info("Scanning for local LLM models...")
        adapters = list(self.adapters.values())
        results = await asyncio.gather(
            *(a.list_models() for a in adapters), return_exceptions=True
        )

        models: list[ModelDescriptor] = []
        seen: set[str] = set()
        for adapter, found in zip(adapters, results):
            if isinstance(found, BaseException):
                logger.warning("Discovery failed for %s: %s", adapter.backend_type.value, found)
                continue
            logger.debug("%s: %d models", adapter.backend_type.value, len(found))
            for descriptor in found:
                if descriptor.name in seen:
                    logger.warning(
                        "Model %s is served by more than one backend; keeping the first",
                        descriptor.name,
                    )
                    continue
                seen.add(descriptor.name)
                models.append(descriptor)

        logger.info("Total models: %d", len(models))
        return models

    async def complete(
        self,
        descriptor: ModelDescriptor,
        messages: list[dict[str, Any]],
        options: CompletionOptions,
    ) -> BackendResult:
        adapter = self.adapters.get(descriptor.backend_type)
        if adapter is None:
            return ErrorDetail(
                BACKEND_ERROR, f"No adapter for backend {descriptor.backend_type.value}"
            )
        return await adapter.complete(descriptor.name, messages, options)

    async def check_backends(self) -> dict[BackendType, bool]:
        """Report which backends are reachable."""
        kinds = list(self.adapters)
        states = await asyncio.gather(*(self.adapters[k].is_available() for k in kinds))
        return dict(zip(kinds, states))

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
