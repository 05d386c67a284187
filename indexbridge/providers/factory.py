"""Selects and caches the document index provider for the configured backend."""

from __future__ import annotations

import logging
from collections.abc import Callable

from indexbridge.credentials import get_provider_type
from indexbridge.errors import ConfigurationError
from indexbridge.providers.base import DocumentIndexProvider

log = logging.getLogger(__name__)

ProviderBuilder = Callable[[], DocumentIndexProvider]


def _build_llamacloud() -> DocumentIndexProvider:
    from indexbridge.providers.llamacloud import LlamaCloudProvider

    return LlamaCloudProvider()


def _build_bedrock() -> DocumentIndexProvider:
    from indexbridge.providers.bedrock import BedrockProvider

    return BedrockProvider()


DEFAULT_BUILDERS: dict[str, ProviderBuilder] = {
    "llamacloud": _build_llamacloud,
    "bedrock": _build_bedrock,
}


class ProviderFactory:
    """Lazily populated registry holding one provider instance per provider type.

    The composition root owns one factory and hands it to call sites. Providers
    carry only fixed configuration, so a duplicate construction racing on first
    access is harmless and no lock is taken.
    """

    def __init__(
        self,
        selector: Callable[[], str] = get_provider_type,
        builders: dict[str, ProviderBuilder] | None = None,
    ) -> None:
        self._selector = selector
        self._builders = dict(builders or DEFAULT_BUILDERS)
        self._providers: dict[str, DocumentIndexProvider] = {}

    def get_provider(self) -> DocumentIndexProvider:
        provider_type = self._selector()
        cached = self._providers.get(provider_type)
        if cached is not None:
            return cached

        builder = self._builders.get(provider_type)
        if builder is None:
            supported = ", ".join(f'"{name}"' for name in self._builders)
            raise ConfigurationError(
                f'Unsupported provider type: "{provider_type}". Supported types are: {supported}.'
            )
        provider = builder()
        self._providers[provider_type] = provider
        log.info("Initialized %s document index provider", provider_type)
        return provider

    def clear_cache(self) -> None:
        """Drop cached providers; test isolation only."""
        self._providers.clear()

    @property
    def cache_size(self) -> int:
        return len(self._providers)
