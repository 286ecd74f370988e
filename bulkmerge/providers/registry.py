"""Provider registry: resolves the gateway for a pull request's provider."""

import os
from typing import Dict, List, Optional

from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..core.settings import Settings
from .base import BaseProvider, ProviderType

logger = get_logger(__name__)


class ProviderRegistry:
    """Registry of enabled Git hosting providers, keyed by provider name."""

    def __init__(self, settings: Settings, providers: Optional[Dict[str, BaseProvider]] = None):
        """Initialize registry from settings, or from an explicit provider map."""
        self.settings = settings
        self.providers: Dict[str, BaseProvider] = {}

        if providers is not None:
            self.providers = dict(providers)
        else:
            self._init_providers()

    def _init_providers(self) -> None:
        """Initialize configured providers."""
        if os.environ.get("PROVIDER_MODE", "").strip().lower() == "mock":
            from .mock import MockProvider

            mock = MockProvider()
            # One shared mock answers for every provider name
            self.providers = {name: mock for name in self.settings.providers_enabled_list}
            logger.info("Initialized deterministic mock provider (PROVIDER_MODE=mock)")
            return

        for provider_name in self.settings.providers_enabled_list:
            try:
                provider = self._create_provider(provider_name)
                if provider:
                    self.providers[provider_name] = provider
                    logger.info(f"Initialized provider: {provider_name}")
            except Exception as e:
                logger.warning(f"Failed to initialize provider {provider_name}: {e}")

    def _create_provider(self, name: str) -> Optional[BaseProvider]:
        """Create a provider by name."""
        from .bitbucket import BitbucketProvider
        from .github import GitHubProvider
        from .gitlab import GitLabProvider

        timeout = self.settings.provider_timeout_seconds
        if name == ProviderType.GITHUB.value:
            return GitHubProvider(
                base_url=self.settings.github_base_url,
                token=self.settings.github_token,
                timeout=timeout,
            )
        elif name == ProviderType.GITLAB.value:
            return GitLabProvider(
                base_url=self.settings.gitlab_base_url,
                token=self.settings.gitlab_token,
                timeout=timeout,
            )
        elif name == ProviderType.BITBUCKET.value:
            return BitbucketProvider(
                base_url=self.settings.bitbucket_base_url,
                username=self.settings.bitbucket_username,
                app_password=self.settings.bitbucket_app_password,
                timeout=timeout,
            )
        else:
            logger.warning(f"Unknown provider type: {name}")
            return None

    def get_provider(self, name: str) -> Optional[BaseProvider]:
        return self.providers.get((name or "").lower())

    def require_provider(self, name: str) -> BaseProvider:
        """Return the gateway for `name` or raise a not_connected ProviderError."""
        provider = self.get_provider(name)
        if provider is None:
            raise ProviderError("Provider not connected", kind=ProviderError.NOT_CONNECTED, provider=name)
        return provider

    def list_providers(self) -> List[str]:
        """List available provider names."""
        return list(self.providers.keys())

    async def healthcheck_all(self) -> Dict[str, bool]:
        """Check health of all providers."""
        results = {}
        for name, provider in self.providers.items():
            try:
                results[name] = await provider.healthcheck()
            except Exception as e:
                logger.warning(f"Health check raised for provider {name}: {e}")
                results[name] = False
        return results

    async def aclose(self) -> None:
        """Close all providers (a provider shared by several names is closed once)."""
        closed: set[int] = set()
        for name, provider in self.providers.items():
            if id(provider) in closed:
                continue
            closed.add(id(provider))
            try:
                await provider.aclose()
            except Exception as e:
                logger.warning(f"Error closing provider {name}: {e}")
