"""
ProviderGateway: one entry point for every generative capability.

    result = await gateway.invoke(Capability.VIDEO, VideoRequest(...))

Resolution per call:
  1. mock (config.mock_mode, or the per-call `mock` override) → deterministic
     substitute, no network, no counters
  2. otherwise load active providers for the capability and select one
     (registry.select_provider: default flag, then priority)
  3. decrypt the credential, build the vendor adapter, run it under the
     capability's timeout
  4. on success, attach provider slug + cost and bump the provider's counters

Every vendor failure surfaces as a typed VendorError; nothing is swallowed.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx
from pydantic import BaseModel

from .. import metrics
from ..settings import GatewayConfig
from .credentials import decrypt_api_key, mask_api_key
from .errors import NoProviderConfigured, PipelineError, VendorAuthError, VendorUnavailable
from .factory import ProviderFactory
from .mock import invoke_mock
from .models import REQUEST_TYPES, Capability, ProviderDescriptor
from .registry import select_provider

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


class ProviderGateway:
    def __init__(
        self,
        config: GatewayConfig,
        repository,
        artifacts=None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.repository = repository
        self.artifacts = artifacts
        self._client = client
        self._owns_client = client is None
        self._factory: Optional[ProviderFactory] = None

    # ── Plumbing ─────────────────────────────────────────────────────────

    def _get_factory(self) -> ProviderFactory:
        if self._factory is None:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=True)
            self._factory = ProviderFactory(
                self._client,
                max_retries=self.config.max_retries,
                backoff_base=self.config.backoff_base,
                artifacts=self.artifacts,
            )
        return self._factory

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._factory = None

    def _use_mock(self, mock: Optional[bool]) -> bool:
        return self.config.mock_mode if mock is None else mock

    # ── Resolution ───────────────────────────────────────────────────────

    async def resolve(self, capability: Capability) -> ProviderDescriptor:
        providers = await self.repository.list_active(capability)
        return select_provider(providers, capability)

    async def is_available(self, capability: Capability, mock: Optional[bool] = None) -> bool:
        """True when `invoke(capability, ...)` would reach a provider or the mock."""
        if self._use_mock(mock):
            return True
        try:
            await self.resolve(capability)
        except NoProviderConfigured:
            return False
        return True

    def _credential(self, provider: ProviderDescriptor) -> str:
        if not provider.api_key_encrypted:
            raise VendorAuthError("no credential stored for provider", vendor=provider.slug)
        return decrypt_api_key(provider.api_key_encrypted, self.config.encryption_secret)

    # ── Invocation ───────────────────────────────────────────────────────

    async def invoke(self, capability: Capability, request: BaseModel, mock: Optional[bool] = None):
        """
        Run one capability call.

        Args:
            capability: which capability to use.
            request:    the capability's request model (see models.REQUEST_TYPES).
            mock:       per-call override of the configured mock switch.

        Returns:
            The capability's result model with `provider` and `cost` set.

        Raises:
            NoProviderConfigured, ProviderConfigurationError, or a VendorError subclass.
        """
        expected = REQUEST_TYPES[capability]
        if not isinstance(request, expected):
            raise TypeError(f"{capability.value} expects {expected.__name__}, got {type(request).__name__}")

        if self._use_mock(mock):
            metrics.inc_counter(f"gateway.{capability.value}.mock")
            return await invoke_mock(capability, request)

        provider = await self.resolve(capability)
        api_key = self._credential(provider)
        adapter = self._get_factory().get_adapter(provider)
        timeout = self.config.timeout_for(capability)

        logger.info(
            f"Invoking {capability.value} via {provider.slug} "
            f"(key={mask_api_key(api_key)}, timeout={timeout:.0f}s)"
        )
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(adapter.invoke(request, api_key), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.inc_counter(f"errors.gateway.{capability.value}")
            metrics.record_error(f"gateway.{capability.value}", "VendorUnavailable", "timeout")
            raise VendorUnavailable(
                f"{capability.value} call exceeded {timeout:.0f}s", vendor=provider.slug
            )
        except PipelineError as e:
            metrics.inc_counter(f"errors.gateway.{capability.value}")
            metrics.record_error(f"gateway.{capability.value}", type(e).__name__, str(e))
            raise

        elapsed_ms = (time.monotonic() - started) * 1000
        metrics.record_latency(f"gateway.{capability.value}", elapsed_ms)
        metrics.inc_counter(f"gateway.{capability.value}.success")

        cost = provider.estimate_cost(seconds=getattr(result, "duration_seconds", None))
        result = result.model_copy(update={"provider": provider.slug, "cost": cost})
        await self.repository.increment_usage(provider.id, 1, cost)

        logger.info(f"{capability.value} via {provider.slug} done in {elapsed_ms:.0f}ms (cost={cost})")
        return result
