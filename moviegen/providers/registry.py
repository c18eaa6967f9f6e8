"""
Provider registry: loads ProviderDescriptor rows and picks one per capability.

Rows live in the `api_providers` table. Each row is validated into a typed
descriptor when the set is loaded; a bad row fails the load with
ProviderConfigurationError instead of failing later at call time.

Selection rule for a capability:
  1. exactly one active provider flagged `is_default` → that one
  2. more than one active default                     → ProviderConfigurationError
  3. otherwise lowest `priority` number (ties: slug, then id)
  4. no active provider                               → NoProviderConfigured
"""

import logging
import threading
from typing import Iterable, Optional

from pydantic import ValidationError
from supabase import Client

from .errors import NoProviderConfigured, ProviderConfigurationError
from .mock import is_mock_slug
from .models import Capability, ProviderDescriptor, vendor_config_adapter

logger = logging.getLogger(__name__)

PROVIDERS_TABLE = "api_providers"
INCREMENT_USAGE_RPC = "increment_provider_usage"


# ── Row parsing ──────────────────────────────────────────────────────────────

def descriptor_from_row(row: dict) -> ProviderDescriptor:
    """Validate one `api_providers` row into a ProviderDescriptor."""
    slug = row.get("slug") or ""
    try:
        capability = Capability(row.get("type"))
    except ValueError:
        raise ProviderConfigurationError(f"Provider '{slug}' has unknown type {row.get('type')!r}")

    block = dict(row.get("config") or {})
    block["vendor"] = slug
    try:
        config = vendor_config_adapter.validate_python(block)
    except ValidationError as e:
        raise ProviderConfigurationError(
            f"Provider '{slug}' has an invalid config block: {e.error_count()} error(s)"
        )

    if config.capability != capability:
        raise ProviderConfigurationError(
            f"Provider '{slug}' is a {config.capability.value} vendor but is registered as {capability.value}"
        )

    if row.get("api_url") and hasattr(config, "api_url"):
        config = config.model_copy(update={"api_url": row["api_url"]})

    return ProviderDescriptor(
        id=str(row["id"]),
        name=row.get("name") or slug,
        slug=slug,
        capability=capability,
        api_key_encrypted=row.get("api_key_encrypted"),
        config=config,
        is_active=bool(row.get("is_active", True)),
        is_default=bool(row.get("is_default", False)),
        priority=row.get("priority") if row.get("priority") is not None else 100,
        cost_per_request=row.get("cost_per_request"),
        cost_per_second=row.get("cost_per_second"),
        total_requests=row.get("total_requests") or 0,
        total_cost=float(row.get("total_cost") or 0),
    )


def select_provider(
    providers: Iterable[ProviderDescriptor], capability: Capability
) -> ProviderDescriptor:
    active = [p for p in providers if p.is_active and p.capability == capability]
    if not active:
        raise NoProviderConfigured(capability.value)

    defaults = [p for p in active if p.is_default]
    if len(defaults) > 1:
        slugs = ", ".join(sorted(p.slug for p in defaults))
        raise ProviderConfigurationError(
            f"{len(defaults)} active default providers for '{capability.value}': {slugs}"
        )
    if defaults:
        return defaults[0]

    return min(active, key=lambda p: (p.priority, p.slug, p.id))


# ── Repositories ─────────────────────────────────────────────────────────────

class SupabaseProviderRepository:
    """Reads `api_providers` and bumps counters via the atomic RPC."""

    def __init__(self, client: Client):
        self.client = client

    async def list_active(self, capability: Capability) -> list[ProviderDescriptor]:
        result = (
            self.client.table(PROVIDERS_TABLE)
            .select("*")
            .eq("type", capability.value)
            .eq("is_active", True)
            .execute()
        )
        providers = []
        for row in result.data or []:
            if is_mock_slug(row.get("slug") or ""):
                logger.info(f"Skipping mock provider row '{row.get('slug')}'")
                continue
            providers.append(descriptor_from_row(row))
        return providers

    async def increment_usage(self, provider_id: str, requests: int = 1, cost: float = 0.0):
        self.client.rpc(
            INCREMENT_USAGE_RPC,
            {"p_provider_id": provider_id, "p_requests": requests, "p_cost": cost},
        ).execute()


class InMemoryProviderRepository:
    """Same interface as the Supabase repository, for tests and local runs."""

    def __init__(self, providers: Optional[Iterable[ProviderDescriptor]] = None):
        self._lock = threading.Lock()
        self._providers: dict[str, ProviderDescriptor] = {}
        for provider in providers or []:
            self.add(provider)

    def add(self, provider: ProviderDescriptor):
        with self._lock:
            self._providers[provider.id] = provider

    def add_row(self, row: dict) -> ProviderDescriptor:
        provider = descriptor_from_row(row)
        self.add(provider)
        return provider

    def get(self, provider_id: str) -> Optional[ProviderDescriptor]:
        with self._lock:
            return self._providers.get(provider_id)

    async def list_active(self, capability: Capability) -> list[ProviderDescriptor]:
        with self._lock:
            return [
                p for p in self._providers.values()
                if p.capability == capability and p.is_active and not is_mock_slug(p.slug)
            ]

    async def increment_usage(self, provider_id: str, requests: int = 1, cost: float = 0.0):
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                return
            self._providers[provider_id] = provider.model_copy(update={
                "total_requests": provider.total_requests + requests,
                "total_cost": round(provider.total_cost + cost, 6),
            })
