"""
Provider Gateway

Uniform capability interface over third-party generative vendors:
  llm · image · lora_training · video · audio · lip_sync · music
with per-capability provider resolution, encrypted credentials, typed
errors and a deterministic mock substitute.
"""

from .errors import (
    AuthenticationFailed,
    MalformedVendorResponse,
    NoProviderConfigured,
    ProviderConfigurationError,
    VendorAuthError,
    VendorError,
    VendorRejected,
    VendorUnavailable,
)
from .gateway import ProviderGateway
from .models import Capability, ProviderDescriptor
from .registry import InMemoryProviderRepository, SupabaseProviderRepository

__all__ = [
    "ProviderGateway",
    "Capability",
    "ProviderDescriptor",
    "InMemoryProviderRepository",
    "SupabaseProviderRepository",
    "VendorError",
    "VendorAuthError",
    "AuthenticationFailed",
    "VendorRejected",
    "VendorUnavailable",
    "MalformedVendorResponse",
    "NoProviderConfigured",
    "ProviderConfigurationError",
]
