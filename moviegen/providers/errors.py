"""
Typed failures raised by the provider gateway and the generation pipeline.

Vendor errors carry a `retryable` flag so the orchestrator can classify them
without inspecting messages:

  VendorAuthError          bad or expired credential         (not retryable)
  VendorRejected           4xx from the vendor               (not retryable)
  VendorUnavailable        5xx, 429, timeout, transport      (retryable)
  MalformedVendorResponse  payload could not be parsed       (not retryable)

Messages never contain credentials; they are safe to persist and return.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error this package raises on purpose."""


# ── Vendor errors ────────────────────────────────────────────────────────────

class VendorError(PipelineError):
    retryable = False

    def __init__(
        self,
        message: str,
        vendor: str = "",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.vendor:
            return f"{self.vendor}: {base}"
        return base


class VendorAuthError(VendorError):
    """Credential rejected (401/403) or missing."""


AuthenticationFailed = VendorAuthError


class VendorRejected(VendorError):
    """Vendor refused the input. Retrying with the same input will fail again."""


class VendorUnavailable(VendorError):
    """Transient failure: 5xx, rate limit, timeout or connection error."""

    retryable = True


class MalformedVendorResponse(VendorError):
    """The vendor answered but the payload could not be understood."""

    def __init__(
        self,
        message: str,
        vendor: str = "",
        status_code: Optional[int] = None,
        raw_text: str = "",
    ):
        super().__init__(message, vendor=vendor, status_code=status_code)
        self.raw_text = raw_text


# ── Configuration errors ─────────────────────────────────────────────────────

class NoProviderConfigured(PipelineError):
    def __init__(self, capability: str):
        super().__init__(f"No active provider configured for capability '{capability}'")
        self.capability = capability


class ProviderConfigurationError(PipelineError):
    """A provider row is invalid or the default flag is ambiguous."""


# ── Pipeline errors ──────────────────────────────────────────────────────────

class ContinuityInconsistent(PipelineError):
    """Continuity state was asked to do something that breaks scene ordering."""


class AssemblyUnavailable(PipelineError):
    """No render backend produced an artifact. Triggers the sequential fallback."""


class InvalidStatusTransition(PipelineError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal job status transition {current} → {target}")
        self.current = current
        self.target = target


class CharacterLocked(PipelineError):
    """Visual traits of a locked character cannot change."""


class JobCancelled(PipelineError):
    """The job was marked failed/rejected externally while it was running."""
