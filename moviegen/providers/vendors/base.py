import json
import logging
from typing import Any, Optional

from ..errors import MalformedVendorResponse
from ..http import VendorHttpClient

logger = logging.getLogger(__name__)


class VendorAdapter:
    """
    One vendor's protocol behind one capability.

    Subclasses implement `invoke(request, api_key)` and return the
    capability's result model. Credentials arrive per call, already decrypted.
    """

    vendor = ""

    def __init__(self, config, http: VendorHttpClient, artifacts=None):
        self.config = config
        self.http = http
        self.artifacts = artifacts

    async def invoke(self, request, api_key: str):
        raise NotImplementedError

    def malformed(self, message: str, payload: Any = None) -> MalformedVendorResponse:
        raw = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        return MalformedVendorResponse(message, vendor=self.vendor, raw_text=(raw or "")[:2000])


def dig(data: Any, *path, default: Optional[Any] = None) -> Any:
    """Walk nested dicts/lists; return `default` as soon as a step is missing."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return default
        elif not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current
