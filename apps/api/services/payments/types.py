"""Payment provider webhook contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal


ProviderKey = Literal["stripe", "paddle", "fatora"]


class WebhookConfigurationError(RuntimeError):
    """Raised when a provider's webhook secret or API key is not configured."""


class WebhookVerificationError(RuntimeError):
    """Raised when a webhook payload fails authenticity checks."""


class WebhookPayloadError(ValueError):
    """Raised when a webhook payload cannot be parsed into an event."""


@dataclass(frozen=True)
class ProviderEvent:
    provider: ProviderKey
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
