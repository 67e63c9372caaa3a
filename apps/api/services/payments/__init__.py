"""Public payment provider utilities."""

from services.payments.base import PaymentProviderAdapter
from services.payments.fatora_adapter import FatoraAdapter
from services.payments.paddle_adapter import PaddleAdapter
from services.payments.stripe_adapter import StripeAdapter
from services.payments.types import (
    ProviderEvent,
    ProviderKey,
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookVerificationError,
)

_ADAPTERS = {
    "stripe": StripeAdapter,
    "paddle": PaddleAdapter,
    "fatora": FatoraAdapter,
}


def get_payment_adapter(provider: ProviderKey) -> PaymentProviderAdapter:
    try:
        return _ADAPTERS[provider]()
    except KeyError as exc:
        raise ValueError(f"Unsupported payment provider: {provider}") from exc


__all__ = [
    "FatoraAdapter",
    "PaddleAdapter",
    "PaymentProviderAdapter",
    "ProviderEvent",
    "ProviderKey",
    "StripeAdapter",
    "WebhookConfigurationError",
    "WebhookPayloadError",
    "WebhookVerificationError",
    "get_payment_adapter",
]
