"""Payment provider adapter capability shared by every webhook endpoint."""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.subscription import Subscription
from services.payments.types import ProviderEvent, ProviderKey
from services.subscriptions import SubscriptionUpdate, apply_subscription_update

logger = logging.getLogger(__name__)


class PaymentProviderAdapter(ABC):
    """Verify, parse, and translate one provider's webhook deliveries.

    Adapters never write to the store themselves; they describe the change as
    a ``SubscriptionUpdate`` and ``reconcile`` applies it through the single
    shared upsert. Only a delivery whose signature was checked may move
    credits: an unverified one updates the row alone, and its payment
    reference is not recorded, so the genuine delivery still counts.
    """

    provider: ProviderKey
    acknowledgement: Dict[str, Any] = {"received": True}

    @abstractmethod
    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Raise ``WebhookVerificationError`` on a bad signature; return whether one was checked."""
        raise NotImplementedError

    @abstractmethod
    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        raise NotImplementedError

    @abstractmethod
    async def resolve_update(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        raise NotImplementedError

    async def reconcile(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        db: AsyncSession,
    ) -> Optional[Subscription]:
        verified = self.verify(raw_body, headers)
        event = self.parse_event(raw_body, headers)
        logger.info("%s webhook received: %s", self.provider, event.event_type or "unknown")

        update = await self.resolve_update(event, db)
        if update is None:
            logger.info("%s webhook %s produced no subscription change", self.provider, event.event_type)
            return None
        if not verified:
            logger.warning(
                "%s webhook %s is unsigned; credits for user %s left unchanged",
                self.provider,
                event.event_type,
                update.user_id,
            )
            update = dataclasses.replace(update, renewal=False, payment=None)
        return await apply_subscription_update(update, db, adjust_credits=verified)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse unix seconds or ISO-8601 strings (date-only included) into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable provider timestamp: %s", text)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
