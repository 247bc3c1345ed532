"""Signed webhook delivery for engine events."""

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from typing import Any

import httpx
from sqlalchemy.orm import Session

from . import config
from .config import WEBHOOK_SIGNATURE_HEADER
from .database import SessionLocal, utc_now
from .models import WebhookSubscription
from .telemetry import get_tracer, is_telemetry_enabled

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = frozenset({"idea_submitted", "vote_cast", "tier_complete", "winner_declared"})


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of ``body`` as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a received signature header."""
    return hmac.compare_digest(sign_payload(secret, body), signature)


class WebhookDispatcher:
    """Delivers events to every active subscriber, best effort.

    A subscriber is disabled after ``max_failures`` consecutive failed
    deliveries; one success resets the counter.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        max_failures: int | None = None,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.timeout = timeout if timeout is not None else config.WEBHOOK_TIMEOUT
        self.max_failures = (
            max_failures if max_failures is not None else config.WEBHOOK_MAX_CONSECUTIVE_FAILURES
        )

    async def fire_event(self, kind: str, payload: dict[str, Any]) -> int:
        """
        Deliver one event to all subscribers of ``kind``.

        Args:
            kind: One of WEBHOOK_EVENTS
            payload: JSON-serializable event data

        Returns:
            Number of successful deliveries
        """
        if kind not in WEBHOOK_EVENTS:
            raise ValueError(f"Unknown webhook event: {kind}")

        body = json.dumps(
            {"event": kind, "timestamp": utc_now().isoformat() + "Z", "data": payload},
            default=str,
        ).encode("utf-8")

        tracer = get_tracer()
        with tracer.start_as_current_span("tierflow.webhook.fire_event") as span:
            db = self.session_factory()
            try:
                subscriptions = [
                    sub
                    for sub in db.query(WebhookSubscription)
                    .filter(WebhookSubscription.active.is_(True))
                    .order_by(WebhookSubscription.id)
                    .all()
                    if sub.subscribes_to(kind)
                ]
                if not subscriptions:
                    return 0

                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    results = await asyncio.gather(
                        *(self._deliver(client, sub.url, sub.secret, kind, body) for sub in subscriptions)
                    )

                now = utc_now()
                for sub, ok in zip(subscriptions, results):
                    if ok:
                        sub.consecutive_failures = 0
                        continue
                    sub.consecutive_failures += 1
                    sub.last_failure_at = now
                    if sub.consecutive_failures >= self.max_failures:
                        sub.active = False
                        logger.warning(
                            "Disabled webhook %s after %d consecutive failures",
                            sub.id,
                            sub.consecutive_failures,
                        )
                db.commit()

                delivered = sum(1 for ok in results if ok)
                if is_telemetry_enabled():
                    span.set_attribute("webhook.event", kind)
                    span.set_attribute("webhook.delivered", delivered)
                    span.set_attribute("webhook.subscribers", len(subscriptions))
                return delivered
            finally:
                db.close()

    async def _deliver(
        self, client: httpx.AsyncClient, url: str, secret: str, kind: str, body: bytes
    ) -> bool:
        headers = {
            "Content-Type": "application/json",
            "X-Tierflow-Event": kind,
            WEBHOOK_SIGNATURE_HEADER: sign_payload(secret, body),
        }
        try:
            response = await client.post(url, content=body, headers=headers)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery to %s failed: %s", url, e)
            return False
