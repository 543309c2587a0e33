"""Sale notifier - signed, bounded-retry POST of completed sales to a downstream system"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from app.core.config import settings, SALE_SIGNATURE_HEADER
from app.core.metrics import sale_notification_attempts_counter, sale_notifications_counter
from app.schemas.webhooks import SaleNotification
from app.services.signature_service import compute_hmac_sha256

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifyResult:
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class SaleNotifier:
    """POSTs a SaleNotification with an HMAC signature header, retrying on failure

    Delivery is at-least-once and best-effort: ``notify`` never raises, and the
    caller must not let its result affect the already-committed subscription.
    One notifier is built per request; nothing here is shared between threads.
    """

    def __init__(
        self,
        url: str,
        secret: str,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float = 10.0
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.url = url
        self.secret = secret
        self.http_client = http_client
        self.sleep = sleep
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt n (1-based): base, 2*base, 4*base, ..."""
        return self.base_delay * (2 ** (attempt - 1))

    def _post(self, client: httpx.Client, body: bytes, signature: str) -> httpx.Response:
        return client.post(
            self.url,
            content=body,
            headers={
                "Content-Type": "application/json",
                SALE_SIGNATURE_HEADER: signature,
            },
        )

    def notify(self, payload: SaleNotification) -> NotifyResult:
        # Serialized once so the signature covers exactly the bytes sent
        body = payload.model_dump_json().encode("utf-8")
        signature = compute_hmac_sha256(self.secret, body)

        owns_client = self.http_client is None
        client = self.http_client or httpx.Client(timeout=self.timeout)
        last_status: Optional[int] = None
        last_error: Optional[str] = None

        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = self._post(client, body, signature)
                    last_status = response.status_code
                    if response.is_success:
                        sale_notification_attempts_counter.labels(result="success").inc()
                        sale_notifications_counter.labels(outcome="delivered").inc()
                        logger.info(
                            f"Sale notification for org {payload.org_id} delivered "
                            f"(attempt {attempt}, status {last_status})"
                        )
                        return NotifyResult(delivered=True, attempts=attempt, status_code=last_status)
                    last_error = f"HTTP {last_status}"
                    sale_notification_attempts_counter.labels(result="http_error").inc()
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"
                    sale_notification_attempts_counter.labels(result="network_error").inc()

                logger.warning(
                    f"Sale notification attempt {attempt}/{self.max_attempts} for org {payload.org_id} failed: {last_error}"
                )
                if attempt < self.max_attempts:
                    self.sleep(self.backoff_delay(attempt))
        finally:
            if owns_client:
                client.close()

        sale_notifications_counter.labels(outcome="exhausted").inc()
        logger.warning(
            f"Sale notification for org {payload.org_id} gave up after {self.max_attempts} attempts: {last_error}"
        )
        return NotifyResult(
            delivered=False,
            attempts=self.max_attempts,
            status_code=last_status,
            error=last_error
        )


def build_sale_notifier() -> Optional[SaleNotifier]:
    """Notifier from settings, or None when no downstream URL is configured"""
    if not settings.SALE_WEBHOOK_URL:
        return None
    if not settings.SALE_WEBHOOK_SECRET:
        logger.warning("SALE_WEBHOOK_URL is set but SALE_WEBHOOK_SECRET is empty; notifications will be signed with an empty key")
    return SaleNotifier(
        url=settings.SALE_WEBHOOK_URL,
        secret=settings.SALE_WEBHOOK_SECRET,
        max_attempts=settings.SALE_WEBHOOK_MAX_ATTEMPTS,
        base_delay=settings.SALE_WEBHOOK_BACKOFF_SECONDS,
        timeout=settings.SALE_WEBHOOK_TIMEOUT_SECONDS
    )
