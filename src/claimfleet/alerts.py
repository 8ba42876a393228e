"""Out-of-band alerts for operators. Only sweep failures are reported here."""

import asyncio
import logging
from typing import Protocol

import httpx

log = logging.getLogger("claimfleet.alerts")

MAX_RETRIES = 2
RETRY_DELAY = 1.0  # seconds


class AlertSink(Protocol):
    def notify(self, message: str) -> None:
        """Fire-and-forget; must never raise."""

    async def close(self) -> None: ...


class LogAlertSink:
    def notify(self, message: str) -> None:
        log.warning("ALERT: %s", message)

    async def close(self) -> None:
        pass


class WebhookAlertSink:
    """POSTs ``{"text": message}`` to a webhook (Slack/Telegram-bridge style).

    Delivery happens on a background task so callers in the pipeline never
    wait on it; failures are logged and dropped.
    """

    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending: set[asyncio.Task] = set()

    def notify(self, message: str) -> None:
        log.warning("ALERT: %s", message)
        try:
            task = asyncio.get_running_loop().create_task(self._send(message))
        except RuntimeError:
            log.error("No running loop, alert not delivered to webhook: %s", message)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, message: str) -> None:
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await self._client.post(self.url, json={"text": message})
                if resp.status_code < 400:
                    return
                log.warning("Alert webhook returned %d (attempt %d/%d)", resp.status_code, attempt + 1, MAX_RETRIES + 1)
            except httpx.HTTPError as exc:
                log.warning("Alert webhook error: %s (attempt %d/%d)", exc, attempt + 1, MAX_RETRIES + 1)
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_DELAY)
        log.error("Alert dropped after %d attempts: %s", MAX_RETRIES + 1, message)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()


def make_alert_sink(webhook_url: str | None) -> AlertSink:
    if webhook_url:
        log.info("Alerts go to webhook %s", webhook_url)
        return WebhookAlertSink(webhook_url)
    return LogAlertSink()
