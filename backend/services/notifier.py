"""Fire-and-forget operator alerts (key throttling, invalid keys, pool
exhaustion and reactivation) delivered to Telegram."""

from __future__ import annotations

import asyncio
import re
import time
from collections import deque
from typing import Optional

import httpx

from config import settings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("notifier")

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGES_PER_MINUTE = 20
MAX_MESSAGE_CHARS = 3900

_MARKDOWN_V2_SPECIAL = re.compile(r"([\\_*\[\]()~`>#+=|{}.!-])")


def escape_markdown(text: object) -> str:
    """Escape Telegram MarkdownV2 control characters."""
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", str(text))


def format_alert(subject: str, body: str) -> str:
    stamp = utcnow().strftime("%Y-%m-%d %H:%M:%S")
    message = (
        f"⚠️ *{escape_markdown(subject)}*\n\n"
        f"{escape_markdown(body)}\n\n"
        f"*Time:* {escape_markdown(stamp)} UTC"
    )
    return message[:MAX_MESSAGE_CHARS]


class _SendWindow:
    """Sliding one-minute window of delivery timestamps."""

    def __init__(self, limit: int, period: float = 60.0):
        self.limit = limit
        self.period = period
        self._stamps: deque[float] = deque()

    def seconds_until_free(self) -> float:
        now = time.monotonic()
        while self._stamps and now - self._stamps[0] >= self.period:
            self._stamps.popleft()
        if len(self._stamps) < self.limit:
            return 0.0
        return self.period - (now - self._stamps[0])

    def record(self) -> None:
        self._stamps.append(time.monotonic())


class AlertNotifier:
    """Bounded outbound queue drained by a detached worker task.

    ``notify`` never blocks and never raises: when the queue is full the
    alert is dropped (and logged), and delivery failures stay inside the
    worker.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        max_queue_size: int = 100,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, max_queue_size))
        self._worker: Optional[asyncio.Task] = None
        self._http_client = http_client
        self._owns_client = http_client is None
        self._window = _SendWindow(MAX_MESSAGES_PER_MINUTE)
        self.sent_count = 0
        self.dropped_count = 0

    @classmethod
    def from_settings(cls) -> "AlertNotifier":
        return cls(
            bot_token=settings.TELEGRAM_BOT_TOKEN,
            chat_id=settings.TELEGRAM_CHAT_ID,
            max_queue_size=settings.ALERT_QUEUE_MAXSIZE,
        )

    @property
    def delivery_configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def notify(self, subject: str, body: str) -> None:
        """Log the alert and queue it for Telegram when delivery is configured."""
        try:
            logger.warning("Alert", subject=subject, body=body)
            if not self.delivery_configured:
                return
            try:
                self._queue.put_nowait(format_alert(subject, body))
            except asyncio.QueueFull:
                self.dropped_count += 1
                logger.warning("Alert queue full, dropping alert", subject=subject, dropped=self.dropped_count)
                return
            self._ensure_worker()
        except Exception as exc:
            logger.error("Failed to queue alert", subject=subject, error=str(exc))

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; start() picks the backlog up.
            return
        self._worker = loop.create_task(self._drain())

    async def start(self) -> None:
        if not self.delivery_configured:
            logger.info("Telegram credentials not configured -- alerts will only be logged")
            return
        self._ensure_worker()

    async def shutdown(self, drain_timeout: float = 5.0) -> None:
        """Give queued alerts a moment to go out, then stop and close."""
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Alert queue not drained before shutdown", pending=self.pending)
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                wait = self._window.seconds_until_free()
                if wait > 0:
                    await asyncio.sleep(wait)
                if await self._deliver(message):
                    self.sent_count += 1
                self._window.record()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Alert worker error", error=str(exc))
            finally:
                self._queue.task_done()

    async def _deliver(self, text: str) -> bool:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=15.0)
            self._owns_client = True

        try:
            resp = await self._http_client.post(
                f"{TELEGRAM_API_BASE}/bot{self._bot_token}/sendMessage",
                json={
                    "chat_id": self._chat_id,
                    "text": text,
                    "parse_mode": "MarkdownV2",
                    "disable_web_page_preview": True,
                },
            )
        except httpx.TimeoutException:
            logger.warning("Telegram API request timed out")
            return False
        except httpx.HTTPError as exc:
            logger.error("Failed to send Telegram alert", error=str(exc))
            return False

        if resp.status_code == 200:
            logger.debug("Telegram alert sent")
            return True
        # 429 included: alerts are best effort, we do not requeue.
        logger.warning("Telegram API error", status=resp.status_code, body=resp.text[:300])
        return False


notifier = AlertNotifier.from_settings()
