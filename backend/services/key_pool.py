"""Rotating pool of upstream API credentials with per-key and pool-wide
cooldowns.

Selection and every state change happen under one lock, so a single pool
instance can be shared by concurrent wallet workers. The pool never raises
on its public surface: callers always get a best-effort credential (or
``None`` when no keys are configured at all) and classify the HTTP outcome
themselves.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from utils.logger import get_logger, mask_secret

logger = get_logger("key_pool")


class AlertSink(Protocol):
    def notify(self, subject: str, body: str) -> None: ...


@dataclass
class ApiCredential:
    id: str
    secret: str
    next_available_at: float = 0.0
    invalid: bool = False
    hits: int = 0
    throttles: int = 0
    last_notified_at: Optional[float] = None

    def is_usable(self, now: float) -> bool:
        return not self.invalid and self.next_available_at <= now


@dataclass(frozen=True)
class KeyPoolConfig:
    key_cooldown_seconds: float = 120.0
    invalid_cooldown_seconds: float = 24 * 60 * 60.0
    notify_on_throttle: bool = True
    notify_cooldown_seconds: float = 300.0
    global_cooldown_seconds: float = 60 * 60.0


class ApiKeyPool:
    def __init__(
        self,
        keys: Sequence[str],
        config: Optional[KeyPoolConfig] = None,
        notifier: Optional[AlertSink] = None,
        clock: Callable[[], float] = time.time,
        name: str = "market-data",
    ):
        self.name = name
        self.config = config or KeyPoolConfig()
        self._notifier = notifier
        self._clock = clock
        self._lock = threading.Lock()
        self._cursor = 0
        self._global_cooldown_until: Optional[float] = None
        self._credentials: list[ApiCredential] = []

        seen: set[str] = set()
        for raw in keys:
            secret = str(raw or "").strip()
            if not secret or secret in seen:
                continue
            seen.add(secret)
            self._credentials.append(
                ApiCredential(id=f"{name}-key-{len(self._credentials) + 1}", secret=secret)
            )

        if not self._credentials:
            logger.warning("Key pool created without credentials", pool=name)

    @classmethod
    def from_settings(
        cls,
        keys: Sequence[str],
        notifier: Optional[AlertSink] = None,
        name: str = "market-data",
    ) -> "ApiKeyPool":
        from config import settings

        config = KeyPoolConfig(
            key_cooldown_seconds=settings.API_KEY_COOLDOWN_SECONDS,
            invalid_cooldown_seconds=settings.API_KEY_INVALID_COOLDOWN_SECONDS,
            notify_on_throttle=settings.API_KEY_NOTIFY_ON_THROTTLE,
            notify_cooldown_seconds=settings.API_KEY_NOTIFY_COOLDOWN_SECONDS,
            global_cooldown_seconds=settings.API_GLOBAL_COOLDOWN_SECONDS,
        )
        return cls(keys, config=config, notifier=notifier, name=name)

    # ------------------------------------------------------------------ #
    #  Selection
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def has_keys(self) -> bool:
        return bool(self._credentials)

    def next(self) -> Optional[ApiCredential]:
        """Round-robin to the next usable credential.

        Invalid credentials whose window has passed are reinstated here.
        When nothing is usable, the credential that frees up soonest is
        returned anyway.
        """
        with self._lock:
            if not self._credentials:
                return None
            now = self._clock()
            count = len(self._credentials)
            for offset in range(count):
                index = (self._cursor + offset) % count
                credential = self._credentials[index]
                if credential.invalid and credential.next_available_at <= now:
                    credential.invalid = False
                    logger.info("Credential reinstated after invalid cooldown", pool=self.name, key_id=credential.id)
                if credential.is_usable(now):
                    self._cursor = (index + 1) % count
                    credential.hits += 1
                    return credential

            fallback = min(self._credentials, key=lambda c: c.next_available_at)
            fallback.hits += 1
            logger.debug(
                "No credential available, returning earliest to recover",
                pool=self.name,
                key_id=fallback.id,
                available_in=round(fallback.next_available_at - now, 1),
            )
            return fallback

    def all_unavailable(self) -> bool:
        """True when every credential is cooling down or invalid right now."""
        with self._lock:
            now = self._clock()
            # Invalid keys past their window count as available again.
            return all(c.next_available_at > now for c in self._credentials)

    # ------------------------------------------------------------------ #
    #  Outcome reporting
    # ------------------------------------------------------------------ #

    def report_throttled(self, key_id: str, detail: Optional[str] = None) -> None:
        alert: Optional[tuple[str, str]] = None
        with self._lock:
            credential = self._find(key_id)
            if credential is None:
                return
            now = self._clock()
            credential.throttles += 1
            credential.next_available_at = now + self.config.key_cooldown_seconds
            if self.config.notify_on_throttle and (
                credential.last_notified_at is None
                or now - credential.last_notified_at >= self.config.notify_cooldown_seconds
            ):
                credential.last_notified_at = now
                alert = (
                    f"{self.name} API throttle detected",
                    f"Key {credential.id} ({mask_secret(credential.secret)}) was rate limited "
                    f"and is cooling down for {int(self.config.key_cooldown_seconds)}s. "
                    f"Throttles so far: {credential.throttles}."
                    + (f" Detail: {detail}" if detail else ""),
                )
        logger.warning("Credential throttled", pool=self.name, key_id=key_id, detail=detail)
        if alert:
            self._emit(*alert)

    def report_invalid(
        self,
        key_id: str,
        detail: Optional[str] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> None:
        alert: Optional[tuple[str, str]] = None
        with self._lock:
            credential = self._find(key_id)
            if credential is None:
                return
            now = self._clock()
            window = self.config.invalid_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
            first_report = not credential.invalid
            credential.invalid = True
            credential.next_available_at = now + window
            if first_report:
                credential.last_notified_at = now
                alert = (
                    f"{self.name} API invalid key detected",
                    f"Key {credential.id} ({mask_secret(credential.secret)}) was rejected "
                    f"and is disabled for {int(window)}s."
                    + (f" Detail: {detail}" if detail else ""),
                )
        logger.error("Credential rejected", pool=self.name, key_id=key_id, detail=detail)
        if alert:
            self._emit(*alert)

    # ------------------------------------------------------------------ #
    #  Pool-wide cooldown
    # ------------------------------------------------------------------ #

    def enter_global_cooldown(self, reason: Optional[str] = None) -> None:
        with self._lock:
            now = self._clock()
            already_active = self._global_cooldown_until is not None and now < self._global_cooldown_until
            self._global_cooldown_until = now + self.config.global_cooldown_seconds
        if already_active:
            logger.info("Global cooldown extended", pool=self.name, reason=reason)
            return
        logger.error("Entering global cooldown", pool=self.name, reason=reason)
        self._emit(
            f"{self.name} API all keys exhausted",
            f"Every {self.name} key is unavailable. Pausing calls for "
            f"{int(self.config.global_cooldown_seconds)}s."
            + (f" Reason: {reason}" if reason else ""),
        )

    def extend_global_cooldown(self) -> None:
        with self._lock:
            self._global_cooldown_until = self._clock() + self.config.global_cooldown_seconds
        logger.info("Global cooldown extended", pool=self.name)

    def is_in_global_cooldown(self) -> bool:
        with self._lock:
            until = self._global_cooldown_until
            return until is not None and self._clock() < until

    def ready_for_global_retry(self) -> bool:
        """The pool was paused and the pause has elapsed."""
        with self._lock:
            until = self._global_cooldown_until
            return until is not None and self._clock() >= until

    def global_cooldown_remaining(self) -> float:
        with self._lock:
            if self._global_cooldown_until is None:
                return 0.0
            return max(0.0, self._global_cooldown_until - self._clock())

    def clear_global_cooldown(self, notify: bool = True) -> None:
        with self._lock:
            was_set = self._global_cooldown_until is not None
            self._global_cooldown_until = None
        if not was_set:
            return
        logger.info("Global cooldown cleared", pool=self.name)
        if notify:
            self._emit(
                f"{self.name} API keys reactivated",
                f"The {self.name} pool resumed after its cooldown with {len(self._credentials)} key(s).",
            )

    # ------------------------------------------------------------------ #
    #  Introspection
    # ------------------------------------------------------------------ #

    def snapshot(self) -> list[dict]:
        """Credential states without secret material, for logs and status."""
        with self._lock:
            now = self._clock()
            return [
                {
                    "id": c.id,
                    "usable": c.is_usable(now),
                    "invalid": c.invalid,
                    "available_in": max(0.0, round(c.next_available_at - now, 1)),
                    "hits": c.hits,
                    "throttles": c.throttles,
                }
                for c in self._credentials
            ]

    def _find(self, key_id: str) -> Optional[ApiCredential]:
        for credential in self._credentials:
            if credential.id == key_id:
                return credential
        logger.debug("Unknown credential id reported", pool=self.name, key_id=key_id)
        return None

    def _emit(self, subject: str, body: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(subject, body)
        except Exception as exc:
            logger.error("Alert delivery failed", pool=self.name, subject=subject, error=str(exc))
