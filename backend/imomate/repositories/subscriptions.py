from __future__ import annotations

import threading
from typing import Any, Callable

from ..observability.logging import get_logger


log = get_logger("subscriptions")


def snapshot_fingerprint(result: dict[str, Any]) -> tuple:
    if not result.get("ok"):
        return ("error", str(result.get("error") or ""))
    docs = result.get("data") or []
    return tuple((d.get("id"), d.get("updatedAt"), bool(d.get("isDeleted"))) for d in docs if isinstance(d, dict))


class Subscription:
    """
    Polling subscription. The callback receives the same result dict that
    `list` returns, once initially and again each time the snapshot changes.
    """

    def __init__(
        self,
        *,
        poll: Callable[[], dict[str, Any]],
        callback: Callable[[dict[str, Any]], None],
        interval_s: float,
        name: str = "subscription",
    ):
        self._poll = poll
        self._callback = callback
        self._interval_s = max(0.05, float(interval_s))
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last: tuple | None = None

    @property
    def active(self) -> bool:
        return not self._stop.is_set()

    def poll_once(self) -> bool:
        """Run one poll; returns True when the callback was invoked."""
        if self._stop.is_set():
            return False
        result = self._poll()
        fp = snapshot_fingerprint(result)
        if fp == self._last:
            return False
        self._last = fp
        self._callback(result)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                # A failing subscriber must not kill the poller; keep polling.
                log.exception("subscription_poll_failed", subscription=self._name)
            self._stop.wait(self._interval_s)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"sub-{self._name}", daemon=True)
        self._thread.start()

    def unsubscribe(self, *, timeout_s: float | None = 1.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout_s)
