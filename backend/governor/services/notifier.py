# backend/governor/services/notifier.py
"""
Out-of-band operator alerts (Slack incoming webhook).

Best-effort: a failed or missing webhook is logged, never raised. Callers use
notify(), which schedules the send on the running event loop (or a daemon
thread when there is none) and returns immediately.
"""

import asyncio
import threading
from typing import Any, Dict, Iterable, Optional, Set

import httpx

from governor.config import settings
from governor.utils.logger import logger


class Notifier:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url if webhook_url is not None else settings.SLACK_WEBHOOK_URL
        self.timeout = timeout
        self._pending: Set[asyncio.Task] = set()
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()

    def _payload(self, title: str, message: str, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        lines = [f"*{title}*", message]
        for key, value in (fields or {}).items():
            lines.append(f"- {key}: {value}")
        return {"text": "\n".join(lines)}

    async def send(self, title: str, message: str, fields: Optional[Dict[str, Any]] = None) -> bool:
        if not self.webhook_url:
            logger.info(f"[Notifier] {title}: {message}")
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=self._payload(title, message, fields))
                response.raise_for_status()
            return True
        except Exception as e:
            logger.error(f"[Notifier] Failed to deliver '{title}': {type(e).__name__}: {e}")
            return False

    def send_sync(self, title: str, message: str, fields: Optional[Dict[str, Any]] = None) -> bool:
        if not self.webhook_url:
            logger.info(f"[Notifier] {title}: {message}")
            return False
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=self._payload(title, message, fields))
                response.raise_for_status()
            return True
        except Exception as e:
            logger.error(f"[Notifier] Failed to deliver '{title}': {type(e).__name__}: {e}")
            return False

    def notify(self, title: str, message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        """Fire and forget. Outside an event loop the send runs on a daemon thread."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(
                target=self._send_in_thread, args=(title, message, fields), name="notifier", daemon=True
            )
            with self._lock:
                self._threads.add(thread)
            thread.start()
            return

        task = loop.create_task(self.send(title, message, fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _send_in_thread(self, title: str, message: str, fields: Optional[Dict[str, Any]]) -> None:
        try:
            self.send_sync(title, message, fields)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for sends started outside the event loop."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)

    # ---- canned alerts ----

    def kill_switch_activated(self, reason: str, activated_by: str) -> None:
        self.notify(
            "Training kill switch ACTIVATED",
            "All self-play training is halted until an operator deactivates the switch.",
            {"reason": reason, "by": activated_by},
        )

    def budget_exceeded(self, status: Dict[str, Any]) -> None:
        self.notify(
            "Daily training budget exceeded",
            f"Spent ${status.get('todaySpend', 0):.2f} of ${status.get('dailyCap', 0):.2f}.",
        )

    def breakthroughs_detected(self, battles: Iterable[Any]) -> None:
        battles = list(battles)
        if not battles:
            return
        fields = {
            f"battle {b.id}": f"referee {b.referee_score:.0f} / humanity {b.humanity_grade:.0f}"
            for b in battles
        }
        self.notify(
            f"{len(battles)} breakthrough(s) awaiting review",
            "High-scoring battles were flagged pending_review.",
            fields,
        )
