from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..observability.metrics import AUDIT_FAILED, AUDIT_SENT
from .mailer import Mailer

logger = logging.getLogger(__name__)


class AuditDispatcher:
    """
    Mirrors lifecycle events to the admin mailbox as background tasks.

    submit() returns immediately; the send happens on the event loop and any
    failure is logged and counted, never raised to the request that caused it.
    """

    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, subject: str, payload: dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(subject, payload))
        # keep a strong ref until done, the loop only holds weak ones
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, subject: str, payload: dict[str, Any]) -> None:
        try:
            await self._mailer.send_to_admin(subject, payload)
            AUDIT_SENT.inc()
        except Exception:
            AUDIT_FAILED.inc()
            logger.exception("admin audit failed", extra={"subject": subject})

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight audits (used at shutdown and in tests)."""
        if not self._pending:
            return
        _, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        if not_done:
            logger.warning("audit drain timed out with %d pending", len(not_done))
