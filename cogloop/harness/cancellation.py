"""Cooperative cancellation signal shared between a caller and one query."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from cogloop.errors import QueryCancelled

logger = structlog.get_logger(__name__)


class CancellationToken:
    """
    One-shot cancellation flag.

    The caller keeps the token and calls ``cancel()``; the control loop
    checks it between phases and races every phase against ``wait()``.
    Cancelling twice is harmless. A token is never un-cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self._reason = reason or None
            self._event.set()
            logger.debug("cancellation.requested", reason=self._reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, phase: str = "") -> None:
        if self._event.is_set():
            raise QueryCancelled(phase)
