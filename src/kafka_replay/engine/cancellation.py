"""Cooperative cancellation for replay runs."""

import asyncio
from enum import Enum
from typing import Optional


class CancelReason(str, Enum):
    """Why a run was asked to stop."""

    USER = "user"  # cancel() was called; job ends CANCELLED
    SHUTDOWN = "shutdown"  # engine is stopping; job is requeued


class CancellationToken:
    """
    Flag checked by the extractor between batches.

    A run holding a cancelled token stops at the next batch boundary after
    the in-flight batch has been acknowledged. The first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[CancelReason] = None

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancelReason", "CancellationToken"]
