"""
One-shot human decisions.

A PendingDecision is a single-use channel: the first of (user resolution,
timeout default, cancellation) wins and every later attempt is a no-op.
Stopping a session cancels its open decisions so nothing waits on an
answer that will never be acted on.
"""

from __future__ import annotations

import asyncio
from typing import Any, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class PendingDecision(Generic[T]):

    def __init__(self, kind: str, session_id: Any):
        self.kind = kind
        self.session_id = str(session_id)
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        """Deliver the decision. Returns False if something else already won."""
        if self._future.done():
            logger.debug(f"[DECISION] {self.session_id}/{self.kind}: late resolution ignored")
            return False
        self._future.set_result(value)
        return True

    def cancel(self) -> bool:
        if self._future.done():
            return False
        return self._future.cancel()

    async def wait(self, timeout_s: float | None = None, default: T | None = None) -> T:
        """
        Suspend until resolved. With a timeout, the default is returned when
        the timer fires first. Raises CancelledError if the decision is cancelled.
        """
        if timeout_s is None:
            return await self._future
        try:
            return await asyncio.wait_for(self._future, timeout_s)
        except asyncio.TimeoutError:
            logger.info(
                f"[DECISION] {self.session_id}/{self.kind}: no answer in {timeout_s:g}s — "
                f"defaulting to {default!r}"
            )
            return default


class DecisionBoard:
    """The open decisions of one session, at most one per kind."""

    def __init__(self, session_id: Any):
        self.session_id = str(session_id)
        self._open: dict[str, PendingDecision] = {}

    def open(self, kind: str) -> PendingDecision:
        previous = self._open.get(kind)
        if previous is not None:
            previous.cancel()
        decision: PendingDecision = PendingDecision(kind, self.session_id)
        self._open[kind] = decision
        return decision

    def get(self, kind: str) -> PendingDecision | None:
        decision = self._open.get(kind)
        if decision is None or decision.done:
            return None
        return decision

    def resolve(self, kind: str, value: Any) -> bool:
        decision = self.get(kind)
        if decision is None:
            logger.warning(f"[DECISION] {self.session_id}: nothing pending for '{kind}'")
            return False
        return decision.resolve(value)

    def close(self, kind: str) -> None:
        self._open.pop(kind, None)

    def pending(self) -> list[str]:
        return [kind for kind, d in self._open.items() if not d.done]

    def cancel_all(self) -> int:
        cancelled = sum(1 for d in self._open.values() if d.cancel())
        self._open.clear()
        return cancelled
