"""Abort signals for cancellable suspension points.

An :class:`AbortController` owns an :class:`AbortSignal`. Controllers can be
chained with ``parent=`` so a batch-level abort reaches every task while a
task-level abort stays local.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from fanout.errors import AbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortSignal:
    """Observable side of an :class:`AbortController`."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: BaseException | None = None
        self._children: list[AbortController] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> BaseException | None:
        return self._reason

    def error(self) -> AbortedError:
        """Return the exception raised at a suspension point after abort."""
        if isinstance(self._reason, AbortedError):
            return self._reason
        message = str(self._reason) if self._reason is not None else "operation aborted"
        return AbortedError(message, reason=self._reason)

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise self.error()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, aw: Awaitable[T]) -> T:
        """Await *aw* unless the signal fires first.

        When the signal wins, *aw* is cancelled and the abort error is
        raised.
        """
        self.raise_if_aborted()
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Aborted operation raised while cancelling: {e!r}")
        raise self.error()

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, failing fast on abort."""
        await self.race(asyncio.sleep(delay))

    def _fire(self, reason: BaseException | None) -> None:
        if self.aborted:
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.abort(reason)


class AbortController:
    """Creates and triggers an :class:`AbortSignal`.

    Args:
        parent: Signal whose abort should propagate to this controller.
    """

    def __init__(self, parent: AbortSignal | None = None):
        self.signal = AbortSignal()
        self._parent = parent
        if parent is not None:
            if parent.aborted:
                self.abort(parent.reason)
            else:
                parent._children.append(self)

    def abort(self, reason: BaseException | None = None) -> None:
        self.signal._fire(reason)

    def unlink(self) -> None:
        """Stop receiving aborts from the parent signal."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self._parent = None
