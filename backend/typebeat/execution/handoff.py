"""
Engine handoff gate.

Serializes engine use across jobs that the scheduler admitted
"concurrently". Each job arms a one-shot cleanup-complete future and
chains it behind the previous job's future; it may touch the engine only
once its predecessor's future resolves, and it resolves its own future
only after its cleanup is verified.

Guarantees:
- At most one holder at any instant
- Exactly one waiter is released per completed cleanup, FIFO order
- reset() (engine terminated) empties the gate and wakes every waiter;
  woken waiters re-check cancellation before queueing again
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from .errors import HandoffTimeout

logger = logging.getLogger(__name__)


@dataclass
class HandoffTicket:
    """Proof that a job holds the engine. Pass it back to release()."""

    job_id: str
    cleanup_done: "asyncio.Future[None]"
    epoch: int
    acquired_at: float


class HandoffGate:
    """
    Single-slot ownership marker for the shared engine.

    Usage:
        ticket = await gate.acquire(job.id, is_cancelled=scope.is_set)
        try:
            ...  # use the engine, clean up
        finally:
            gate.release(ticket)
    """

    def __init__(self):
        self._tail: Optional["asyncio.Future[None]"] = None
        self._armed: List["asyncio.Future[None]"] = []
        self._holder: Optional[str] = None
        self._epoch = 0

    @property
    def holder(self) -> Optional[str]:
        """Job id currently permitted to drive the engine, or None."""
        return self._holder

    @property
    def epoch(self) -> int:
        """Incremented on every reset."""
        return self._epoch

    def _arm(self) -> "tuple[Optional[asyncio.Future[None]], asyncio.Future[None]]":
        # Swap the tail synchronously so two waiters can never await the
        # same predecessor.
        loop = asyncio.get_running_loop()
        mine: "asyncio.Future[None]" = loop.create_future()
        previous = self._tail
        self._tail = mine
        self._armed.append(mine)
        return previous, mine

    async def acquire(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        is_cancelled=None,
    ) -> HandoffTicket:
        """
        Wait for the previous job's cleanup, then take the engine.

        Args:
            job_id: Job requesting the engine
            timeout: Maximum wait in seconds (None waits forever)
            is_cancelled: Callable checked after a reset wake-up; when it
                returns True the ticket is returned without queueing again
                so the caller can short-circuit

        Raises:
            HandoffTimeout: If the predecessor did not release in time
        """
        started = time.monotonic()
        while True:
            epoch = self._epoch
            previous, mine = self._arm()

            if previous is not None and not previous.done():
                logger.debug(f"[Handoff] Job {job_id} waiting for engine")
                remaining = None
                if timeout is not None:
                    remaining = max(0.0, timeout - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(asyncio.shield(previous), remaining)
                except asyncio.TimeoutError:
                    # Forward the predecessor's release to our successor so
                    # the rest of the chain does not inherit our failure.
                    previous.add_done_callback(lambda _f, m=mine: self._resolve(m))
                    waited = time.monotonic() - started
                    logger.error(
                        f"[Handoff] Job {job_id} timed out after {waited:.0f}s, "
                        f"holder={self._holder}"
                    )
                    raise HandoffTimeout(job_id, waited, holder=self._holder)
                except BaseException:
                    previous.add_done_callback(lambda _f, m=mine: self._resolve(m))
                    raise

            if epoch != self._epoch:
                # Woken by reset(): our armed future belongs to a dead chain
                self._resolve(mine)
                if is_cancelled is not None and is_cancelled():
                    return HandoffTicket(job_id, mine, epoch, time.monotonic())
                continue

            self._holder = job_id
            logger.debug(f"[Handoff] Job {job_id} acquired engine")
            return HandoffTicket(job_id, mine, epoch, time.monotonic())

    def holds(self, ticket: Optional[HandoffTicket]) -> bool:
        """True if `ticket` is the live ownership of the engine."""
        return (
            ticket is not None
            and ticket.epoch == self._epoch
            and self._holder == ticket.job_id
            and not ticket.cleanup_done.done()
        )

    def release(self, ticket: Optional[HandoffTicket]) -> None:
        """
        Release the engine after cleanup is verified.

        Safe to call with a stale ticket (after reset) or None.
        """
        if ticket is None:
            return
        if self._holder == ticket.job_id and ticket.epoch == self._epoch:
            self._holder = None
            logger.debug(f"[Handoff] Job {ticket.job_id} released engine")
        self._resolve(ticket.cleanup_done)

    def _resolve(self, future: "asyncio.Future[None]") -> None:
        if not future.done():
            future.set_result(None)
        try:
            self._armed.remove(future)
        except ValueError:
            pass
        if self._tail is future and future.done() and not self._armed:
            self._tail = None

    def reset(self) -> None:
        """
        Empty the gate and wake every waiter.

        Called when the engine is terminated. The current holder's ticket
        becomes stale; its later release() is a no-op.
        """
        self._epoch += 1
        if self._holder is not None:
            logger.info(f"[Handoff] Reset while held by job {self._holder}")
        self._holder = None
        armed, self._armed = self._armed, []
        self._tail = None
        for future in armed:
            if not future.done():
                future.set_result(None)
