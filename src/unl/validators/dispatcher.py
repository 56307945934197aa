"""
Single-writer dispatcher for the validators engine.

Every mutation of Logic runs on one worker task. Producers (RPC
handlers, the network layer, the check timer) only enqueue messages; the
worker drains them FIFO and, while a source check is requested, pulls one
source per loop turn:

    turn:
        if checking: fetch_one()        # at most one source pull
        run one queued message          # at most one message

Scheduler states:
    IDLE      not started
    CHECKING  check flag set; each turn pulls one source
    SETTLED   pass complete, timer armed for the next check

The timer is re-armed only after a full pass, so a slow pass delays the
next check instead of overlapping with it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Dict, Optional, Union

from ..core import defaults
from .logic import Logic
from .models import ReceivedValidation
from .sources import Source

logger = logging.getLogger(__name__)


# =============================================================================
# STATE AND MESSAGES
# =============================================================================


class SchedulerState(StrEnum):
    IDLE = "idle"
    CHECKING = "checking"
    SETTLED = "settled"


@dataclass(frozen=True)
class AddSource:
    source: Source


@dataclass(frozen=True)
class RemoveSource:
    name: str


@dataclass(frozen=True)
class CheckSources:
    """Posted by the check timer: start a new pass."""


@dataclass(frozen=True)
class ReceiveValidation:
    validation: ReceivedValidation


@dataclass(frozen=True)
class LedgerClosed:
    ledger_hash: str


@dataclass(frozen=True)
class Rebuild:
    seed: Optional[int] = None


@dataclass(frozen=True)
class Shutdown:
    """Wakes the worker so it can exit."""


@dataclass(frozen=True)
class Barrier:
    """Resolves `future` once every message posted before it has run."""

    future: asyncio.Future


Message = Union[
    AddSource,
    RemoveSource,
    CheckSources,
    ReceiveValidation,
    LedgerClosed,
    Rebuild,
    Shutdown,
    Barrier,
]


# =============================================================================
# DISPATCHER
# =============================================================================


class Dispatcher:
    """
    Serializes all work on a Logic instance through one asyncio worker.

    Example:
        dispatcher = Dispatcher(logic, check_interval=3600)
        await dispatcher.start()
        dispatcher.post(LedgerClosed(ledger_hash))
        await dispatcher.flush()
        await dispatcher.stop()
    """

    def __init__(
        self,
        logic: Logic,
        check_interval: float = defaults.DEFAULT_CHECK_INTERVAL_SECONDS,
    ):
        self.logic = logic
        self.check_interval = check_interval

        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        self._state = SchedulerState.IDLE
        self._check_flag = False
        self._running = False
        self._stopping = False

        self._stats: Dict[str, int] = {
            "turns": 0,
            "fetches": 0,
            "passes": 0,
            "messages": 0,
            "errors": 0,
            "discarded": 0,
        }

    # -------------------------------------------------------------------------
    # PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def check_flag(self) -> bool:
        return self._check_flag

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker with the check flag set (initial pass)."""
        if self._running:
            logger.warning("Dispatcher already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True
        self._stopping = False
        self._check_flag = True
        self._state = SchedulerState.CHECKING
        self._task = asyncio.create_task(self._run(), name="unl-dispatcher")

        logger.info(f"Dispatcher started (check interval {self.check_interval}s)")

    async def stop(self, timeout: float = defaults.STOP_TIMEOUT_SECONDS) -> None:
        """Stop the worker after its current turn and discard queued messages."""
        if not self._running:
            return

        self._running = False
        self._stopping = True
        self._cancel_timer()
        logger.info("Stopping dispatcher...")

        # Wake the worker if it is blocked on an empty queue
        self._queue.put_nowait(Shutdown())

        task = self._task
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Dispatcher did not stop within {timeout}s, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None

        discarded = self._drain()
        if discarded:
            logger.info(f"Discarded {discarded} queued messages on shutdown")

        self._check_flag = False
        self._state = SchedulerState.IDLE
        logger.info("Dispatcher stopped")

    def _drain(self) -> int:
        """Empty the queue, cancelling any pending barriers."""
        discarded = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(message, Shutdown):
                continue
            if isinstance(message, Barrier) and not message.future.done():
                message.future.cancel()
            discarded += 1
        self._stats["discarded"] += discarded
        return discarded

    # -------------------------------------------------------------------------
    # PRODUCERS
    # -------------------------------------------------------------------------

    def post(self, message: Message) -> None:
        """
        Enqueue a message for the worker.

        Safe to call from any thread: calls from outside the event loop's
        thread are handed over with call_soon_threadsafe.
        """
        loop = self._loop
        if loop is None:
            self._queue.put_nowait(message)
            return

        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if current is loop:
            self._queue.put_nowait(message)
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, message)

    async def flush(self) -> None:
        """Wait until every message posted so far has been handled."""
        if not self._running:
            raise RuntimeError("Dispatcher is not running")
        future = asyncio.get_running_loop().create_future()
        self.post(Barrier(future))
        await future

    def request_check(self) -> None:
        """Set the check flag; the next turns pull sources until a pass completes."""
        self._cancel_timer()
        if not self._check_flag:
            logger.debug("Checking sources")
        self._check_flag = True
        self._state = SchedulerState.CHECKING

    # -------------------------------------------------------------------------
    # WORKER
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopping:
            self._stats["turns"] += 1
            self.logic.flush_pending()

            if self._check_flag:
                await self._check_turn()
                if self._stopping:
                    break
                try:
                    message = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    # Let producers run between pulls
                    await asyncio.sleep(0)
                    continue
            else:
                message = await self._queue.get()

            if isinstance(message, Shutdown) or self._stopping:
                self._queue.put_nowait(message)
                break

            await self._dispatch(message)

    async def _check_turn(self) -> None:
        self._stats["fetches"] += 1
        try:
            remaining = await self.logic.fetch_one()
        except Exception:
            self._stats["errors"] += 1
            logger.exception("Source check turn failed")
            return

        if remaining == 0:
            self._stats["passes"] += 1
            self._check_flag = False
            self._state = SchedulerState.SETTLED
            self._arm_timer()
            logger.info(f"Source check complete, next check in {self.check_interval}s")

    async def _dispatch(self, message: Message) -> None:
        self._stats["messages"] += 1
        try:
            if isinstance(message, AddSource):
                if message.source.is_static:
                    await self.logic.add_static_source(message.source)
                elif self.logic.add_source(message.source):
                    self.request_check()
            elif isinstance(message, RemoveSource):
                self.logic.remove_source(message.name)
            elif isinstance(message, CheckSources):
                self.request_check()
            elif isinstance(message, ReceiveValidation):
                self.logic.receive_validation(message.validation)
            elif isinstance(message, LedgerClosed):
                self.logic.ledger_closed(message.ledger_hash)
            elif isinstance(message, Rebuild):
                self.logic.build_chosen(seed=message.seed)
            elif isinstance(message, Barrier):
                if not message.future.done():
                    message.future.set_result(None)
            else:
                logger.warning(f"Unknown message type: {type(message).__name__}")
        except Exception:
            self._stats["errors"] += 1
            logger.exception(f"Error handling {type(message).__name__}")

    # -------------------------------------------------------------------------
    # TIMER
    # -------------------------------------------------------------------------

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._loop is None or self._stopping:
            return
        self._timer = self._loop.call_later(self.check_interval, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        logger.debug("Check timer signaled")
        self.post(CheckSources())

    # -------------------------------------------------------------------------
    # STATS
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "state": self._state.value,
            "check_flag": self._check_flag,
            "queued": self._queue.qsize(),
            "timer_armed": self.timer_armed,
        }
