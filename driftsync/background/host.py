"""Host scheduler abstraction and an in-process asyncio implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str, dict[str, Any] | None], Awaitable[bool]]

MAX_BACKOFF_SECONDS = 5 * 60 * 60


class BackoffKind(Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class BackoffPolicy:
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    delay_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.kind == BackoffKind.EXPONENTIAL:
            delay = self.delay_seconds * (2 ** max(attempt - 1, 0))
        else:
            delay = self.delay_seconds * max(attempt, 1)
        return min(delay, MAX_BACKOFF_SECONDS)


@dataclass(frozen=True)
class Constraints:
    network_connected: bool = True
    requires_battery_not_low: bool = False
    requires_charging: bool = False


class ExistingWorkPolicy(Enum):
    KEEP = "keep"  # leave a pending registration alone
    REPLACE = "replace"  # cancel the pending one and start over


@dataclass(frozen=True)
class TaskRequest:
    """A periodic or one-off registration with the host."""

    unique_name: str
    task_name: str
    constraints: Constraints
    backoff: BackoffPolicy = BackoffPolicy()
    frequency_seconds: float | None = None  # None for one-off tasks
    initial_delay_seconds: float = 0.0
    existing_policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP
    input_data: dict[str, Any] | None = None

    @property
    def is_periodic(self) -> bool:
        return self.frequency_seconds is not None


class TaskHost(ABC):
    """Background task API of the host platform."""

    @abstractmethod
    async def initialize(self, dispatcher: Dispatcher) -> None:
        """Register the single dispatch entry point."""
        pass

    @abstractmethod
    async def register_periodic(self, request: TaskRequest) -> None:
        pass

    @abstractmethod
    async def register_one_off(self, request: TaskRequest) -> None:
        pass

    @abstractmethod
    async def cancel_by_unique_name(self, unique_name: str) -> None:
        pass

    @abstractmethod
    async def cancel_all(self) -> None:
        pass

    async def wait_idle(self) -> None:
        """Wait for dispatches already running. Hosts that cannot tell return at once."""
        return None


class AsyncioTaskHost(TaskHost):
    """Runs registered tasks as asyncio tasks inside this process.

    Constraints are checked through injected predicates before each run.
    Cancelling a registration stops future runs only: a dispatch already
    in progress is allowed to finish.
    """

    def __init__(
        self,
        is_connected: Callable[[], bool] = lambda: True,
        is_battery_low: Callable[[], bool] = lambda: False,
        is_charging: Callable[[], bool] = lambda: True,
        constraint_poll_seconds: float = 60.0,
        max_one_off_attempts: int = 5,
    ):
        self._is_connected = is_connected
        self._is_battery_low = is_battery_low
        self._is_charging = is_charging
        self.constraint_poll_seconds = constraint_poll_seconds
        self.max_one_off_attempts = max_one_off_attempts
        self._dispatcher: Dispatcher | None = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._in_flight: set[asyncio.Future] = set()

    @property
    def registered(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def initialize(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher
        logger.debug("Asyncio task host initialized")

    def constraints_met(self, constraints: Constraints) -> bool:
        if constraints.network_connected and not self._is_connected():
            return False
        if constraints.requires_battery_not_low and self._is_battery_low():
            return False
        if constraints.requires_charging and not self._is_charging():
            return False
        return True

    def _register(self, request: TaskRequest, runner: Awaitable[None]) -> None:
        existing = self._tasks.get(request.unique_name)
        if existing is not None and not existing.done():
            if request.existing_policy == ExistingWorkPolicy.KEEP:
                runner.close()
                logger.debug(f"Task {request.unique_name} already registered, keeping it")
                return
            existing.cancel()
        self._tasks[request.unique_name] = asyncio.create_task(
            runner, name=f"driftsync:{request.unique_name}"
        )

    async def register_periodic(self, request: TaskRequest) -> None:
        self._register(request, self._run_periodic(request))

    async def register_one_off(self, request: TaskRequest) -> None:
        self._register(request, self._run_one_off(request))

    async def _wait_for_constraints(self, request: TaskRequest) -> None:
        while not self.constraints_met(request.constraints):
            logger.debug(f"Constraints not met for {request.unique_name}, waiting")
            await asyncio.sleep(self.constraint_poll_seconds)

    async def _dispatch(self, request: TaskRequest) -> bool:
        if self._dispatcher is None:
            logger.error(f"No dispatcher registered, cannot run {request.task_name}")
            return False
        run = asyncio.ensure_future(self._dispatcher(request.task_name, request.input_data))
        self._in_flight.add(run)
        run.add_done_callback(self._in_flight.discard)
        try:
            # Shielded so a cancelled registration does not interrupt a running sync
            return bool(await asyncio.shield(run))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Task {request.task_name} raised: {e}", exc_info=True)
            return False

    async def _run_one_off(self, request: TaskRequest) -> None:
        await asyncio.sleep(request.initial_delay_seconds)
        for attempt in range(1, self.max_one_off_attempts + 1):
            await self._wait_for_constraints(request)
            if await self._dispatch(request):
                return
            if attempt < self.max_one_off_attempts:
                delay = request.backoff.delay_for(attempt)
                logger.info(f"Task {request.unique_name} failed, retrying in {delay:.0f}s")
                await asyncio.sleep(delay)
        logger.warning(
            f"Task {request.unique_name} gave up after {self.max_one_off_attempts} attempts"
        )

    async def _run_periodic(self, request: TaskRequest) -> None:
        await asyncio.sleep(request.initial_delay_seconds)
        failures = 0
        while True:
            await self._wait_for_constraints(request)
            if await self._dispatch(request):
                failures = 0
                await asyncio.sleep(request.frequency_seconds)
            else:
                failures += 1
                delay = min(request.backoff.delay_for(failures), request.frequency_seconds)
                logger.info(f"Task {request.unique_name} failed, retrying in {delay:.0f}s")
                await asyncio.sleep(delay)

    async def cancel_by_unique_name(self, unique_name: str) -> None:
        task = self._tasks.pop(unique_name, None)
        if task is not None:
            task.cancel()

    async def cancel_all(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

    async def wait_idle(self) -> None:
        """Wait for in-flight dispatches to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
