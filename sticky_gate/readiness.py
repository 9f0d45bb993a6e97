"""
Readiness gating for cold backend instances.

A probe run wakes the instance once, then polls ``GET /`` until the instance
answers with anything below 500 or the deadline passes. Waits between
attempts double from 300ms up to 5s.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from .registry import InstanceHandle

logger = logging.getLogger(__name__)

INITIAL_DELAY_MS = 300
MAX_DELAY_MS = 5000

# some nginx configs inside the backend reject requests without a Host they know
PROBE_URL = "http://container/"
PROBE_HEADERS = {"Host": "localhost", "Connection": "close"}


class ReadinessState(str, Enum):
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"
    TIMED_OUT = "timed_out"


class ProbeResult(str, Enum):
    READY = "ready"
    NOT_READY_STATUS = "not_ready_status"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeOutcome:
    result: ProbeResult
    status_code: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def ready(self) -> bool:
        return self.result is ProbeResult.READY

    def __str__(self) -> str:
        if self.result is ProbeResult.FAILED:
            return f"{type(self.error).__name__}: {self.error}"
        return f"status {self.status_code}"


class ReadinessTimeout(TimeoutError):
    def __init__(
        self,
        instance_name: str,
        timeout_ms: int,
        elapsed_ms: int,
        attempts: int,
        last_outcome: Optional[ProbeOutcome],
    ):
        self.instance_name = instance_name
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        self.attempts = attempts
        self.last_outcome = last_outcome
        message = (
            f"instance {instance_name} not ready within {timeout_ms}ms "
            f"(elapsed {elapsed_ms}ms, {attempts} probes)"
        )
        if last_outcome is not None:
            message += f", last error: {last_outcome}"
        super().__init__(message)


def probe_request() -> httpx.Request:
    return httpx.Request("GET", PROBE_URL, headers=PROBE_HEADERS)


def classify(response: httpx.Response) -> ProbeOutcome:
    # 2xx/3xx/4xx all mean something is listening
    if response.status_code < 500:
        return ProbeOutcome(ProbeResult.READY, status_code=response.status_code)
    return ProbeOutcome(ProbeResult.NOT_READY_STATUS, status_code=response.status_code)


class ReadinessProbe:
    """One warm-up run against one instance. Not reusable."""

    def __init__(
        self,
        instance: InstanceHandle,
        timeout_ms: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.instance = instance
        self.timeout_ms = timeout_ms
        self._sleep = sleep
        self._clock = clock
        self.state = ReadinessState.STARTING
        self.attempts = 0
        self.delays: List[int] = []
        self.last_outcome: Optional[ProbeOutcome] = None

    async def run(self) -> None:
        await self._wake()
        self.state = ReadinessState.PROBING
        started = self._clock()
        delay_ms = INITIAL_DELAY_MS

        while self._elapsed_ms(started) < self.timeout_ms:
            outcome = await self._probe_once()
            self.attempts += 1
            if outcome.ready:
                self.state = ReadinessState.READY
                logger.info(
                    f"✓ {self.instance.name} ready after {self.attempts} probe(s), "
                    f"{self._elapsed_ms(started)}ms"
                )
                return

            self.last_outcome = outcome
            logger.debug(f"{self.instance.name} probe {self.attempts} not ready: {outcome}")
            self.delays.append(delay_ms)
            await self._sleep(delay_ms / 1000.0)
            delay_ms = min(delay_ms * 2, MAX_DELAY_MS)

        self.state = ReadinessState.TIMED_OUT
        exc = ReadinessTimeout(
            instance_name=self.instance.name,
            timeout_ms=self.timeout_ms,
            elapsed_ms=self._elapsed_ms(started),
            attempts=self.attempts,
            last_outcome=self.last_outcome,
        )
        logger.warning(f"⚠ {exc}")
        raise exc

    async def _wake(self) -> None:
        # A failed start is not fatal: the instance may already be running,
        # and the probes decide either way.
        try:
            await self.instance.start()
        except Exception as e:
            logger.warning(f"⚠ Start signal to {self.instance.name} failed, probing anyway: {e}")

    async def _probe_once(self) -> ProbeOutcome:
        try:
            response = await self.instance.forward(probe_request())
        except Exception as e:
            return ProbeOutcome(ProbeResult.FAILED, error=e)
        try:
            return classify(response)
        finally:
            await response.aclose()

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)


async def ensure_ready(
    instance: InstanceHandle,
    timeout_ms: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Wake ``instance`` and wait until it accepts traffic, or raise ReadinessTimeout."""
    await ReadinessProbe(instance, timeout_ms, sleep=sleep, clock=clock).run()


class ReadinessGate:
    """
    Entry point the dispatcher uses for warm-ups.

    With ``dedupe`` off every caller runs its own probe loop. With it on,
    concurrent callers for the same instance name wait on a single shared
    warm-up; the entry is dropped as soon as that warm-up finishes, so later
    requests probe afresh.
    """

    def __init__(
        self,
        dedupe: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dedupe = dedupe
        self._sleep = sleep
        self._clock = clock
        self._pending: Dict[str, "asyncio.Future[None]"] = {}

    async def ensure_ready(self, instance: InstanceHandle, timeout_ms: int) -> None:
        if not self.dedupe:
            await ensure_ready(instance, timeout_ms, sleep=self._sleep, clock=self._clock)
            return

        pending = self._pending.get(instance.name)
        if pending is None:
            pending = asyncio.ensure_future(
                ensure_ready(instance, timeout_ms, sleep=self._sleep, clock=self._clock)
            )
            self._pending[instance.name] = pending
            pending.add_done_callback(self._forget)
        # shield so one cancelled waiter does not cancel the shared warm-up
        await asyncio.shield(pending)

    def _forget(self, future: "asyncio.Future[None]") -> None:
        for name, pending in list(self._pending.items()):
            if pending is future:
                del self._pending[name]

    def in_flight(self) -> int:
        return len(self._pending)
