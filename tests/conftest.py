import asyncio
from typing import Callable, List, Optional, Union

import httpx
import pytest

from sticky_gate.config import Settings

ProbeStep = Union[int, Exception]


class FakeClock:
    """Monotonic clock that only moves when someone sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FixedRandom:
    def __init__(self, value: int):
        self.value = value
        self.stops: List[int] = []

    def randrange(self, stop: int) -> int:
        self.stops.append(stop)
        return min(self.value, stop - 1)


class FakeInstance:
    """
    Scripted backend. Probes (requests aimed at the probe host) consume
    ``probe_script``, one step per probe: an int is a status code, an
    exception is raised. Once the script runs out the last step repeats.
    Everything else goes to ``reply``.
    """

    def __init__(
        self,
        name: str,
        probe_script: Optional[List[ProbeStep]] = None,
        reply: Optional[Callable] = None,
        start_error: Optional[Exception] = None,
    ):
        self.name = name
        self.probe_script = list(probe_script or [200])
        self.reply = reply or (lambda request: httpx.Response(200, text="ok"))
        self.start_error = start_error
        self.start_calls = 0
        self.probes: List[httpx.Request] = []
        self.forwarded: List[httpx.Request] = []

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error

    async def forward(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "container":
            self.probes.append(request)
            step = self.probe_script.pop(0) if len(self.probe_script) > 1 else self.probe_script[0]
            await asyncio.sleep(0)
            if isinstance(step, Exception):
                raise step
            return httpx.Response(step)

        self.forwarded.append(request)
        result = self.reply(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result


class FakeRegistry:
    def __init__(self, factory: Callable[[str], FakeInstance]):
        self.factory = factory
        self.instances = {}
        self.requested: List[str] = []
        self.closed = False

    def get(self, name: str) -> FakeInstance:
        self.requested.append(name)
        if name not in self.instances:
            self.instances[name] = self.factory(name)
        return self.instances[name]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    def _make(**env) -> Settings:
        base = {"INSTANCE_COUNT": "1", "READY_TIMEOUT_MS": "2000"}
        base.update({k: str(v) for k, v in env.items()})
        return Settings(env=base)

    return _make
