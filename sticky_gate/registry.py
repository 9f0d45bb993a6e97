"""
Instance registry: resolves an instance name to something that can be woken
and can serve HTTP.

Two flavours are provided. ``StaticRegistry`` spreads instance names over a
fixed list of already-running backends. ``ProcessRegistry`` runs one local
backend process per shard, spawned on first use and put to sleep again once it
has been idle for a while.
"""
import asyncio
import hashlib
import logging
import os
import shlex
import subprocess
import sys
import time
from typing import Callable, Dict, List, Optional, Protocol

import httpx

from .sharding import INSTANCE_PREFIX

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    pass


class InstanceHandle(Protocol):
    name: str

    async def start(self) -> None:
        ...

    async def forward(self, request: httpx.Request) -> httpx.Response:
        ...


class Registry(Protocol):
    def get(self, name: str) -> InstanceHandle:
        ...

    async def aclose(self) -> None:
        ...


class HttpInstance:
    """A backend reachable at ``base_url`` that is assumed to be running."""

    def __init__(self, name: str, base_url: str, client: httpx.AsyncClient):
        self.name = name
        self.base_url = httpx.URL(base_url)
        self.client = client
        self.last_used = time.monotonic()
        self.active_streams = 0

    async def start(self) -> None:
        return None

    def upstream_request(self, request: httpx.Request) -> httpx.Request:
        """Same request, aimed at this instance. Path, query, headers and body stay as they are."""
        url = request.url.copy_with(
            scheme=self.base_url.scheme,
            host=self.base_url.host,
            port=self.base_url.port,
        )
        headers = httpx.Headers(request.headers)
        if "host" not in headers:
            headers["Host"] = request.url.netloc.decode("ascii")
        return httpx.Request(
            request.method,
            url,
            headers=headers,
            stream=request.stream,
            extensions=request.extensions,
        )

    async def forward(self, request: httpx.Request) -> httpx.Response:
        self.touch()
        response = await self.client.send(self.upstream_request(request), stream=True)
        # upstream cookies belong to the end client, not to the proxy's jar
        self.client.cookies.clear()
        self.active_streams += 1
        response.stream = TrackedStream(response.stream, self)
        return response

    def touch(self) -> None:
        self.last_used = time.monotonic()

    @property
    def busy(self) -> bool:
        return self.active_streams > 0


class TrackedStream(httpx.AsyncByteStream):
    """Response body that keeps its instance marked as in use until closed."""

    def __init__(self, inner: httpx.AsyncByteStream, instance: HttpInstance):
        self._inner = inner
        self._instance = instance
        self._closed = False

    async def __aiter__(self):
        async for chunk in self._inner:
            self._instance.touch()
            yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._instance.active_streams -= 1
        self._instance.touch()
        await self._inner.aclose()


class ProcessInstance(HttpInstance):
    """An HttpInstance backed by a local process that ``start()`` spawns on demand."""

    def __init__(self, name: str, host: str, port: int, command: List[str], client: httpx.AsyncClient):
        super().__init__(name, f"http://{host}:{port}", client)
        self.port = port
        self.command = command
        self.process: Optional[subprocess.Popen] = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    async def start(self) -> None:
        if self.running:
            return
        env = dict(os.environ, INSTANCE_NAME=self.name, PORT=str(self.port))
        self.process = subprocess.Popen(
            [arg.format(port=self.port, name=self.name) for arg in self.command],
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        self.last_used = time.monotonic()
        logger.info(f"[registry] Started {self.name} on port {self.port} (pid {self.process.pid})")

    def stop(self) -> None:
        if not self.running:
            return
        self.process.terminate()
        logger.info(f"[registry] Stopped {self.name} on port {self.port}")


def default_backend_command() -> List[str]:
    return [sys.executable, "-m", "sticky_gate.backend", "{port}"]


def shard_index(name: str) -> int:
    """Numeric suffix of ``client-<n>`` names, a stable md5 number for anything else."""
    suffix = name.rsplit("-", 1)[-1]
    if suffix.isdigit():
        return int(suffix)
    return int(hashlib.md5(name.encode()).hexdigest(), 16)


class StaticRegistry:
    def __init__(self, urls: List[str], client: httpx.AsyncClient):
        if not urls:
            raise RegistryError("StaticRegistry needs at least one backend URL")
        self.urls = list(urls)
        self.client = client
        self._instances: Dict[str, HttpInstance] = {}

    def pick(self, name: str) -> str:
        """Backend URL serving ``name``; stable for the life of the URL list."""
        return self.urls[shard_index(name) % len(self.urls)]

    def get(self, name: str) -> HttpInstance:
        instance = self._instances.get(name)
        if instance is None:
            instance = HttpInstance(name, self.pick(name), self.client)
            self._instances[name] = instance
        return instance

    async def aclose(self) -> None:
        self._instances.clear()


class ProcessRegistry:
    """
    A fixed pool of ``max_instances`` slots, ``client-<i>`` living on
    ``base_port + i``. Names that are not a pool slot (anything a client
    made up in its cookie) are folded onto one of the first ``shard_count()``
    slots, so they can never crowd out a real shard.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        host: str = "127.0.0.1",
        base_port: int = 8081,
        command: Optional[List[str]] = None,
        max_instances: int = 16,
        sleep_after: float = 300.0,
        shard_count: Optional[Callable[[], int]] = None,
    ):
        self.client = client
        self.host = host
        self.base_port = base_port
        self.command = command or default_backend_command()
        self.max_instances = max(1, max_instances)
        self.sleep_after = sleep_after
        self.shard_count = shard_count or (lambda: self.max_instances)
        self._instances: Dict[int, ProcessInstance] = {}

    @classmethod
    def from_command_string(cls, client: httpx.AsyncClient, command: Optional[str], **kwargs) -> "ProcessRegistry":
        return cls(client, command=shlex.split(command) if command else None, **kwargs)

    def slot_for(self, name: str) -> int:
        if name.startswith(INSTANCE_PREFIX):
            suffix = name[len(INSTANCE_PREFIX):]
            if suffix.isdigit() and int(suffix) < self.max_instances:
                return int(suffix)
        pool = max(1, min(self.shard_count(), self.max_instances))
        return shard_index(name) % pool

    def get(self, name: str) -> ProcessInstance:
        slot = self.slot_for(name)
        instance = self._instances.get(slot)
        if instance is None:
            instance = ProcessInstance(
                f"{INSTANCE_PREFIX}{slot}", self.host, self.base_port + slot, self.command, self.client
            )
            self._instances[slot] = instance
        return instance

    def reap_idle(self, now: Optional[float] = None) -> List[str]:
        """Stop instances idle for longer than ``sleep_after``; returns their names."""
        now = time.monotonic() if now is None else now
        slept = []
        for instance in self._instances.values():
            if instance.busy or not instance.running:
                continue
            if now - instance.last_used > self.sleep_after:
                instance.stop()
                slept.append(instance.name)
        return slept

    async def reap_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            for name in self.reap_idle():
                logger.info(f"[registry] {name} went to sleep after {self.sleep_after}s idle")

    async def aclose(self) -> None:
        for instance in self._instances.values():
            instance.stop()
        self._instances.clear()
