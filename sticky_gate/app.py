"""
ASGI front end: every method and every path goes through the dispatcher.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from .config import Settings, settings as default_settings
from .dispatcher import ProxyDispatcher
from .readiness import ReadinessGate
from .registry import ProcessRegistry, Registry, StaticRegistry
from .sharding import RandomSource

logger = logging.getLogger(__name__)

# hop-by-hop headers describe one connection; the ASGI server frames its own
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}


class InboundBody(httpx.AsyncByteStream):
    def __init__(self, request: Request):
        self._request = request

    async def __aiter__(self):
        async for chunk in self._request.stream():
            if chunk:
                yield chunk


def to_upstream(request: Request) -> httpx.Request:
    """Inbound ASGI request as an httpx request, raw path and headers intact."""
    raw_path = request.scope.get("raw_path") or request.url.path.encode("ascii")
    raw_path = raw_path.split(b"?", 1)[0]
    query = request.scope.get("query_string", b"")
    if query:
        raw_path += b"?" + query
    url = httpx.URL(str(request.url)).copy_with(raw_path=raw_path)
    return httpx.Request(
        request.method,
        url,
        headers=request.headers.raw,
        stream=InboundBody(request),
    )


def to_downstream(response: httpx.Response) -> Response:
    raw_headers = [
        (key.lower(), value)
        for key, value in response.headers.raw
        if key.lower().decode("latin-1") not in HOP_BY_HOP
    ]
    if response.is_stream_consumed:
        # already buffered in memory (locally built responses)
        downstream = Response(content=response.content, status_code=response.status_code)
    else:
        downstream = StreamingResponse(
            response.aiter_raw(),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )
    downstream.raw_headers = raw_headers
    return downstream


def build_registry(settings: Settings, client: httpx.AsyncClient) -> Registry:
    if settings.BACKEND_URLS:
        logger.info(f"Using static backends: {settings.BACKEND_URLS}")
        return StaticRegistry(settings.BACKEND_URLS, client)
    logger.info(
        f"Spawning local backends from port {settings.BACKEND_BASE_PORT} "
        f"(max {settings.MAX_INSTANCES}, sleep after {settings.SLEEP_AFTER_SECONDS}s idle)"
    )
    return ProcessRegistry.from_command_string(
        client,
        settings.BACKEND_COMMAND,
        host=settings.BACKEND_HOST,
        base_port=settings.BACKEND_BASE_PORT,
        max_instances=settings.MAX_INSTANCES,
        sleep_after=settings.SLEEP_AFTER_SECONDS,
        shard_count=lambda: settings.instance_count,
    )


def create_app(
    registry: Optional[Registry] = None,
    settings: Optional[Settings] = None,
    rng: Optional[RandomSource] = None,
    readiness: Optional[ReadinessGate] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = httpx.AsyncClient(timeout=settings.UPSTREAM_TIMEOUT)
        active_registry = registry if registry is not None else build_registry(settings, client)
        app.state.dispatcher = ProxyDispatcher(
            active_registry, settings=settings, readiness=readiness, rng=rng
        )

        reaper = None
        if isinstance(active_registry, ProcessRegistry):
            reaper = asyncio.create_task(active_registry.reap_loop(settings.SLEEP_CHECK_INTERVAL))

        logger.info(f"🚀 Sticky proxy ready, {settings.instance_count} shard(s)")
        yield

        logger.info("🛑 Shutting down sticky proxy...")
        if reaper is not None:
            reaper.cancel()
        await active_registry.aclose()
        await client.aclose()

    app = FastAPI(
        title="Sticky Proxy",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    async def proxy(request: Request) -> Response:
        dispatcher: ProxyDispatcher = request.app.state.dispatcher
        response = await dispatcher.handle(to_upstream(request))
        return to_downstream(response)

    # methods=None: WebDAV, PURGE and any other verb reach the backend too
    app.add_route("/{path:path}", proxy, methods=None, include_in_schema=False)

    return app
