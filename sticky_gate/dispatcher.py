"""
Request handling: pick the sticky shard, make sure its instance is awake,
forward the request untouched and hand out the stickiness cookie on first
contact.
"""
import logging
from typing import Optional

import httpx

from .config import Settings, settings as default_settings
from .cookies import render_cookie
from .readiness import ReadinessGate, ReadinessTimeout
from .registry import Registry
from .sharding import RandomSource, select_shard

logger = logging.getLogger(__name__)

WARMING_UP_PREFIX = "Service warming up: "


def warming_up_response(exc: ReadinessTimeout) -> httpx.Response:
    return httpx.Response(
        503,
        headers={"Cache-Control": "no-store", "X-Container-State": "starting"},
        text=WARMING_UP_PREFIX + str(exc),
    )


def with_set_cookie(response: httpx.Response, cookie: str) -> httpx.Response:
    """Copy of ``response`` with one more Set-Cookie; status, headers and body stream untouched."""
    headers = list(response.headers.multi_items())
    headers.append(("set-cookie", cookie))
    return httpx.Response(
        response.status_code,
        headers=headers,
        stream=response.stream,
        extensions=response.extensions,
    )


class ProxyDispatcher:
    def __init__(
        self,
        registry: Registry,
        settings: Optional[Settings] = None,
        readiness: Optional[ReadinessGate] = None,
        rng: Optional[RandomSource] = None,
    ):
        self.registry = registry
        self.settings = settings or default_settings
        self.readiness = readiness or ReadinessGate(dedupe=self.settings.DEDUPE_WARMUPS)
        self.rng = rng

    async def handle(self, request: httpx.Request) -> httpx.Response:
        assignment = select_shard(request, self.settings.instance_count, self.rng)
        instance = self.registry.get(assignment.shard_id)

        try:
            await self.readiness.ensure_ready(instance, self.settings.READY_TIMEOUT_MS)
        except ReadinessTimeout as exc:
            return warming_up_response(exc)

        # no retry here: a failing forward is the caller's problem
        response = await instance.forward(request)

        cookie = assignment.cookie()
        if cookie is not None:
            response = with_set_cookie(response, render_cookie(cookie))
        return response
