import httpx
import pytest

from sticky_gate.dispatcher import ProxyDispatcher
from sticky_gate.readiness import ReadinessGate

from .conftest import FakeInstance, FakeRegistry, FixedRandom

STICKY_SET_COOKIE = "SZZD_CONTAINER={}; Path=/; Max-Age=86400; HttpOnly; SameSite=Lax"


def backend_reply(request):
    return httpx.Response(
        201,
        headers=[("X-Backend", "yes"), ("Set-Cookie", "theme=dark"), ("Content-Type", "text/plain")],
        content=b"created by backend",
    )


@pytest.fixture
def dispatcher_for(clock, make_settings):
    def _build(factory, rng=None, **env):
        registry = FakeRegistry(factory)
        dispatcher = ProxyDispatcher(
            registry,
            settings=make_settings(**env),
            readiness=ReadinessGate(sleep=clock.sleep, clock=clock),
            rng=rng,
        )
        return dispatcher, registry

    return _build


async def test_first_contact_gets_sticky_cookie(dispatcher_for):
    dispatcher, registry = dispatcher_for(
        lambda name: FakeInstance(name, reply=backend_reply),
        rng=FixedRandom(3),
        INSTANCE_COUNT=4,
    )

    response = await dispatcher.handle(httpx.Request("GET", "http://proxy.local/page"))

    assert registry.requested == ["client-3"]
    assert response.status_code == 201
    assert response.headers["X-Backend"] == "yes"
    assert response.headers.get_list("set-cookie") == ["theme=dark", STICKY_SET_COOKIE.format(3)]
    assert await response.aread() == b"created by backend"


async def test_returning_client_gets_no_cookie(dispatcher_for):
    dispatcher, registry = dispatcher_for(
        lambda name: FakeInstance(name, reply=lambda r: httpx.Response(404, text="nope")),
        INSTANCE_COUNT=1,
    )

    request = httpx.Request("GET", "http://proxy.local/missing", headers={"Cookie": "SZZD_CONTAINER=2"})
    response = await dispatcher.handle(request)

    assert registry.requested == ["client-2"]
    assert response.status_code == 404
    assert "set-cookie" not in response.headers
    assert await response.aread() == b"nope"


async def test_original_request_is_forwarded_unmodified(dispatcher_for):
    dispatcher, registry = dispatcher_for(lambda name: FakeInstance(name))

    request = httpx.Request(
        "POST",
        "http://proxy.local/api/items?x=1",
        headers={"X-Trace": "abc", "Cookie": "SZZD_CONTAINER=0"},
        content=b"{}",
    )
    await dispatcher.handle(request)

    assert registry.instances["client-0"].forwarded == [request]


async def test_shard_count_is_read_per_request(dispatcher_for):
    rng = FixedRandom(5)
    dispatcher, registry = dispatcher_for(lambda name: FakeInstance(name), rng=rng, INSTANCE_COUNT=2)

    await dispatcher.handle(httpx.Request("GET", "http://proxy.local/"))
    dispatcher.settings.INSTANCE_COUNT = "8"
    await dispatcher.handle(httpx.Request("GET", "http://proxy.local/"))

    assert rng.stops == [2, 8]
    assert registry.requested == ["client-1", "client-5"]


async def test_readiness_timeout_short_circuits(dispatcher_for):
    dispatcher, registry = dispatcher_for(
        lambda name: FakeInstance(name, probe_script=[502]),
        READY_TIMEOUT_MS=1500,
    )

    response = await dispatcher.handle(httpx.Request("GET", "http://proxy.local/"))

    assert response.status_code == 503
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Container-State"] == "starting"
    assert response.text.startswith("Service warming up: ")
    assert "status 502" in response.text
    assert "set-cookie" not in response.headers
    assert registry.instances["client-0"].forwarded == []


async def test_forward_errors_propagate(dispatcher_for):
    def broken(request):
        raise httpx.ReadError("backend went away")

    dispatcher, _ = dispatcher_for(lambda name: FakeInstance(name, reply=broken))

    with pytest.raises(httpx.ReadError):
        await dispatcher.handle(httpx.Request("GET", "http://proxy.local/"))
