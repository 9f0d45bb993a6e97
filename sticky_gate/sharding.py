"""
Sticky shard selection.

A client that already carries the stickiness cookie keeps its shard for good;
everyone else is dropped into a random shard and told to remember it.
"""
import logging
import random
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .cookies import CookieDirective, parse_cookie

logger = logging.getLogger(__name__)

STICKY_COOKIE = "SZZD_CONTAINER"
STICKY_MAX_AGE_SECONDS = 86400
INSTANCE_PREFIX = "client-"


class RandomSource(Protocol):
    def randrange(self, stop: int) -> int:
        ...


@dataclass(frozen=True)
class ShardAssignment:
    shard_id: str
    is_new: bool
    # raw cookie value, i.e. the shard index as the client stores it
    token: str

    def cookie(self) -> Optional[CookieDirective]:
        """Cookie to hand the client, only for first-contact assignments."""
        if not self.is_new:
            return None
        return CookieDirective(
            name=STICKY_COOKIE,
            value=self.token,
            path="/",
            max_age_seconds=STICKY_MAX_AGE_SECONDS,
            http_only=True,
            same_site="Lax",
        )


def request_cookies(request: httpx.Request) -> dict:
    # several Cookie headers are equivalent to one joined with "; "
    return parse_cookie("; ".join(request.headers.get_list("cookie")))


def select_shard(
    request: httpx.Request,
    shard_count: int,
    rng: Optional[RandomSource] = None,
) -> ShardAssignment:
    token = request_cookies(request).get(STICKY_COOKIE)
    if token:
        return ShardAssignment(shard_id=INSTANCE_PREFIX + token, is_new=False, token=token)

    n = max(1, shard_count)
    token = str((rng or random).randrange(n))
    logger.debug(f"Assigned new client to shard {token} of {n}")
    return ShardAssignment(shard_id=INSTANCE_PREFIX + token, is_new=True, token=token)
