"""Sticky-session reverse proxy with cold-start readiness gating."""
from .cookies import CookieDirective, parse_cookie, render_cookie
from .sharding import STICKY_COOKIE, ShardAssignment, select_shard
from .readiness import ReadinessGate, ReadinessTimeout, ensure_ready
from .dispatcher import ProxyDispatcher

__all__ = [
    "CookieDirective",
    "parse_cookie",
    "render_cookie",
    "STICKY_COOKIE",
    "ShardAssignment",
    "select_shard",
    "ReadinessGate",
    "ReadinessTimeout",
    "ensure_ready",
    "ProxyDispatcher",
]
