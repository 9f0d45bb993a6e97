"""
Cookie header parsing and Set-Cookie rendering.

Parsing follows the browser-side conventions the stickiness cookie is written
with: pairs separated by ``;`` plus optional whitespace, name and value split
on the first ``=``, both percent-decoded. Malformed pairs are skipped.
"""
import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote, unquote

_PAIR_SEPARATOR = re.compile(r";\s*")

# characters encodeURIComponent leaves alone besides alphanumerics and "_.-~"
_VALUE_SAFE = "!*'()"


@dataclass(frozen=True)
class CookieDirective:
    name: str
    value: str
    path: str = "/"
    max_age_seconds: int = 86400
    http_only: bool = True
    same_site: str = "Lax"


def parse_cookie(header: Optional[str]) -> Dict[str, str]:
    cookies: Dict[str, str] = {}
    if not header:
        return cookies

    for pair in _PAIR_SEPARATOR.split(header):
        idx = pair.find("=")
        if idx <= 0:
            continue
        cookies[unquote(pair[:idx])] = unquote(pair[idx + 1:])
    return cookies


def render_cookie(directive: CookieDirective) -> str:
    parts = [
        f"{directive.name}={quote(directive.value, safe=_VALUE_SAFE)}",
        f"Path={directive.path}",
        f"Max-Age={directive.max_age_seconds}",
    ]
    if directive.http_only:
        parts.append("HttpOnly")
    if directive.same_site:
        parts.append(f"SameSite={directive.same_site}")
    return "; ".join(parts)
