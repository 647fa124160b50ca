"""Origin allowlist matching with single-level wildcard subdomains."""

from __future__ import annotations

import re
from collections.abc import Iterable

# Last two dot-separated labels of a host, e.g. ``example.com``.
_ROOT_DOMAIN_RE = re.compile(r"[^.]+\.[^.]+$")

_WILDCARD_PREFIX = "*."


class OriginMatcher:
    """Membership test for request origins against an allowlist.

    Entries are either exact hosts (``app.example.com``) or wildcard
    patterns (``*.example.com``). A wildcard entry admits its root domain
    as an exact match and any origin whose last two labels equal that
    root. Only the trailing ``label.label`` is compared, so
    ``*.a.example.com`` behaves like ``*.example.com`` for subdomains.

    Callers normalize origins (scheme stripping, lower-casing) before
    calling ``match()``.
    """

    def __init__(self, allowlist: Iterable[str] | None = None) -> None:
        self.exact: set[str] = set()
        self.wildcards: set[str] = set()
        for origin in allowlist or ():
            if _WILDCARD_PREFIX in origin:
                root = origin[origin.index(_WILDCARD_PREFIX) + len(_WILDCARD_PREFIX):]
                self.wildcards.add(root)
                self.exact.add(origin.replace(_WILDCARD_PREFIX, "", 1))
            else:
                self.exact.add(origin)

    def match(self, origin: str | None) -> bool:
        """Return True if ``origin`` is allowlisted. Empty/None never matches."""
        if not origin:
            return False
        if origin in self.exact:
            return True
        domain = _ROOT_DOMAIN_RE.search(origin)
        return domain is not None and domain.group(0) in self.wildcards
