"""Scope string handling (RFC 6749 §3.3).

A scope parameter is a space-delimited list of case-sensitive tokens.
Order carries no meaning to the protocol but we keep the caller's order
so the ``scope`` echoed in the token response reads the way it was asked.
"""

from __future__ import annotations

from collections.abc import Iterable


def parse_scope(raw: str | None) -> tuple[str, ...]:
    """Split a scope parameter into unique tokens, first occurrence wins."""
    if not raw:
        return ()
    seen: dict[str, None] = {}
    for token in raw.split():
        seen.setdefault(token, None)
    return tuple(seen)


def format_scope(scope: Iterable[str]) -> str:
    return " ".join(scope)


def disallowed_scopes(requested: Iterable[str], allowed: Iterable[str]) -> list[str]:
    """Return the requested tokens that are not in ``allowed``, in request order."""
    allowed_set = set(allowed)
    return [s for s in requested if s not in allowed_set]
