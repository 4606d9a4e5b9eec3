"""
Scheme registry adapters: where a sync run gets its universe of scheme codes.
"""
from __future__ import annotations

from typing import Iterable, List, Protocol

from .store import NavStore


class SchemeRegistry(Protocol):
    """Read-only source of known scheme codes."""

    async def get_scheme_codes(self) -> List[str]:
        ...


class StaticSchemeRegistry:
    """A caller-supplied set of scheme codes."""

    def __init__(self, scheme_codes: Iterable[str]) -> None:
        self._scheme_codes = sorted({str(code) for code in scheme_codes})

    async def get_scheme_codes(self) -> List[str]:
        return list(self._scheme_codes)


class DatabaseSchemeRegistry:
    """Scheme codes registered in the funds table."""

    def __init__(self, store: NavStore) -> None:
        self._store = store

    async def get_scheme_codes(self) -> List[str]:
        return await self._store.list_scheme_codes()
