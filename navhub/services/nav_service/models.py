from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List


@dataclass(frozen=True)
class NavPoint:
    """One NAV quote for a scheme on a calendar date."""
    scheme_code: str
    date: date
    value: float


@dataclass(frozen=True)
class SchemeInfo:
    """Descriptive scheme metadata read from the bulk feed."""
    scheme_code: str
    scheme_name: str = ""
    amc_name: str = ""
    category: str = ""


@dataclass
class UpsertResult:
    """Outcome of a batch upsert."""
    inserted: int = 0
    updated: int = 0
    changed_schemes: set[str] = field(default_factory=set)

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: UpsertResult) -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.changed_schemes |= other.changed_schemes


@dataclass
class ReturnsSnapshot:
    """Point-in-time returns for one scheme; absent periods are simply missing."""
    scheme_code: str
    as_of_date: date | None = None
    latest_nav: float | None = None
    period_returns: Dict[str, float] = field(default_factory=dict)
    cagrs: Dict[str, float] = field(default_factory=dict)
    anomalies: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.period_returns and not self.cagrs


