"""
Time-series store for NAV history, the latest-NAV projection and returns snapshots.

All writes are single `INSERT ... ON CONFLICT DO UPDATE` statements keyed by
the natural key, never read-then-write, so concurrent callers interleave
safely without an application-level lock.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Iterable, List, Optional
import functools

from sqlalchemy import select, or_, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from navhub.db.database import async_session
from navhub.db.models import NavHistory, Fund, FundReturns, RETURN_PERIOD_KEYS, CAGR_PERIOD_KEYS

from .core import bg_logger, PersistenceError, FatalSyncError
from .models import NavPoint, SchemeInfo, UpsertResult, ReturnsSnapshot

# Dialect-specific insert constructs supporting ON CONFLICT
_DIALECT_INSERTS: dict[str, Callable] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _to_point(row: NavHistory) -> NavPoint:
    return NavPoint(scheme_code=row.scheme_code, date=row.nav_date, value=row.nav_value)


def _read_errors_as_persistence(func):
    """Surface database failures on reads as PersistenceError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


class NavStore:
    """Persisted NAV history plus derived per-scheme projections."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session

    def _insert_for(self, session: AsyncSession) -> Callable:
        dialect = session.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect]
        except KeyError:
            raise PersistenceError(f"Unsupported database dialect for upserts: {dialect}")

    async def ping(self) -> None:
        """Fail with FatalSyncError when the database cannot be reached."""
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise FatalSyncError(f"NAV store unreachable: {e}") from e

    # --- NAV history -----------------------------------------------------

    async def upsert_many(self, points: Iterable[NavPoint]) -> UpsertResult:
        """
        Insert or correct NAV points in one unit of work.

        Re-submitting an identical point is filtered by the conflict clause
        and counts as neither inserted nor updated. The latest-NAV projection
        of every touched scheme is advanced in the same transaction. Any
        failure rolls the whole batch back and raises PersistenceError.
        """
        result = UpsertResult()
        newest: dict[str, NavPoint] = {}
        # Rows are always written, and locked, in (scheme_code, date) order
        ordered = sorted(points, key=lambda p: (p.scheme_code, p.date))

        try:
            async with self._session_factory() as session, session.begin():
                insert = self._insert_for(session)
                for point in ordered:
                    now = datetime.utcnow()
                    stmt = insert(NavHistory).values(
                        scheme_code=point.scheme_code,
                        nav_date=point.date,
                        nav_value=point.value,
                        revision=0,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["scheme_code", "nav_date"],
                        set_={
                            "nav_value": stmt.excluded.nav_value,
                            "revision": NavHistory.revision + 1,
                            "updated_at": now,
                        },
                        where=NavHistory.nav_value != stmt.excluded.nav_value,
                    ).returning(NavHistory.revision)

                    revision = (await session.execute(stmt)).scalar_one_or_none()
                    if revision is None:
                        continue
                    if revision == 0:
                        result.inserted += 1
                    else:
                        result.updated += 1
                    result.changed_schemes.add(point.scheme_code)

                    current = newest.get(point.scheme_code)
                    if current is None or point.date >= current.date:
                        newest[point.scheme_code] = point

                for scheme_code in sorted(newest):
                    point = newest[scheme_code]
                    await self.update_latest_projection(point, session=session)
        except PersistenceError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Batch upsert rolled back: {e}") from e

        if result.written:
            bg_logger.debug(
                f"Upserted NAV points: inserted={result.inserted}, updated={result.updated}, "
                f"schemes={len(result.changed_schemes)}"
            )
        return result

    async def update_latest_projection(self, point: NavPoint, session: AsyncSession | None = None) -> None:
        """
        Advance funds.latest_nav/latest_nav_date to point unless a later date is already recorded.

        A same-date write replaces the value so corrections of the latest
        quote propagate; an older date is ignored.
        """
        if session is None:
            async with self._session_factory() as own_session, own_session.begin():
                await self.update_latest_projection(point, session=own_session)
            return

        insert = self._insert_for(session)
        now = datetime.utcnow()
        stmt = insert(Fund).values(
            scheme_code=point.scheme_code,
            latest_nav=point.value,
            latest_nav_date=point.date,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["scheme_code"],
            set_={
                "latest_nav": stmt.excluded.latest_nav,
                "latest_nav_date": stmt.excluded.latest_nav_date,
                "updated_at": now,
            },
            where=or_(
                Fund.latest_nav_date.is_(None),
                Fund.latest_nav_date <= stmt.excluded.latest_nav_date,
            ),
        )
        await session.execute(stmt)

    @_read_errors_as_persistence
    async def latest_before(self, scheme_code: str, on_date: date) -> Optional[NavPoint]:
        """Most recent NAV point dated on or before on_date."""
        async with self._session_factory() as session:
            stmt = (
                select(NavHistory)
                .where(NavHistory.scheme_code == scheme_code, NavHistory.nav_date <= on_date)
                .order_by(NavHistory.nav_date.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_point(row) if row else None

    @_read_errors_as_persistence
    async def range_descending(self, scheme_code: str, limit: int) -> List[NavPoint]:
        """Up to limit most recent NAV points, newest first."""
        async with self._session_factory() as session:
            stmt = (
                select(NavHistory)
                .where(NavHistory.scheme_code == scheme_code)
                .order_by(NavHistory.nav_date.desc())
                .limit(limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_point(r) for r in rows]

    @_read_errors_as_persistence
    async def earliest(self, scheme_code: str) -> Optional[NavPoint]:
        """First NAV point ever recorded for the scheme."""
        async with self._session_factory() as session:
            stmt = (
                select(NavHistory)
                .where(NavHistory.scheme_code == scheme_code)
                .order_by(NavHistory.nav_date.asc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_point(row) if row else None

    @_read_errors_as_persistence
    async def get_latest_nav(self, scheme_code: str) -> Optional[NavPoint]:
        """The latest-NAV projection for a scheme."""
        async with self._session_factory() as session:
            fund = await session.get(Fund, scheme_code)
            if fund is None or fund.latest_nav_date is None:
                return None
            return NavPoint(scheme_code=fund.scheme_code, date=fund.latest_nav_date, value=fund.latest_nav)

    # --- Scheme metadata -------------------------------------------------

    async def upsert_schemes(self, schemes: Iterable[SchemeInfo]) -> int:
        """Insert or refresh descriptive metadata; never touches the latest-NAV columns."""
        count = 0
        try:
            async with self._session_factory() as session, session.begin():
                insert = self._insert_for(session)
                for scheme in schemes:
                    now = datetime.utcnow()
                    values = {
                        "scheme_name": scheme.scheme_name or None,
                        "amc_name": scheme.amc_name or None,
                        "category": scheme.category or None,
                        "updated_at": now,
                    }
                    stmt = insert(Fund).values(scheme_code=scheme.scheme_code, **values)
                    stmt = stmt.on_conflict_do_update(index_elements=["scheme_code"], set_=values)
                    await session.execute(stmt)
                    count += 1
        except PersistenceError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Scheme metadata upsert rolled back: {e}") from e
        return count

    @_read_errors_as_persistence
    async def list_scheme_codes(self) -> List[str]:
        async with self._session_factory() as session:
            stmt = select(Fund.scheme_code).order_by(Fund.scheme_code)
            return list((await session.execute(stmt)).scalars().all())

    # --- Returns snapshots -----------------------------------------------

    async def save_returns(self, snapshot: ReturnsSnapshot) -> None:
        """Replace the stored snapshot for the scheme, clearing periods now absent."""
        values = {
            "as_of_date": snapshot.as_of_date,
            "latest_nav": snapshot.latest_nav,
            "data_quality_issues": len(snapshot.anomalies),
            "calculated_at": datetime.utcnow(),
        }
        for key in RETURN_PERIOD_KEYS:
            values[f"return_{key}"] = snapshot.period_returns.get(key)
        for key in CAGR_PERIOD_KEYS:
            values[f"cagr_{key}"] = snapshot.cagrs.get(key)

        try:
            async with self._session_factory() as session, session.begin():
                insert = self._insert_for(session)
                stmt = insert(FundReturns).values(scheme_code=snapshot.scheme_code, **values)
                stmt = stmt.on_conflict_do_update(index_elements=["scheme_code"], set_=values)
                await session.execute(stmt)
        except PersistenceError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Returns snapshot for {snapshot.scheme_code} not saved: {e}") from e

    @_read_errors_as_persistence
    async def get_returns(self, scheme_code: str) -> Optional[ReturnsSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(FundReturns, scheme_code)
            if row is None:
                return None

            snapshot = ReturnsSnapshot(
                scheme_code=row.scheme_code,
                as_of_date=row.as_of_date,
                latest_nav=row.latest_nav,
            )
            for key in RETURN_PERIOD_KEYS:
                value = getattr(row, f"return_{key}")
                if value is not None:
                    snapshot.period_returns[key] = value
            for key in CAGR_PERIOD_KEYS:
                value = getattr(row, f"cagr_{key}")
                if value is not None:
                    snapshot.cagrs[key] = value
            return snapshot
