import asyncio
import pytest
from datetime import date, timedelta
from sqlalchemy import select, func

from navhub.db.models import NavHistory, Fund
from navhub.services.nav_service import NavPoint, SchemeInfo, ReturnsSnapshot, PersistenceError

D1, D2, D3 = date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)


async def _count_rows(session_factory, scheme_code):
    async with session_factory() as session:
        stmt = select(func.count()).select_from(NavHistory).where(NavHistory.scheme_code == scheme_code)
        return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_upsert_is_idempotent(store, session_factory):
    points = [NavPoint("100", D1, 10.0), NavPoint("100", D2, 10.5)]

    first = await store.upsert_many(points)
    second = await store.upsert_many(points)

    assert (first.inserted, first.updated) == (2, 0)
    assert first.changed_schemes == {"100"}
    assert (second.inserted, second.updated) == (0, 0)
    assert second.changed_schemes == set()
    assert await _count_rows(session_factory, "100") == 2


@pytest.mark.asyncio
async def test_upsert_corrects_value_in_place(store, session_factory):
    await store.upsert_many([NavPoint("100", D1, 10.0)])
    result = await store.upsert_many([NavPoint("100", D1, 10.2)])

    assert (result.inserted, result.updated) == (0, 1)
    assert await _count_rows(session_factory, "100") == 1

    async with session_factory() as session:
        row = (await session.execute(select(NavHistory).where(NavHistory.scheme_code == "100"))).scalar_one()
    assert row.nav_value == pytest.approx(10.2)
    assert row.revision == 1


@pytest.mark.asyncio
async def test_out_of_order_inserts_keep_latest_projection(store):
    for point in (NavPoint("200", D3, 13.0), NavPoint("200", D1, 11.0), NavPoint("200", D2, 12.0)):
        await store.upsert_many([point])

    latest = await store.get_latest_nav("200")
    assert latest == NavPoint("200", D3, 13.0)

    before = await store.latest_before("200", D2)
    assert before == NavPoint("200", D2, 12.0)
    assert await store.latest_before("200", date(2023, 12, 31)) is None


@pytest.mark.asyncio
async def test_same_date_correction_updates_projection(store):
    await store.upsert_many([NavPoint("200", D2, 12.0)])
    await store.upsert_many([NavPoint("200", D2, 12.4)])

    assert (await store.get_latest_nav("200")).value == pytest.approx(12.4)


@pytest.mark.asyncio
async def test_range_descending_and_earliest(store):
    await store.upsert_many([NavPoint("300", d, v) for d, v in ((D2, 2.0), (D1, 1.0), (D3, 3.0))])
    await store.upsert_many([NavPoint("301", D1, 9.0)])

    window = await store.range_descending("300", 2)
    assert [p.date for p in window] == [D3, D2]
    assert (await store.earliest("300")).date == D1
    assert await store.range_descending("999", 5) == []
    assert await store.earliest("999") is None


@pytest.mark.asyncio
async def test_failed_batch_is_rolled_back(store, session_factory):
    # A NULL NAV violates the column constraint after the first point was written
    bad_batch = [NavPoint("400", D1, 10.0), NavPoint("400", D2, None)]

    with pytest.raises(PersistenceError):
        await store.upsert_many(bad_batch)

    assert await _count_rows(session_factory, "400") == 0
    assert await store.get_latest_nav("400") is None


@pytest.mark.asyncio
async def test_upsert_schemes_keeps_latest_nav(store, session_factory):
    await store.upsert_many([NavPoint("500", D1, 20.0)])
    count = await store.upsert_schemes([
        SchemeInfo("500", "Alpha Fund - Growth", "Alpha AMC", "Equity Scheme"),
        SchemeInfo("501", "Beta Fund", "Beta AMC"),
    ])

    assert count == 2
    assert await store.list_scheme_codes() == ["500", "501"]
    async with session_factory() as session:
        fund = await session.get(Fund, "500")
    assert fund.scheme_name == "Alpha Fund - Growth"
    assert fund.latest_nav == pytest.approx(20.0)
    assert fund.latest_nav_date == D1


@pytest.mark.asyncio
async def test_save_returns_replaces_snapshot(store):
    first = ReturnsSnapshot(
        scheme_code="600",
        as_of_date=D3,
        latest_nav=11.0,
        period_returns={"1y": 10.0, "since_inception": 25.0},
        cagrs={"1y": 10.0},
    )
    await store.save_returns(first)

    second = ReturnsSnapshot(scheme_code="600", as_of_date=D3, latest_nav=11.0, period_returns={"1w": 0.5})
    await store.save_returns(second)

    stored = await store.get_returns("600")
    assert stored.period_returns == {"1w": 0.5}
    assert stored.cagrs == {}
    assert await store.get_returns("999") is None


@pytest.mark.asyncio
async def test_ping(store):
    await store.ping()


@pytest.mark.asyncio
async def test_concurrent_overlapping_batches(store, session_factory):
    codes = ["300", "301", "302"]
    points = [
        NavPoint(code, D1 + timedelta(days=offset), 10.0 + offset)
        for code in codes
        for offset in range(10)
    ]
    # Same rows submitted in different orders and overlapping slices
    batches = [points, list(reversed(points)), points[5:25], points[::2]]

    results = await asyncio.gather(*(store.upsert_many(batch) for batch in batches))

    assert sum(r.inserted for r in results) == 30
    assert sum(r.updated for r in results) == 0
    for code in codes:
        assert await _count_rows(session_factory, code) == 10
        assert await store.get_latest_nav(code) == NavPoint(code, D1 + timedelta(days=9), 19.0)

    async with session_factory() as session:
        rows = (await session.execute(select(NavHistory).where(NavHistory.scheme_code == "301"))).scalars().all()
    assert sorted(row.nav_value for row in rows) == [10.0 + offset for offset in range(10)]
    assert {row.revision for row in rows} == {0}
