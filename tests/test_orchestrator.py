import asyncio
import pytest
from datetime import date

from navhub.core.circuit_breaker import CircuitState
from navhub.services.sync_run import SyncMode, SyncState
from navhub.services.nav_service import (
    NavStore,
    PersistenceError,
    RateLimitError,
    StaticSchemeRegistry,
    SyncAlreadyRunningError,
    SyncOrchestrator,
    TransientFetchError,
)

AS_OF = date(2024, 1, 1)


def _document(*entries):
    return {
        "meta": {"fund_house": "Test AMC"},
        "data": [{"date": d, "nav": nav} for d, nav in entries],
        "status": "SUCCESS",
    }


ONE_YEAR = _document(("01-01-2024", "110.0000"), ("01-01-2023", "100.0000"))


class FakeSourceClient:
    def __init__(self, documents=None, failures=None, bulk_feed=None):
        self.documents = documents or {}
        self.failures = failures or {}
        self.bulk_feed = bulk_feed
        self.calls = []
        self.on_fetch = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def fetch_scheme_document(self, scheme_code):
        self.calls.append(scheme_code)
        if self.on_fetch is not None:
            self.on_fetch(scheme_code)
        if scheme_code in self.failures:
            raise self.failures[scheme_code]
        return self.documents.get(scheme_code, _document())

    async def fetch_bulk_feed(self):
        self.calls.append("bulk")
        if self.bulk_feed is None:
            raise TransientFetchError("bulk feed down")
        return self.bulk_feed


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_orchestrator(store, codes, client, **kwargs):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    options = dict(
        batch_delay_seconds=2.0,
        fetch_retry_delay_seconds=0.1,
        max_concurrency=2,
        sleep=fake_sleep,
    )
    options.update(kwargs)
    orchestrator = SyncOrchestrator(
        store=store,
        registry=StaticSchemeRegistry(codes),
        client_factory=lambda: client,
        **options,
    )
    return orchestrator, delays


@pytest.mark.asyncio
async def test_partial_failure_is_collected(store):
    client = FakeSourceClient(
        documents={"101": ONE_YEAR, "103": ONE_YEAR},
        failures={"102": TransientFetchError("HTTP 503")},
    )
    orchestrator, delays = make_orchestrator(store, ["101", "102", "103"], client)

    outcome = await orchestrator.run(batch_size=2, as_of_date=AS_OF)

    assert outcome.success is False
    assert outcome.records_processed == 2
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [("102", "fetch")]
    assert client.calls.count("102") == 2
    assert delays == [0.1, 2.0]
    assert outcome.nav_points_written == 4
    assert outcome.returns_computed == 2
    assert outcome.duration_ms >= 0

    assert (await store.get_latest_nav("101")).value == pytest.approx(110.0)
    assert (await store.get_returns("103")).period_returns["1y"] == pytest.approx(10.0)
    assert await store.get_latest_nav("102") is None
    assert orchestrator.current_run.state == SyncState.FAILED
    assert orchestrator.current_run.progress == 1.0


@pytest.mark.asyncio
async def test_clean_run_completes(store):
    client = FakeSourceClient(documents={"101": ONE_YEAR})
    orchestrator, _ = make_orchestrator(store, ["101"], client)

    outcome = await orchestrator.run(as_of_date=AS_OF)

    assert outcome.success is True
    assert outcome.failed_schemes == []
    assert orchestrator.current_run.state == SyncState.COMPLETED
    assert orchestrator.status()["run"]["state"] == "completed"


@pytest.mark.asyncio
async def test_rerun_is_idempotent_and_skips_unchanged_returns(store):
    client = FakeSourceClient(documents={"101": ONE_YEAR, "102": ONE_YEAR})
    orchestrator, _ = make_orchestrator(store, ["101", "102"], client)

    first = await orchestrator.run(as_of_date=AS_OF)
    second = await orchestrator.run(as_of_date=AS_OF)

    assert first.nav_points_written == 4
    assert second.success is True
    assert second.records_processed == 2
    assert second.nav_points_written == 0
    assert second.returns_computed == 0
    assert len(await store.range_descending("101", 10)) == 2


@pytest.mark.asyncio
async def test_empty_document_is_no_data_and_garbage_is_parse(store):
    client = FakeSourceClient(documents={
        "101": _document(),
        "102": _document(("bad-date", "1.0"), ("01-01-2024", "N.A.")),
    })
    orchestrator, _ = make_orchestrator(store, ["101", "102"], client)

    outcome = await orchestrator.run(as_of_date=AS_OF)

    kinds = {f.scheme_code: f.error_kind for f in outcome.failed_schemes}
    assert kinds == {"101": "no_data", "102": "parse"}
    assert outcome.records_processed == 0


@pytest.mark.asyncio
async def test_bulk_mode_fetches_feed_once(store):
    feed = "\n".join([
        "Scheme Code;ISIN Div Payout/ ISIN Growth;ISIN Div Reinvestment;Scheme Name;Net Asset Value;Date",
        "Test Mutual Fund",
        "101;INF000A;-;Fund A;110.0000;01-Jan-2024",
        "103;INF000C;-;Fund C;55.5000;01-Jan-2024",
        "999;INF000Z;-;Not Targeted;1.0000;01-Jan-2024",
    ])
    client = FakeSourceClient(bulk_feed=feed)
    orchestrator, delays = make_orchestrator(store, ["101", "102", "103"], client)

    outcome = await orchestrator.run(batch_size=1, mode=SyncMode.BULK, as_of_date=AS_OF)

    assert client.calls == ["bulk"]
    assert delays == []
    assert outcome.records_processed == 2
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [("102", "no_data")]
    assert (await store.get_latest_nav("103")).value == pytest.approx(55.5)
    assert await store.get_latest_nav("999") is None


@pytest.mark.asyncio
async def test_bulk_feed_unavailable_fails_every_target(store):
    orchestrator, _ = make_orchestrator(store, ["101", "102"], FakeSourceClient())

    outcome = await orchestrator.run(mode=SyncMode.BULK, as_of_date=AS_OF)

    assert outcome.success is False
    assert outcome.records_processed == 0
    assert {f.error_kind for f in outcome.failed_schemes} == {"fetch"}
    assert len(outcome.failed_schemes) == 2


@pytest.mark.asyncio
async def test_stop_request_cancels_remaining_batches(store):
    client = FakeSourceClient(documents={code: ONE_YEAR for code in ("101", "102", "103")})
    orchestrator, _ = make_orchestrator(store, ["101", "102", "103"], client)
    client.on_fetch = lambda code: orchestrator.request_stop()

    outcome = await orchestrator.run(batch_size=1, as_of_date=AS_OF)

    assert client.calls == ["101"]
    assert outcome.records_processed == 1
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [
        ("102", "cancelled"),
        ("103", "cancelled"),
    ]
    # The batch already fetched is still persisted and recomputed
    assert outcome.returns_computed == 1


@pytest.mark.asyncio
async def test_open_breaker_marks_remaining_rate_limited(store):
    clock = FakeClock()
    codes = ["101", "102", "103", "104"]
    client = FakeSourceClient(failures={code: RateLimitError("429") for code in codes})
    orchestrator, delays = make_orchestrator(store, codes, client, clock=clock)

    outcome = await orchestrator.run(batch_size=2, as_of_date=AS_OF)

    assert orchestrator.breaker.state == CircuitState.OPEN
    assert client.calls == ["101", "102"]
    assert {f.error_kind for f in outcome.failed_schemes} == {"rate_limited"}
    assert [f.scheme_code for f in outcome.failed_schemes] == codes
    assert delays == [2.0, 30.0]


class FlakyStore(NavStore):
    """Rejects any write that touches one scheme."""

    def __init__(self, session_factory, poison):
        super().__init__(session_factory)
        self.poison = poison
        self.batches = []

    async def upsert_many(self, points):
        points = list(points)
        self.batches.append(sorted({p.scheme_code for p in points}))
        if any(p.scheme_code == self.poison for p in points):
            raise PersistenceError("disk full")
        return await super().upsert_many(points)


@pytest.mark.asyncio
async def test_failed_batch_is_retried_per_scheme(session_factory):
    store = FlakyStore(session_factory, poison="102")
    client = FakeSourceClient(documents={code: ONE_YEAR for code in ("101", "102", "103")})
    orchestrator, _ = make_orchestrator(store, ["101", "102", "103"], client)

    outcome = await orchestrator.run(batch_size=3, as_of_date=AS_OF)

    assert store.batches == [["101", "102", "103"], ["101"], ["102"], ["103"]]
    assert outcome.records_processed == 2
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [("102", "persistence")]
    assert await store.get_latest_nav("103") is not None


class BrokenRegistry:
    async def get_scheme_codes(self):
        raise ConnectionError("registry offline")


@pytest.mark.asyncio
async def test_unreachable_registry_fails_run(store):
    orchestrator = SyncOrchestrator(
        store=store,
        registry=BrokenRegistry(),
        client_factory=FakeSourceClient,
    )

    outcome = await orchestrator.run(as_of_date=AS_OF)

    assert outcome.success is False
    assert outcome.records_processed == 0
    status = orchestrator.status()
    assert status["run"]["state"] == "failed"
    assert "registry offline" in status["run"]["error"]


@pytest.mark.asyncio
async def test_only_one_run_at_a_time(store):
    client = FakeSourceClient(documents={"101": ONE_YEAR})
    orchestrator, _ = make_orchestrator(store, ["101"], client)

    run = orchestrator.start_background(as_of_date=AS_OF)
    assert orchestrator.is_running
    with pytest.raises(SyncAlreadyRunningError):
        await orchestrator.run()

    await asyncio.wait_for(orchestrator._background_task, timeout=5)
    assert run.state == SyncState.COMPLETED
    assert not orchestrator.is_running
    assert orchestrator.request_stop() is False


@pytest.mark.asyncio
async def test_invalid_batch_size(store):
    orchestrator, _ = make_orchestrator(store, ["101"], FakeSourceClient())

    with pytest.raises(ValueError):
        await orchestrator.run(batch_size=0)
    assert orchestrator.current_run is None


@pytest.mark.asyncio
async def test_refresh_scheme_registry(store):
    feed = "\n".join([
        "Open Ended Schemes(Equity Scheme - Large Cap Fund)",
        "Test Mutual Fund",
        "101;INF000A;-;Fund A - Growth;110.0000;01-Jan-2024",
    ])
    orchestrator, _ = make_orchestrator(store, [], FakeSourceClient(bulk_feed=feed))

    assert await orchestrator.refresh_scheme_registry() == 1
    assert await store.list_scheme_codes() == ["101"]


@pytest.mark.parametrize("field", ["batch_size", "max_concurrency"])
@pytest.mark.parametrize("value", [0, -3])
def test_constructor_rejects_non_positive_sizes(store, field, value):
    with pytest.raises(ValueError):
        SyncOrchestrator(
            store=store,
            registry=StaticSchemeRegistry(["101"]),
            client_factory=FakeSourceClient,
            **{field: value},
        )


class ReturnsFailingStore(NavStore):
    """Persists NAV rows normally but cannot save returns for one scheme."""

    def __init__(self, session_factory, poison):
        super().__init__(session_factory)
        self.poison = poison

    async def save_returns(self, snapshot):
        if snapshot.scheme_code == self.poison:
            raise PersistenceError("returns table locked")
        return await super().save_returns(snapshot)


@pytest.mark.asyncio
async def test_returns_failure_is_not_counted_as_processed(session_factory):
    store = ReturnsFailingStore(session_factory, poison="102")
    client = FakeSourceClient(documents={"101": ONE_YEAR, "102": ONE_YEAR})
    orchestrator, _ = make_orchestrator(store, ["101", "102"], client)

    outcome = await orchestrator.run(as_of_date=AS_OF)

    assert outcome.success is False
    assert outcome.records_processed == 1
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [("102", "compute")]
    # NAV rows are kept even though the returns snapshot was not saved
    assert (await store.get_latest_nav("102")).value == pytest.approx(110.0)
    assert orchestrator.status()["run"]["processed_count"] == 1


class RecordingStore(NavStore):
    """Records each write and can ask the orchestrator to stop after the first one."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.batches = []
        self.after_write = None

    async def upsert_many(self, points):
        points = list(points)
        self.batches.append(sorted({p.scheme_code for p in points}))
        result = await super().upsert_many(points)
        if self.after_write is not None:
            self.after_write()
        return result


BULK_FEED = "\n".join([
    "Scheme Code;ISIN Div Payout/ ISIN Growth;ISIN Div Reinvestment;Scheme Name;Net Asset Value;Date",
    "Test Mutual Fund",
    "101;INF000A;-;Fund A;110.0000;01-Jan-2024",
    "102;INF000B;-;Fund B;20.0000;01-Jan-2024",
    "103;INF000C;-;Fund C;55.5000;01-Jan-2024",
    "104;INF000D;-;Fund D;7.2500;01-Jan-2024",
    "105;INF000E;-;Fund E;9.0000;01-Jan-2024",
])


@pytest.mark.asyncio
async def test_bulk_mode_writes_each_batch_as_it_is_parsed(session_factory):
    store = RecordingStore(session_factory)
    codes = ["101", "102", "103", "104", "105"]
    orchestrator, _ = make_orchestrator(store, codes, FakeSourceClient(bulk_feed=BULK_FEED))

    outcome = await orchestrator.run(batch_size=2, mode=SyncMode.BULK, as_of_date=AS_OF)

    assert store.batches == [["101", "102"], ["103", "104"], ["105"]]
    assert outcome.success is True
    assert outcome.records_processed == 5
    assert outcome.nav_points_written == 5


@pytest.mark.asyncio
async def test_bulk_stop_after_first_batch_cancels_the_rest(session_factory):
    store = RecordingStore(session_factory)
    codes = ["101", "102", "103", "104", "105"]
    orchestrator, _ = make_orchestrator(store, codes, FakeSourceClient(bulk_feed=BULK_FEED))
    store.after_write = orchestrator.request_stop

    outcome = await orchestrator.run(batch_size=2, mode=SyncMode.BULK, as_of_date=AS_OF)

    assert store.batches == [["101", "102"]]
    assert outcome.records_processed == 2
    assert [(f.scheme_code, f.error_kind) for f in outcome.failed_schemes] == [
        ("103", "cancelled"),
        ("104", "cancelled"),
        ("105", "cancelled"),
    ]
    assert await store.get_latest_nav("103") is None
