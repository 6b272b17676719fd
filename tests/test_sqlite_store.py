import sqlite3

import pytest

from bizdir.core.exceptions import StorageUnavailable
from bizdir.models import BusinessStatus, Photo, UpsertResult
from bizdir.storage.base import ALL_BUSINESSES, BusinessFilter
from bizdir.storage.sqlite_store import SQLiteAdapter

@pytest.fixture
def adapter(tmp_path):
    return SQLiteAdapter(str(tmp_path / "nested" / "businesses.db"))


def test_upsert_reports_created_then_updated(adapter, business_factory):
    business = business_factory("pid", name="Acme")
    assert adapter.upsert(business) is UpsertResult.CREATED

    changed = business_factory("pid", name="Acme Renamed", rating=3.0, review_count=99)
    assert adapter.upsert(changed) is UpsertResult.UPDATED

    stored = adapter.get("pid")
    assert stored.name == "Acme Renamed"
    assert stored.rating == 3.0
    assert stored.review_count == 99
    assert adapter.count() == 1


def test_upsert_keeps_created_at_and_moves_updated_at(adapter, business_factory):
    adapter.upsert(business_factory("pid"))
    first = adapter.get("pid")
    adapter.upsert(business_factory("pid", name="Second"))
    second = adapter.get("pid")

    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at


def test_get_round_trips_optional_fields(adapter, business_factory):
    business = business_factory(
        "pid",
        phone="+971 4 000 0000",
        website="https://acme.example",
        logo_url="https://remote/logo.png",
        logo_cached_url="/cache/pid.png",
        photos=[Photo(reference="r1", caption="Lobby")],
        status=BusinessStatus.CLOSED,
    )
    adapter.upsert(business)

    stored = adapter.get("pid")

    assert stored.phone == "+971 4 000 0000"
    assert stored.logo == "/cache/pid.png"
    assert stored.photos == [Photo(reference="r1", caption="Lobby")]
    assert stored.coordinates == (25.2, 55.27)
    assert stored.status is BusinessStatus.CLOSED


def test_get_missing_returns_none(adapter):
    assert adapter.get("missing") is None


def test_query_orders_and_filters(adapter, sample_businesses):
    for business in sample_businesses:
        adapter.upsert(business)

    items, total = adapter.query(BusinessFilter())
    assert [business.id for business in items] == ["e", "c", "a", "b", "g", "h", "d"]
    assert total == 7

    items, total = adapter.query(BusinessFilter(category="BUSINESS consultants dubai"))
    assert [business.id for business in items] == ["e"]

    items, total = adapter.query(BusinessFilter(search="deira"))
    assert [business.id for business in items] == ["c"]

    assert adapter.count(ALL_BUSINESSES) == 8
    assert adapter.count(BusinessFilter(status=BusinessStatus.CLOSED)) == 1


def test_search_treats_wildcards_literally(adapter, sample_businesses):
    for business in sample_businesses:
        adapter.upsert(business)

    items, _ = adapter.query(BusinessFilter(search="100%"))
    assert [business.id for business in items] == ["d"]
    items, _ = adapter.query(BusinessFilter(search="_"))
    assert items == []


def test_query_paginates_with_total(adapter, sample_businesses):
    for business in sample_businesses:
        adapter.upsert(business)

    page_one, total = adapter.query(BusinessFilter(), page=1, page_size=3)
    page_three, _ = adapter.query(BusinessFilter(), page=3, page_size=3)

    assert total == 7
    assert [business.id for business in page_one] == ["e", "c", "a"]
    assert [business.id for business in page_three] == ["d"]


def test_aggregate_covers_operational_records_only(adapter, sample_businesses):
    for business in sample_businesses:
        adapter.upsert(business)

    stats = adapter.aggregate()

    assert stats.total_businesses == 7
    assert stats.total_reviews == 120 + 120 + 300 + 5 + 0 + 77 + 77
    assert stats.avg_rating == round((4.8 * 3 + 3.9 + 5.0 + 4.1 * 2) / 7, 2)
    # a, b, c, e, g, h share one coordinate pair; d has none.
    assert stats.location_count == 1
    assert stats.updated_at is not None


def test_aggregate_on_empty_store(adapter):
    stats = adapter.aggregate()
    assert stats.total_businesses == 0
    assert stats.avg_rating == 0.0
    assert stats.location_count == 0


def test_stats_cache_returns_latest_row(adapter, business_factory):
    assert adapter.load_stats() is None
    adapter.upsert(business_factory("pid"))
    first = adapter.aggregate()
    adapter.save_stats(first)
    adapter.upsert(business_factory("other"))
    adapter.save_stats(adapter.aggregate())

    assert adapter.load_stats().total_businesses == 2


def test_malformed_rows_are_left_out_of_items_and_total(adapter, business_factory, caplog):
    adapter.upsert(business_factory("good"))
    conn = sqlite3.connect(adapter.path)
    conn.executemany(
        "INSERT INTO businesses (id, name, rating, review_count, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        [
            ("bad-rating", "Bad Rating", 9, 1, "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
            ("bad-reviews", "Bad Reviews", 4.0, -4, "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
            ("blank-name", "   ", 4.0, 1, "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
            ("bad-time", "Bad Time", 1.0, 1, "yesterday", "yesterday"),
        ],
    )
    conn.execute("UPDATE businesses SET photos = 'not json' WHERE id = 'bad-time'")
    conn.commit()
    conn.close()

    with caplog.at_level("WARNING"):
        pages = [adapter.query(BusinessFilter(), page=page, page_size=1) for page in (1, 2, 3)]

    items = [business for page_items, _ in pages for business in page_items]
    totals = {total for _, total in pages}
    assert [business.id for business in items] == ["good", "bad-time"]
    assert totals == {len(items)}
    assert adapter.count() == 2
    assert adapter.get("bad-time").created_at is None
    assert adapter.get("bad-time").photos == []
    assert adapter.aggregate().total_businesses == 2
    assert any("unreadable" in message for message in caplog.messages)


def test_unreadable_database_raises_storage_unavailable(tmp_path):
    path = tmp_path / "not-a-db.db"
    path.write_bytes(b"this is not a sqlite database, just some bytes " * 10)

    with pytest.raises(StorageUnavailable):
        SQLiteAdapter(str(path))
