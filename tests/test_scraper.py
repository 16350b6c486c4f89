import asyncio
from datetime import date
from decimal import Decimal

import pytest

from config import ITALO, TRENITALIA
from database import count_prices, get_prices
from fares import FareLine, Journey, extract_journeys
from scraper import (
    RouteNotFoundError,
    anchors_for,
    collect_snapshots,
    ensure_routes,
    merge_journeys,
    resolve_routes,
    scrape_dates,
    scrape_days,
)

from conftest import utc


def journey(train_number, departure, price="29.90", fare_class="Standard"):
    return Journey(
        train_number=train_number,
        train_type="Frecciarossa",
        departure=departure,
        arrival=None,
        duration_min=70,
        fares=(FareLine(fare_class, Decimal(price), 10),),
    )


def fake_factory(responses, calls=None):
    """search_factory whose searches answer from {direction: fn(anchor)}."""
    calls = calls if calls is not None else []

    def factory(client, provider, direction, proxy_cache):
        async def search(anchor):
            calls.append((provider, direction, anchor))
            return responses.get(direction, lambda a: [])(anchor)
        return search

    return factory


def run_scrape_days(conn, factory, **kw):
    kw.setdefault("start", date(2025, 6, 14))
    kw.setdefault("days", 1)
    kw.setdefault("providers", [TRENITALIA])
    return asyncio.run(scrape_days(
        conn, None, pause_anchor_s=0, pause_direction_s=0, search_factory=factory, **kw,
    ))


def test_merge_journeys_drops_repeated_train():
    dep = utc(2025, 6, 15, 5, 0)
    merged = merge_journeys([
        [journey("9536", dep, "29.90"), journey("9540", utc(2025, 6, 15, 6, 0))],
        [journey("9536", dep, "25.00")],
    ])
    assert [j.train_number for j in merged] == ["9536", "9540"]
    # first occurrence wins
    assert merged[0].fares[0].price == Decimal("29.90")


def test_anchors():
    assert [a.strftime("%H:%M") for a in anchors_for("outbound")] == ["05:00"]
    assert [a.strftime("%H:%M") for a in anchors_for("return")] == ["14:30", "15:30"]
    assert [a.strftime("%H:%M") for a in anchors_for("return", date_only=True)] == ["14:30"]


def test_scrape_dates_start_tomorrow_and_clamp():
    assert scrape_dates(2, date(2025, 6, 14)) == [date(2025, 6, 15), date(2025, 6, 16)]
    assert len(scrape_dates(500, date(2025, 1, 1))) == 120
    assert scrape_dates(0, date(2025, 1, 1)) == [date(2025, 1, 2)]


class TestCollectSnapshots:
    def test_return_queries_both_anchors_and_dedupes(self):
        anchors = []
        dep = utc(2025, 6, 15, 15, 0)

        async def search(anchor):
            anchors.append(anchor)
            return [journey("9536", dep), journey("9999", utc(2025, 6, 15, 15, 30))]

        snaps = asyncio.run(collect_snapshots(search, 7, "return", date(2025, 6, 15), pause_s=0))
        assert anchors == [utc(2025, 6, 15, 14, 30), utc(2025, 6, 15, 15, 30)]
        assert len(snaps) == 1
        assert snaps[0]["train_number"] == "9536"
        assert snaps[0]["route_id"] == 7

    def test_date_only_provider_queries_once(self):
        anchors = []

        async def search(anchor):
            anchors.append(anchor)
            return []

        asyncio.run(collect_snapshots(search, 1, "return", date(2025, 1, 15), date_only=True, pause_s=0))
        assert anchors == [utc(2025, 1, 15, 14, 30)]

    def test_one_snapshot_per_fare(self):
        j = Journey("9536", "FR", utc(2025, 6, 15, 5, 0), None, 70, (
            FareLine("Standard", Decimal("29.90"), 12),
            FareLine("Premium", Decimal("49.90"), 3),
        ), total_available=15)

        async def search(anchor):
            return [j]

        scraped_at = utc(2025, 6, 1, 8, 0)
        snaps = asyncio.run(collect_snapshots(
            search, 1, "outbound", date(2025, 6, 15), pause_s=0, scraped_at=scraped_at,
        ))
        assert [(s["fare_class"], s["price"]) for s in snaps] == [
            ("Standard", Decimal("29.90")), ("Premium", Decimal("49.90")),
        ]
        assert all(s["total_available"] == 15 and s["scraped_at"] == scraped_at for s in snaps)


def test_roma_napoli_summer_scenario(conn, routes):
    data = {"solutions": [{
        "solution": {
            "departureTime": "2025-06-15T05:00:00Z",
            "duration": "1h 10min",
            "trains": [{"name": "9536", "denomination": "Frecciarossa"}],
        },
        "grids": [{"services": [
            {"name": "Standard", "offers": [
                {"name": "Base", "price": 29.90, "availableAmount": 12, "status": "SALEABLE"}]},
            {"name": "Young", "offers": [
                {"name": "Base", "price": 19.90, "availableAmount": 5, "status": "SALEABLE"}]},
        ]}],
    }]}
    factory = fake_factory({"outbound": lambda a: extract_journeys(TRENITALIA, data)})

    summary = run_scrape_days(conn, factory)

    stored = get_prices(conn, [routes["outbound"]["id"]])
    assert len(stored) == 1
    assert stored[0]["fare_class"] == "Standard"
    assert stored[0]["price"] == Decimal("29.90")
    assert stored[0]["available_seats"] == 12
    assert stored[0]["departure_at"] == utc(2025, 6, 15, 5, 0)
    assert summary["outbound_prices"] == 1
    assert summary["return_prices"] == 0
    assert summary["errors"] == 0


def test_out_of_window_trains_not_stored(conn, routes):
    factory = fake_factory({
        "outbound": lambda a: [journey("9500", utc(2025, 6, 15, 5, 15))],
        "return": lambda a: [journey("9611", utc(2025, 6, 15, 15, 5)), journey("9615", utc(2025, 6, 15, 15, 20))],
    })
    summary = run_scrape_days(conn, factory)
    assert summary["outbound_prices"] == 0
    assert summary["return_prices"] == 1
    assert [s["train_number"] for s in get_prices(conn, [routes["return"]["id"]])] == ["9611"]


def test_missing_route_aborts_before_any_call(conn):
    calls = []
    with pytest.raises(RouteNotFoundError):
        run_scrape_days(conn, fake_factory({}, calls))
    assert calls == []


def test_missing_route_is_lookup_error(conn):
    ensure_routes(conn, [TRENITALIA])
    with pytest.raises(LookupError):
        resolve_routes(conn, [TRENITALIA, ITALO])


def test_failed_date_does_not_stop_run(conn, routes):
    def outbound(anchor):
        if anchor.date() == date(2025, 6, 15):
            raise RuntimeError("boom")
        return [journey("9536", anchor)]

    summary = run_scrape_days(conn, fake_factory({"outbound": outbound}), days=2)
    assert summary["errors"] == 1
    stored = get_prices(conn, [routes["outbound"]["id"]])
    assert [s["departure_at"] for s in stored] == [utc(2025, 6, 16, 5, 0)]


def test_purge_before_rescrape(conn, routes, add_price):
    out_id = routes["outbound"]["id"]
    add_price(out_id, utc(2025, 6, 15, 5, 0), "99.00", fare_class="Stale")
    add_price(out_id, utc(2025, 6, 20, 5, 0), "50.00")

    run_scrape_days(conn, fake_factory({"outbound": lambda a: [journey("9536", a)]}))

    classes = {(s["departure_at"].date(), s["fare_class"]) for s in get_prices(conn, [out_id])}
    assert classes == {(date(2025, 6, 15), "Standard"), (date(2025, 6, 20), "Standard")}


def test_keep_existing_skips_purge(conn, routes, add_price):
    out_id = routes["outbound"]["id"]
    add_price(out_id, utc(2025, 6, 15, 5, 0), "99.00", fare_class="Stale")

    run_scrape_days(conn, fake_factory({"outbound": lambda a: [journey("9536", a)]}), purge_first=False)

    assert count_prices(conn) == 2


def test_run_is_logged(conn, routes):
    run_scrape_days(conn, fake_factory({}))
    row = conn.execute("SELECT providers, days, errors FROM scrape_runs").fetchone()
    assert tuple(row) == ("TRENITALIA", 1, 0)
