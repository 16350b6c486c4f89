import sqlite3
from datetime import date, datetime
from decimal import Decimal

import pytest

from config import AGE_RESTRICTED_TOKENS
from database import (
    count_prices,
    count_prices_by_class_pattern,
    delete_prices_by_class_pattern,
    delete_prices_for_date,
    ensure_route,
    find_route,
    get_prices,
    insert_price,
    last_scraped_at,
    list_active_routes,
    set_route_active,
    to_db_ts,
)

from conftest import make_snapshot, utc


def test_to_db_ts_is_utc_seconds():
    assert to_db_ts(utc(2025, 6, 15, 5, 0, 0, 123456)) == "2025-06-15T05:00:00+00:00"
    assert to_db_ts(datetime(2025, 6, 15, 5, 0)) == "2025-06-15T05:00:00+00:00"


def test_ensure_route_is_idempotent(conn):
    first = ensure_route(conn, 830008409, 830009218, "Roma Termini", "Napoli Centrale", "TRENITALIA")
    again = ensure_route(conn, "830008409", "830009218", "Roma", "Napoli", "TRENITALIA")
    assert first["id"] == again["id"]
    assert again["origin_name"] == "Roma Termini"
    assert len(list_active_routes(conn)) == 1


def test_inactive_route_not_found(conn):
    route = ensure_route(conn, "ROT", "NAC", "Roma Termini", "Napoli Centrale", "ITALO")
    set_route_active(conn, route["id"], False)
    assert find_route(conn, "ROT", "NAC", "ITALO") is None
    assert find_route(conn, "ROT", "NAC", "ITALO", active_only=False)["id"] == route["id"]
    assert list_active_routes(conn) == []


def test_price_round_trip(conn, routes, add_price):
    route_id = routes["outbound"]["id"]
    add_price(route_id, utc(2025, 6, 15, 5, 0), "29.90", available_seats=12, total_available=40)
    (snap,) = get_prices(conn, [route_id])
    assert snap["price"] == Decimal("29.90")
    assert snap["available_seats"] == 12
    assert snap["total_available"] == 40
    assert snap["departure_at"] == utc(2025, 6, 15, 5, 0)
    assert last_scraped_at(conn) == utc(2025, 6, 1, 8, 0)


def test_get_prices_range_is_half_open(conn, routes, add_price):
    route_id = routes["outbound"]["id"]
    for day in (14, 15, 16):
        add_price(route_id, utc(2025, 6, day, 5, 0), "30")
    found = get_prices(conn, [route_id], utc(2025, 6, 15), utc(2025, 6, 16, 5, 0))
    assert [s["departure_at"].day for s in found] == [15]


def test_get_prices_filters(conn, routes, add_price):
    route_id = routes["outbound"]["id"]
    add_price(route_id, utc(2025, 6, 15, 5, 0), "30", fare_class="Standard")
    add_price(route_id, utc(2025, 6, 15, 5, 0), "60", fare_class="Premium",
              scraped_at=utc(2025, 6, 10, 8, 0))
    assert len(get_prices(conn, [route_id], fare_class="Premium")) == 1
    assert len(get_prices(conn, [route_id], scraped_since=utc(2025, 6, 5))) == 1
    assert get_prices(conn, []) == []


def test_purge_by_date_leaves_other_dates(conn, routes, add_price):
    out_id, ret_id = routes["outbound"]["id"], routes["return"]["id"]
    for n in range(3):
        add_price(out_id, utc(2025, 6, 15, 5, 0), "30", train_number=f"95{n}")
    add_price(ret_id, utc(2025, 6, 15, 15, 0), "30")
    add_price(out_id, utc(2025, 6, 16, 5, 0), "30")

    assert delete_prices_for_date(conn, [out_id], date(2025, 6, 15)) == 3
    assert get_prices(conn, [out_id], utc(2025, 6, 15), utc(2025, 6, 16)) == []
    assert len(get_prices(conn, [out_id])) == 1
    assert len(get_prices(conn, [ret_id])) == 1


def test_delete_by_class_pattern(conn, routes, add_price):
    route_id = routes["outbound"]["id"]
    for name in ("Standard", "Young", "CartaFRECCIA Senior", "Offerta GIOVANI"):
        add_price(route_id, utc(2025, 6, 15, 5, 0), "30", fare_class=name)

    assert count_prices_by_class_pattern(conn, AGE_RESTRICTED_TOKENS) == 3
    assert delete_prices_by_class_pattern(conn, AGE_RESTRICTED_TOKENS) == 3
    assert [s["fare_class"] for s in get_prices(conn, [route_id])] == ["Standard"]


def test_delete_by_class_pattern_needs_tokens(conn):
    with pytest.raises(ValueError):
        delete_prices_by_class_pattern(conn, [])


def test_insert_price_errors_propagate(conn):
    snap = make_snapshot(1, utc(2025, 6, 15, 5, 0), "30")
    snap["train_number"] = None
    with pytest.raises(sqlite3.IntegrityError):
        insert_price(conn, snap)
    assert count_prices(conn) == 0
