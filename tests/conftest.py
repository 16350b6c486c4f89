from datetime import datetime, timezone
from decimal import Decimal

import pytest

from config import TRENITALIA
from database import init_db, insert_price
from scraper import ensure_routes


@pytest.fixture
def conn():
    db = init_db(":memory:")
    yield db
    db.close()


@pytest.fixture
def routes(conn):
    """{direction: route} for the Trenitalia routes."""
    outbound, ret = ensure_routes(conn, [TRENITALIA])
    return {"outbound": outbound, "return": ret}


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_snapshot(route_id, departure, price, fare_class="Standard",
                  train_number="9536", scraped_at=None, **extra):
    return {
        "route_id": route_id,
        "departure_at": departure,
        "train_number": train_number,
        "train_type": "Frecciarossa",
        "fare_class": fare_class,
        "price": Decimal(price),
        "available_seats": extra.get("available_seats"),
        "total_available": extra.get("total_available"),
        "duration_min": extra.get("duration_min", 70),
        "scraped_at": scraped_at or utc(2025, 6, 1, 8, 0),
    }


@pytest.fixture
def add_price(conn):
    def _add(route_id, departure, price, **kw):
        return insert_price(conn, make_snapshot(route_id, departure, price, **kw))
    return _add
