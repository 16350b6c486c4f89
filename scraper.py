"""
Snapshot collector and scrape runner for the train fare tracker.

Per departure date and direction:
  1. Query the provider at each UTC anchor of the direction
     (outbound 05:00Z; return 14:30Z and 15:30Z, one per DST regime).
  2. Merge the batches in anchor order and drop repeated
     (train number, departure) pairs, keeping the first.
  3. Keep journeys inside the local departure window (timewindow.py).
  4. Emit one snapshot per surviving fare class.

The run is strictly sequential with fixed pauses between upstream calls.
A failure while handling one date (including a failed insert) is logged and
the run continues with the next date. A missing route is fatal for the run.
"""
import asyncio
import logging
import signal
import sqlite3
import time as time_mod
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from api import SEARCHES
from config import (
    DATE_ONLY_PROVIDERS,
    DEFAULT_SCRAPE_DAYS,
    DIRECTIONS,
    ENABLED_PROVIDERS,
    MAX_SCRAPE_DAYS,
    PAUSE_BETWEEN_ANCHORS_S,
    PAUSE_BETWEEN_DIRECTIONS_S,
    PROVIDER_STATIONS,
    SCHEDULES,
    WEBSHARE_API_KEY,
)
from database import (
    delete_prices_for_date,
    ensure_route,
    find_route,
    insert_price,
    log_scrape_run,
)
from fares import Journey
from proxy import ProxyCache, make_proxy_cache
from timewindow import Matcher, anchor_instant, get_matcher

log = logging.getLogger(__name__)

Search = Callable[[datetime], Awaitable[list[Journey]]]
SearchFactory = Callable[[httpx.AsyncClient, str, str, Optional[ProxyCache]], Search]

# Global shutdown flag set by SIGTERM/SIGINT
_shutdown = False


class RouteNotFoundError(LookupError):
    """A configured route is missing from the store; run `init-routes` first."""


def _install_signal_handlers() -> None:
    def _handle(signum, frame):  # noqa: ARG001
        global _shutdown
        log.info("Signal %d received, shutting down after current run", signum)
        _shutdown = True

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
def route_codes(provider: str, direction: str) -> tuple:
    """(origin, destination) station codes of a direction for a provider."""
    stations = PROVIDER_STATIONS[provider]
    sched = SCHEDULES[direction]
    return stations[sched["origin"]], stations[sched["destination"]]


def ensure_routes(conn: sqlite3.Connection, providers: Iterable[str] = ENABLED_PROVIDERS) -> list[dict]:
    """Create every configured (provider, direction) route if missing."""
    routes = []
    for provider in providers:
        for direction in DIRECTIONS:
            origin, destination = route_codes(provider, direction)
            sched = SCHEDULES[direction]
            routes.append(ensure_route(
                conn, origin, destination, sched["origin_name"], sched["dest_name"], provider,
            ))
    log.info("Routes initialised: %d", len(routes))
    return routes


def resolve_routes(conn: sqlite3.Connection, providers: Iterable[str]) -> dict[tuple[str, str], dict]:
    """Look up the active route of every (provider, direction) or raise."""
    resolved = {}
    for provider in providers:
        for direction in DIRECTIONS:
            origin, destination = route_codes(provider, direction)
            route = find_route(conn, origin, destination, provider)
            if route is None:
                raise RouteNotFoundError(
                    f"No active {provider} route {origin} -> {destination} ({direction}); "
                    "run `main.py init-routes` first"
                )
            resolved[(provider, direction)] = route
    return resolved


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------
def anchors_for(direction: str, date_only: bool = False) -> list[time]:
    anchors = list(SCHEDULES[direction]["anchors_utc"])
    return anchors[:1] if date_only else anchors


def merge_journeys(batches: Iterable[list[Journey]]) -> list[Journey]:
    """Concatenate batches, keeping the first journey per (train, departure)."""
    seen: set = set()
    merged = []
    for batch in batches:
        for journey in batch:
            if journey.key in seen:
                continue
            seen.add(journey.key)
            merged.append(journey)
    return merged


def to_snapshots(journeys: Iterable[Journey], route_id: int, scraped_at: datetime) -> list[dict]:
    return [
        {
            "route_id": route_id,
            "departure_at": j.departure,
            "train_number": j.train_number,
            "train_type": j.train_type,
            "fare_class": fare.fare_class,
            "price": fare.price,
            "available_seats": fare.available_seats,
            "total_available": j.total_available,
            "duration_min": j.duration_min,
            "scraped_at": scraped_at,
        }
        for j in journeys
        for fare in j.fares
    ]


async def collect_snapshots(
    search: Search,
    route_id: int,
    direction: str,
    day: date,
    matcher: Optional[Matcher] = None,
    date_only: bool = False,
    pause_s: float = PAUSE_BETWEEN_ANCHORS_S,
    scraped_at: Optional[datetime] = None,
) -> list[dict]:
    """Deduplicated, window-filtered snapshots for one route/direction/date."""
    matcher = matcher or get_matcher(direction)
    scraped_at = scraped_at or datetime.now(timezone.utc)

    batches = []
    for i, anchor in enumerate(anchors_for(direction, date_only)):
        if i and pause_s > 0:
            await asyncio.sleep(pause_s)
        batches.append(await search(anchor_instant(day, anchor)))

    merged = merge_journeys(batches)
    matched = [j for j in merged if matcher(j.departure)]

    for j in matched:
        log.info(
            "  [%s] %s at %s: %d fares (seats: %s)",
            direction, j.train_number, j.departure.isoformat(), len(j.fares),
            j.total_available if j.total_available is not None else "N/A",
        )
    log.debug(
        "[%s] %s: %d raw, %d unique, %d in window",
        direction, day, sum(len(b) for b in batches), len(merged), len(matched),
    )
    return to_snapshots(matched, route_id, scraped_at)


def make_search(
    client: httpx.AsyncClient,
    provider: str,
    direction: str,
    proxy_cache: Optional[ProxyCache] = None,
) -> Search:
    """Bind a provider search function to one direction's stations."""
    origin, destination = route_codes(provider, direction)
    search_fn = SEARCHES[provider]

    async def _search(anchor: datetime) -> list[Journey]:
        return await search_fn(client, origin, destination, anchor, proxy_cache=proxy_cache)

    return _search


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
def scrape_dates(days: int, start: Optional[date] = None) -> list[date]:
    """Departure dates from the day after `start` (default: today UTC)."""
    days = max(1, min(days, MAX_SCRAPE_DAYS))
    start = start or datetime.now(timezone.utc).date()
    return [start + timedelta(days=i) for i in range(1, days + 1)]


async def scrape_days(
    conn: sqlite3.Connection,
    client: httpx.AsyncClient,
    days: int = DEFAULT_SCRAPE_DAYS,
    providers: Optional[Iterable[str]] = None,
    proxy_cache: Optional[ProxyCache] = None,
    purge_first: bool = True,
    start: Optional[date] = None,
    match_mode: Optional[str] = None,
    pause_anchor_s: float = PAUSE_BETWEEN_ANCHORS_S,
    pause_direction_s: float = PAUSE_BETWEEN_DIRECTIONS_S,
    search_factory: SearchFactory = make_search,
) -> dict:
    """
    Scrape `days` departure dates for every provider and direction.

    Raises RouteNotFoundError before any upstream call if a route is
    missing. Returns the run summary, which is also stored in scrape_runs.
    """
    providers = list(providers or ENABLED_PROVIDERS)
    routes = resolve_routes(conn, providers)
    route_ids = sorted({r["id"] for r in routes.values()})
    matchers = {d: get_matcher(d, match_mode) for d in DIRECTIONS}
    searches = {
        key: search_factory(client, key[0], key[1], proxy_cache)
        for key in routes
    }
    dates = scrape_dates(days, start)

    t0 = time_mod.monotonic()
    started_at = datetime.now(timezone.utc)
    counts = {d: 0 for d in DIRECTIONS}
    errors = 0

    log.info(
        "Starting scrape: %d days (%s .. %s), providers=%s",
        len(dates), dates[0], dates[-1], providers,
    )

    first_call = True
    for day in dates:
        try:
            if purge_first:
                deleted = delete_prices_for_date(conn, route_ids, day)
                if deleted:
                    log.debug("Purged %d snapshots for %s", deleted, day)

            for direction in DIRECTIONS:
                for provider in providers:
                    if not first_call and pause_direction_s > 0:
                        await asyncio.sleep(pause_direction_s)
                    first_call = False

                    route = routes[(provider, direction)]
                    snapshots = await collect_snapshots(
                        searches[(provider, direction)],
                        route["id"],
                        direction,
                        day,
                        matcher=matchers[direction],
                        date_only=provider in DATE_ONLY_PROVIDERS,
                        pause_s=pause_anchor_s,
                    )
                    for snapshot in snapshots:
                        insert_price(conn, snapshot)
                        counts[direction] += 1
            log.info("Scraped %s", day)
        except Exception as exc:
            errors += 1
            log.error("Error scraping %s: %s", day, exc, exc_info=True)

    summary = {
        "started_at": started_at.isoformat(timespec="seconds"),
        "providers": ",".join(providers),
        "days": len(dates),
        "outbound_prices": counts[DIRECTIONS[0]],
        "return_prices": counts[DIRECTIONS[1]],
        "errors": errors,
        "duration_s": round(time_mod.monotonic() - t0, 2),
    }
    log_scrape_run(conn, summary)
    log.info(
        "Scrape completed: %d outbound, %d return snapshots, %d errors in %.1fs",
        summary["outbound_prices"], summary["return_prices"], errors, summary["duration_s"],
    )
    return summary


async def run_scrape(
    conn: sqlite3.Connection,
    days: int = DEFAULT_SCRAPE_DAYS,
    providers: Optional[Iterable[str]] = None,
    purge_first: bool = True,
    match_mode: Optional[str] = None,
) -> dict:
    """One scrape run with its own HTTP client and proxy cache."""
    proxy_cache = make_proxy_cache(WEBSHARE_API_KEY)
    async with httpx.AsyncClient() as client:
        return await scrape_days(
            conn, client, days=days, providers=providers, proxy_cache=proxy_cache,
            purge_first=purge_first, match_mode=match_mode,
        )


async def run_daemon(
    conn: sqlite3.Connection,
    interval_s: float,
    run_on_start: bool = False,
    days: int = DEFAULT_SCRAPE_DAYS,
    providers: Optional[Iterable[str]] = None,
) -> None:
    """
    Run a scrape every `interval_s` seconds until SIGTERM / SIGINT.

    Runs are not guarded against overlap; keep a run shorter than the
    interval.
    """
    _install_signal_handlers()
    log.info("Daemon started. Interval %.0fs, run_on_start=%s", interval_s, run_on_start)

    proxy_cache = make_proxy_cache(WEBSHARE_API_KEY)
    async with httpx.AsyncClient() as client:
        first = True
        while not _shutdown:
            if not first or run_on_start:
                try:
                    await scrape_days(
                        conn, client, days=days, providers=providers, proxy_cache=proxy_cache,
                    )
                except RouteNotFoundError as exc:
                    log.error("Scheduled scrape aborted: %s", exc)
            first = False

            log.info("Next scrape in %.0fs", interval_s)
            # Sleep in small chunks to react to SIGTERM promptly
            deadline = time_mod.monotonic() + interval_s
            while not _shutdown and time_mod.monotonic() < deadline:
                await asyncio.sleep(min(10.0, deadline - time_mod.monotonic()))

    log.info("Daemon stopped.")
