"""
Read-side views over stored fare snapshots and their terminal rendering.

Views:
  - calendar:   cheapest in-window fare per departure day and direction,
                using the most recent observation of every train/class
  - history:    flat list of every in-window snapshot (for export)
  - evolution:  price series per train/class for one route and day
  - recent:     raw snapshots captured in the last N days
"""
import csv
import logging
import sqlite3
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import IO, Iterable, Optional

from rich import box
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

from config import DIRECTIONS, OUTBOUND, PROVIDER_STATIONS, RETURN, SCHEDULES
from database import day_bounds, get_prices, list_active_routes
from timewindow import get_matcher, to_local

log = logging.getLogger(__name__)

console = Console()

EXPORT_FIELDS = [
    "departure_date", "scraped_at", "direction", "provider", "train_number",
    "train_type", "fare_class", "price", "available_seats", "total_available",
]


# ---------------------------------------------------------------------------
# Route classification
# ---------------------------------------------------------------------------
def route_direction(route: dict) -> Optional[str]:
    """Which configured direction a stored route serves, if any."""
    stations = PROVIDER_STATIONS.get(route["provider"])
    if stations is None:
        return None
    for direction in DIRECTIONS:
        sched = SCHEDULES[direction]
        if (route["origin"] == str(stations[sched["origin"]])
                and route["destination"] == str(stations[sched["destination"]])):
            return direction
    return None


def _routes_by_id(conn: sqlite3.Connection) -> dict[int, tuple[dict, str]]:
    result = {}
    for route in list_active_routes(conn):
        direction = route_direction(route)
        if direction is not None:
            result[route["id"]] = (route, direction)
    return result


def _range_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    if end < start:
        raise ValueError(f"end date {end} is before start date {start}")
    return day_bounds(start)[0], day_bounds(end)[1]


def _in_window(conn: sqlite3.Connection, start: date, end: date, match_mode: Optional[str]):
    """Yield (snapshot, route, direction) for in-window snapshots in range."""
    routes = _routes_by_id(conn)
    lo, hi = _range_bounds(start, end)
    matchers = {d: get_matcher(d, match_mode) for d in DIRECTIONS}
    for snap in get_prices(conn, routes.keys(), lo, hi):
        route, direction = routes[snap["route_id"]]
        if matchers[direction](snap["departure_at"]):
            yield snap, route, direction


def latest_observations(snapshots: Iterable[dict]) -> list[dict]:
    """Keep the most recent snapshot per (route, train, departure, class)."""
    latest: dict[tuple, dict] = {}
    for snap in snapshots:
        key = (snap["route_id"], snap["train_number"], snap["departure_at"], snap["fare_class"])
        current = latest.get(key)
        if current is None or snap["scraped_at"] >= current["scraped_at"]:
            latest[key] = snap
    return list(latest.values())


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------
def build_calendar(
    conn: sqlite3.Connection,
    start: date,
    end: date,
    match_mode: Optional[str] = None,
) -> dict[str, dict]:
    """
    {
      "2025-06-15": {
        "outbound": {"price", "train_number", "departure_at", "fare_class", "provider"} | None,
        "return":   {...} | None,
      }, ...
    }
    Days without any in-window fare are absent.
    """
    rows = list(_in_window(conn, start, end, match_mode))
    info = {snap["id"]: (route, direction) for snap, route, direction in rows}
    calendar: dict[str, dict] = {}

    for snap in latest_observations(snap for snap, _, _ in rows):
        route, direction = info[snap["id"]]
        day_key = to_local(snap["departure_at"]).date().isoformat()
        entry = calendar.setdefault(day_key, {OUTBOUND: None, RETURN: None})
        best = entry[direction]
        if best is None or snap["price"] < best["price"]:
            entry[direction] = {
                "price": snap["price"],
                "train_number": snap["train_number"],
                "departure_at": snap["departure_at"].isoformat(),
                "fare_class": snap["fare_class"],
                "provider": route["provider"],
            }
    return dict(sorted(calendar.items()))


def export_history(
    conn: sqlite3.Connection,
    start: date,
    end: date,
    match_mode: Optional[str] = None,
) -> list[dict]:
    """Every in-window snapshot in range as a flat record, oldest first."""
    records = []
    for snap, route, direction in _in_window(conn, start, end, match_mode):
        records.append({
            "departure_date": to_local(snap["departure_at"]).date().isoformat(),
            "scraped_at": snap["scraped_at"].isoformat(),
            "direction": SCHEDULES[direction]["label"],
            "provider": route["provider"],
            "train_number": snap["train_number"],
            "train_type": snap["train_type"],
            "fare_class": snap["fare_class"],
            "price": float(snap["price"]),
            "available_seats": snap["available_seats"],
            "total_available": snap["total_available"],
        })
    return records


def price_evolution(conn: sqlite3.Connection, route_id: int, day: date) -> list[dict]:
    """Price series per (train, class) for trains departing on `day` (UTC)."""
    lo, hi = day_bounds(day)
    groups: dict[tuple[str, str], dict] = {}
    snapshots = sorted(get_prices(conn, [route_id], lo, hi), key=lambda s: (s["scraped_at"], s["id"]))
    for snap in snapshots:
        key = (snap["train_number"], snap["fare_class"])
        group = groups.setdefault(key, {
            "train_number": snap["train_number"],
            "train_type": snap["train_type"],
            "fare_class": snap["fare_class"],
            "departure_at": snap["departure_at"].isoformat(),
            "history": [],
        })
        group["history"].append({
            "price": float(snap["price"]),
            "scraped_at": snap["scraped_at"].isoformat(),
        })
    return list(groups.values())


def recent_prices(
    conn: sqlite3.Connection,
    route_id: int,
    days: int = 30,
    fare_class: Optional[str] = None,
) -> list[dict]:
    """Snapshots captured in the last `days` days; newest capture first per departure."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    snapshots = get_prices(conn, [route_id], fare_class=fare_class, scraped_since=since)
    snapshots.sort(key=lambda s: s["scraped_at"], reverse=True)
    snapshots.sort(key=lambda s: s["departure_at"])
    return snapshots


def write_csv(records: list[dict], fh: IO[str]) -> None:
    writer = csv.DictWriter(fh, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for record in records:
        writer.writerow({k: ("" if v is None else v) for k, v in record.items()})


# ---------------------------------------------------------------------------
# Terminal output
# ---------------------------------------------------------------------------
def _fmt_price(entry: Optional[dict]) -> str:
    if entry is None:
        return "[dim]--[/dim]"
    return f"€{entry['price']:.2f}"


def _fmt_train(entry: Optional[dict]) -> str:
    if entry is None:
        return ""
    dep = to_local(datetime.fromisoformat(entry["departure_at"]))
    return f"{entry['train_number']} {dep:%H:%M} [dim]{entry['fare_class']}[/dim]"


def print_calendar(calendar: dict[str, dict], start: date, end: date) -> None:
    """Render the fare calendar with the cheaper direction highlighted per row."""
    console.print()
    console.print(
        f"[bold white on blue]  FARE CALENDAR  [/bold white on blue]  {start} → {end}"
        f"  ({len(calendar)} days with fares)"
    )
    console.print()

    t = Table(box=box.SIMPLE_HEAD, show_header=True, header_style="bold cyan")
    t.add_column("Date", no_wrap=True)
    t.add_column("Day", style="dim")
    t.add_column(SCHEDULES[OUTBOUND]["label"], justify="right")
    t.add_column("Train", no_wrap=True)
    t.add_column(SCHEDULES[RETURN]["label"], justify="right")
    t.add_column("Train", no_wrap=True)
    t.add_column("Round trip", justify="right", style="bold")

    for day_key, entry in calendar.items():
        out, ret = entry[OUTBOUND], entry[RETURN]
        total = f"€{out['price'] + ret['price']:.2f}" if out and ret else "[dim]--[/dim]"
        t.add_row(
            day_key,
            date.fromisoformat(day_key).strftime("%a"),
            _fmt_price(out),
            _fmt_train(out),
            _fmt_price(ret),
            _fmt_train(ret),
            total,
        )
    console.print(t)


def print_routes(routes: list[dict]) -> None:
    console.print(Rule("[bold]ROUTES[/bold]"))
    t = Table(box=box.SIMPLE_HEAD, show_header=True, header_style="bold cyan")
    t.add_column("ID", justify="right")
    t.add_column("Provider")
    t.add_column("From")
    t.add_column("To")
    t.add_column("Codes", style="dim")
    t.add_column("Direction")
    for route in routes:
        t.add_row(
            str(route["id"]),
            route["provider"],
            route["origin_name"],
            route["dest_name"],
            f"{route['origin']} → {route['destination']}",
            route_direction(route) or "[dim]--[/dim]",
        )
    console.print(t)


def print_evolution(groups: list[dict], route: dict, day: date) -> None:
    console.print(Rule(f"[bold]{route['origin_name']} → {route['dest_name']}  {day}[/bold]"))
    if not groups:
        console.print("[dim]No snapshots for this day.[/dim]")
        return

    t = Table(box=box.SIMPLE_HEAD, show_header=True, header_style="bold cyan")
    t.add_column("Train", style="bold")
    t.add_column("Class")
    t.add_column("N", justify="right")
    t.add_column("First", justify="right")
    t.add_column("Last", justify="right")
    t.add_column("Min", justify="right")
    t.add_column("Max", justify="right")
    t.add_column("Trend")

    for g in groups:
        prices = [h["price"] for h in g["history"]]
        first, last = prices[0], prices[-1]
        if last > first:
            trend = "[red]▲[/red]"
        elif last < first:
            trend = "[green]▼[/green]"
        else:
            trend = "[dim]=[/dim]"
        t.add_row(
            g["train_number"],
            g["fare_class"],
            str(len(prices)),
            f"€{first:.2f}",
            f"€{last:.2f}",
            f"€{min(prices):.2f}",
            f"€{max(prices):.2f}",
            trend,
        )
    console.print(t)
