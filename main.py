#!/usr/bin/env python3
"""
Train Fare Tracker, CLI entry point.

Commands:
  init-routes                 Create the configured routes (idempotent)
  routes                      List active routes
  scrape [--days N]           Run one scrape over the next N departure days
  scrape --daemon             Scrape every SCRAPE_INTERVAL_S seconds (blocking)
  calendar --start D --end D  Cheapest in-window fare per day and direction
  history --route-id ID --date D
                              Price evolution for one route and departure day
  export --start D --end D [--format json|csv] [--output FILE]
  purge-restricted [--dry-run]
                              Delete stored youth/senior-only fares
  serve                       Start the JSON HTTP API
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import date, timedelta

from config import (
    AGE_RESTRICTED_TOKENS,
    DB_PATH,
    DEFAULT_SCRAPE_DAYS,
    ENABLED_PROVIDERS,
    LOG_DATE_FORMAT,
    LOG_FILE,
    LOG_FORMAT,
    MAX_SCRAPE_DAYS,
    PROVIDER_STATIONS,
    RUN_ON_START,
    SCRAPE_INTERVAL_S,
    SERVER_HOST,
    SERVER_PORT,
)
from database import (
    count_prices,
    count_prices_by_class_pattern,
    delete_prices_by_class_pattern,
    get_route,
    init_db,
    list_active_routes,
)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stderr),
    ]
    try:
        fh = logging.FileHandler(LOG_FILE, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        handlers.append(fh)
    except OSError as exc:
        print(f"Warning: could not open log file {LOG_FILE}: {exc}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
    )


def _date_arg(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def _default_range(args) -> tuple[date, date]:
    start = args.start or date.today()
    end = args.end or start + timedelta(days=30)
    return start, end


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------
def cmd_init_routes(args) -> int:
    from reports import print_routes
    from scraper import ensure_routes

    conn = init_db(args.db)
    try:
        routes = ensure_routes(conn, args.providers)
        print_routes(routes)
    finally:
        conn.close()
    return 0


def cmd_routes(args) -> int:
    from reports import print_routes

    conn = init_db(args.db)
    try:
        routes = list_active_routes(conn)
    finally:
        conn.close()
    if not routes:
        print("No routes yet. Create them with:  python main.py init-routes")
        return 0
    print_routes(routes)
    return 0


def cmd_scrape(args) -> int:
    """Run one scrape, or the interval daemon."""
    from scraper import RouteNotFoundError, run_daemon, run_scrape

    conn = init_db(args.db)
    log = logging.getLogger(__name__)
    log.info("Database has %d price snapshots. Starting scraper…", count_prices(conn))

    try:
        if args.daemon:
            asyncio.run(run_daemon(
                conn, args.interval, run_on_start=args.run_on_start or RUN_ON_START,
                days=args.days, providers=args.providers,
            ))
        else:
            summary = asyncio.run(run_scrape(
                conn, days=args.days, providers=args.providers,
                purge_first=not args.keep_existing, match_mode=args.match_mode,
            ))
            print(json.dumps(summary, indent=2))
    except RouteNotFoundError as exc:
        log.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        conn.close()
    return 0


def cmd_calendar(args) -> int:
    from reports import build_calendar, print_calendar

    start, end = _default_range(args)
    conn = init_db(args.db)
    try:
        calendar = build_calendar(conn, start, end, match_mode=args.match_mode)
    finally:
        conn.close()

    if not calendar:
        print(
            "No fares stored for this range.\n"
            "Collect data with:  python main.py scrape --days 30"
        )
        return 0
    print_calendar(calendar, start, end)
    return 0


def cmd_history(args) -> int:
    from reports import print_evolution, price_evolution

    conn = init_db(args.db)
    try:
        route = get_route(conn, args.route_id)
        if route is None:
            print(f"Route {args.route_id} not found. List routes with:  python main.py routes")
            return 1
        groups = price_evolution(conn, args.route_id, args.date)
    finally:
        conn.close()
    print_evolution(groups, route, args.date)
    return 0


def cmd_export(args) -> int:
    from reports import export_history, write_csv

    start, end = _default_range(args)
    conn = init_db(args.db)
    try:
        records = export_history(conn, start, end, match_mode=args.match_mode)
    finally:
        conn.close()

    out = open(args.output, "w", encoding="utf-8", newline="") if args.output else sys.stdout
    try:
        if args.format == "csv":
            write_csv(records, out)
        else:
            json.dump({"data": records, "count": len(records)}, out, indent=2, ensure_ascii=False)
            out.write("\n")
    finally:
        if out is not sys.stdout:
            out.close()

    logging.getLogger(__name__).info("Exported %d records", len(records))
    return 0


def cmd_purge_restricted(args) -> int:
    conn = init_db(args.db)
    try:
        if args.dry_run:
            n = count_prices_by_class_pattern(conn, AGE_RESTRICTED_TOKENS)
            print(f"{n} age-restricted snapshots would be deleted.")
        else:
            n = delete_prices_by_class_pattern(conn, AGE_RESTRICTED_TOKENS)
            print(f"Deleted {n} age-restricted snapshots.")
    finally:
        conn.close()
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from server import app

    app.state.db_path = args.db
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------
def _add_range_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--start", type=_date_arg, metavar="YYYY-MM-DD",
                   help="First departure date (default: today).")
    p.add_argument("--end", type=_date_arg, metavar="YYYY-MM-DD",
                   help="Last departure date (default: start + 30 days).")
    p.add_argument("--match-mode", choices=["exact", "tolerant"],
                   help="Departure window matching (tolerant is deprecated).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trainfares",
        description="Track Roma ↔ Napoli train fares for fixed departure times.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable DEBUG-level logging to stderr.",
    )
    parser.add_argument(
        "--db",
        default=DB_PATH,
        help=f"SQLite database path (default: {DB_PATH}).",
    )

    sub = parser.add_subparsers(dest="cmd", required=True, metavar="COMMAND")

    provider_kw = dict(
        nargs="+",
        choices=sorted(PROVIDER_STATIONS),
        default=ENABLED_PROVIDERS,
        metavar="PROVIDER",
        help=f"Providers to use (default: {' '.join(ENABLED_PROVIDERS)}).",
    )

    # init-routes
    p_init = sub.add_parser("init-routes", help="Create the configured routes.")
    p_init.add_argument("--providers", **provider_kw)

    # routes
    sub.add_parser("routes", help="List active routes.")

    # scrape
    p_scrape = sub.add_parser("scrape", help="Scrape fares (use --daemon to loop).")
    p_scrape.add_argument(
        "--days",
        type=int,
        default=DEFAULT_SCRAPE_DAYS,
        help=f"Departure days ahead to scrape (max {MAX_SCRAPE_DAYS}).",
    )
    p_scrape.add_argument("--providers", **provider_kw)
    p_scrape.add_argument(
        "--keep-existing",
        action="store_true",
        help="Do not purge stored snapshots of a date before re-scraping it.",
    )
    p_scrape.add_argument("--match-mode", choices=["exact", "tolerant"])
    p_scrape.add_argument("--daemon", action="store_true", help="Scrape on a fixed interval.")
    p_scrape.add_argument(
        "--interval",
        type=float,
        default=SCRAPE_INTERVAL_S,
        help="Seconds between daemon runs.",
    )
    p_scrape.add_argument(
        "--run-on-start",
        action="store_true",
        help="Daemon: scrape immediately instead of waiting one interval.",
    )

    # calendar
    p_cal = sub.add_parser("calendar", help="Show cheapest fares per day.")
    _add_range_args(p_cal)

    # history
    p_hist = sub.add_parser("history", help="Show price evolution for one departure day.")
    p_hist.add_argument("--route-id", type=int, required=True)
    p_hist.add_argument("--date", type=_date_arg, required=True, metavar="YYYY-MM-DD")

    # export
    p_exp = sub.add_parser("export", help="Export raw in-window price history.")
    _add_range_args(p_exp)
    p_exp.add_argument("--format", choices=["json", "csv"], default="json")
    p_exp.add_argument("--output", "-o", help="Write to this file instead of stdout.")

    # purge-restricted
    p_purge = sub.add_parser("purge-restricted", help="Delete youth/senior-only fares.")
    p_purge.add_argument("--dry-run", action="store_true", help="Only count them.")

    # serve
    p_serve = sub.add_parser("serve", help="Start the JSON HTTP API.")
    p_serve.add_argument("--host", default=SERVER_HOST)
    p_serve.add_argument("--port", type=int, default=SERVER_PORT)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(verbose=getattr(args, "verbose", False))

    dispatch = {
        "init-routes": cmd_init_routes,
        "routes": cmd_routes,
        "scrape": cmd_scrape,
        "calendar": cmd_calendar,
        "history": cmd_history,
        "export": cmd_export,
        "purge-restricted": cmd_purge_restricted,
        "serve": cmd_serve,
    }

    handler = dispatch.get(args.cmd)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
