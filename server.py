"""
JSON HTTP surface for the fare tracker dashboard.

Run with `python main.py serve` (uvicorn).
"""
from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from config import AGE_RESTRICTED_TOKENS, DB_PATH, DEFAULT_SCRAPE_DAYS, MAX_SCRAPE_DAYS
from database import (
    count_prices_by_class_pattern,
    delete_prices_by_class_pattern,
    get_route,
    init_db,
    last_scraped_at,
    list_active_routes,
)
from reports import build_calendar, export_history, price_evolution, recent_prices, route_direction
from schemas import (
    CalendarResponse,
    CleanupResult,
    ExportResponse,
    LastUpdate,
    PriceEvolution,
    PriceOut,
    RouteOut,
    ScrapeRequest,
    ScrapeResponse,
)
from scraper import RouteNotFoundError, run_scrape

log = logging.getLogger(__name__)

router = APIRouter(tags=["fares"])


def get_db(request: Request) -> Iterator[sqlite3.Connection]:
    conn = init_db(request.app.state.db_path)
    try:
        yield conn
    finally:
        conn.close()


def _parse_date(value: Optional[str], name: str) -> date:
    if not value:
        raise HTTPException(status_code=400, detail=f"{name} is required")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")


def _route_out(route: dict) -> RouteOut:
    return RouteOut(**route, direction=route_direction(route))


def _price_out(snap: dict) -> PriceOut:
    return PriceOut(
        **{
            **snap,
            "departure_at": snap["departure_at"].isoformat(),
            "scraped_at": snap["scraped_at"].isoformat(),
            "price": float(snap["price"]),
        }
    )


@router.get("/routes", response_model=list[RouteOut])
def get_routes(db: sqlite3.Connection = Depends(get_db)):
    return [_route_out(r) for r in list_active_routes(db)]


@router.post("/scrape", response_model=ScrapeResponse)
async def trigger_scrape(
    req: Optional[ScrapeRequest] = None,
    db: sqlite3.Connection = Depends(get_db),
):
    req = req or ScrapeRequest(days=DEFAULT_SCRAPE_DAYS)
    days = min(req.days, MAX_SCRAPE_DAYS)
    log.info("Scrape requested over HTTP for %d days", days)
    try:
        summary = await run_scrape(db, days=days, purge_first=req.purge_first)
    except RouteNotFoundError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    return ScrapeResponse(
        success=True,
        message="Scrape completed",
        stats={
            "days_scraped": summary["days"],
            "outbound_prices": summary["outbound_prices"],
            "return_prices": summary["return_prices"],
            "errors": summary["errors"],
            "duration_s": summary["duration_s"],
        },
    )


@router.get("/calendar", response_model=CalendarResponse, response_model_by_alias=True)
def get_calendar(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: sqlite3.Connection = Depends(get_db),
):
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    try:
        calendar = build_calendar(db, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "calendar": calendar,
        "routes": [_route_out(r) for r in list_active_routes(db)],
    }


@router.get("/prices", response_model=list[PriceOut])
def get_prices_for_route(
    route_id: Optional[int] = Query(None, alias="routeId"),
    days: int = Query(30, ge=1, le=365),
    fare_class: Optional[str] = Query(None, alias="class"),
    db: sqlite3.Connection = Depends(get_db),
):
    if route_id is None:
        raise HTTPException(status_code=400, detail="routeId is required")
    return [_price_out(s) for s in recent_prices(db, route_id, days=days, fare_class=fare_class)]


@router.get("/prices/history", response_model=list[PriceEvolution])
def get_price_history(
    route_id: Optional[int] = Query(None, alias="routeId"),
    departure_date: Optional[str] = Query(None, alias="departureDate"),
    db: sqlite3.Connection = Depends(get_db),
):
    if route_id is None:
        raise HTTPException(status_code=400, detail="routeId is required")
    day = _parse_date(departure_date, "departureDate")
    if get_route(db, route_id) is None:
        raise HTTPException(status_code=404, detail=f"route {route_id} not found")
    return price_evolution(db, route_id, day)


@router.get("/prices/export", response_model=ExportResponse)
def get_export(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: sqlite3.Connection = Depends(get_db),
):
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    try:
        records = export_history(db, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"data": records, "count": len(records)}


@router.get("/prices/last-update", response_model=LastUpdate)
def get_last_update(db: sqlite3.Connection = Depends(get_db)):
    ts = last_scraped_at(db)
    return {"last_update": ts.isoformat() if ts else None}


@router.get("/prices/cleanup-restricted", response_model=CleanupResult)
def count_restricted(db: sqlite3.Connection = Depends(get_db)):
    return {
        "remaining": count_prices_by_class_pattern(db, AGE_RESTRICTED_TOKENS),
        "tokens": list(AGE_RESTRICTED_TOKENS),
    }


@router.post("/prices/cleanup-restricted", response_model=CleanupResult)
def cleanup_restricted(db: sqlite3.Connection = Depends(get_db)):
    deleted = delete_prices_by_class_pattern(db, AGE_RESTRICTED_TOKENS)
    return {
        "deleted": deleted,
        "remaining": count_prices_by_class_pattern(db, AGE_RESTRICTED_TOKENS),
        "tokens": list(AGE_RESTRICTED_TOKENS),
    }


app = FastAPI(title="Train Fare Tracker API")
app.state.db_path = DB_PATH

# Dashboard is served from another origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
