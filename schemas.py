"""
Request and response models for the JSON HTTP surface (server.py).

Prices are serialised as floats; timestamps as ISO-8601 UTC strings.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field


class RouteOut(BaseModel):
    id: int
    origin: str
    destination: str
    origin_name: str
    dest_name: str
    provider: str
    active: bool
    created_at: str
    direction: Optional[Literal["outbound", "return"]] = None


class ScrapeRequest(BaseModel):
    days: int = Field(60, ge=1, description="Departure days to scrape, capped at 120")
    purge_first: bool = True


class ScrapeStats(BaseModel):
    days_scraped: int
    outbound_prices: int
    return_prices: int
    errors: int
    duration_s: float


class ScrapeResponse(BaseModel):
    success: bool
    message: str
    stats: ScrapeStats


class CalendarFare(BaseModel):
    price: float
    train_number: str
    departure_at: str = Field(..., description="ISO datetime, UTC")
    fare_class: str
    provider: str


class CalendarDay(BaseModel):
    outbound: Optional[CalendarFare] = None
    # "return" is a keyword; exposed under its plain name
    return_: Optional[CalendarFare] = Field(None, alias="return")

    model_config = {"populate_by_name": True}


class CalendarResponse(BaseModel):
    calendar: dict[str, CalendarDay]
    routes: list[RouteOut]


class PriceOut(BaseModel):
    id: int
    route_id: int
    departure_at: str
    train_number: str
    train_type: str
    fare_class: str
    price: float
    available_seats: Optional[int] = None
    total_available: Optional[int] = None
    duration_min: int
    scraped_at: str


class PricePoint(BaseModel):
    price: float
    scraped_at: str


class PriceEvolution(BaseModel):
    train_number: str
    train_type: str
    fare_class: str
    departure_at: str
    history: list[PricePoint]


class ExportRecord(BaseModel):
    departure_date: str
    scraped_at: str
    direction: str
    provider: str
    train_number: str
    train_type: str
    fare_class: str
    price: float
    available_seats: Optional[int] = None
    total_available: Optional[int] = None


class ExportResponse(BaseModel):
    data: list[ExportRecord]
    count: int


class LastUpdate(BaseModel):
    last_update: Optional[str] = None


class CleanupResult(BaseModel):
    deleted: int = 0
    remaining: int = 0
    tokens: list[str]
