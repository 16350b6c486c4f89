"""
Normalise provider journey payloads into fare lines.

Both booking APIs return loosely typed JSON: keys move between releases,
prices are sometimes nested ({"amount": 29.9}) and sometimes flat, and seat
counts are often missing. Every attribute is therefore read by probing an
ordered list of candidate keys before falling back to a default.

Selection rules, per fare class:
  1. Drop the class if its name is age-restricted (youth/senior only).
  2. Drop every offer whose own name is age-restricted.
  3. Pick the cheapest remaining offer that is on sale with seats > 0.
  4. Otherwise use the class's minimum-price field, if any.
  5. Otherwise omit the class.
If no class survives, a single "Standard" line priced with the journey's
top-level price is used; without one the journey has no fare lines.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from config import (
    AGE_RESTRICTED_TOKENS,
    DEFAULT_FARE_CLASS,
    ITALO,
    SALEABLE_STATUSES,
    TRENITALIA,
)
from timewindow import to_utc

log = logging.getLogger(__name__)

_CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FareLine:
    fare_class: str
    price: Decimal
    available_seats: Optional[int] = None


@dataclass(frozen=True)
class Journey:
    train_number: str
    train_type: str
    departure: datetime          # aware, UTC
    arrival: Optional[datetime]  # aware, UTC
    duration_min: int
    fares: tuple[FareLine, ...]
    total_available: Optional[int] = None

    @property
    def key(self) -> tuple[str, datetime]:
        """Identity of a physical departure, used for deduplication."""
        return (self.train_number, self.departure)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------
def first_present(obj: Any, *keys: str, default: Any = None) -> Any:
    """Return the first non-empty value among `keys` in a dict."""
    if not isinstance(obj, dict):
        return default
    for key in keys:
        value = obj.get(key)
        if value not in (None, ""):
            return value
    return default


def to_amount(value: Any) -> Optional[Decimal]:
    """
    Coerce an upstream price (number, numeric string or {"amount": x})
    into a Decimal rounded to cents. Zero and unparseable values are None.
    """
    if isinstance(value, dict):
        value = first_present(value, "amount", "Amount", "value")
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            return None
        return amount.quantize(_CENT)
    except (InvalidOperation, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into aware UTC, or None."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.debug("Unparseable timestamp %r", value)
        return None
    return to_utc(parsed)


def is_age_restricted(name: Optional[str], tokens: Iterable[str] = AGE_RESTRICTED_TOKENS) -> bool:
    lower = (name or "").lower()
    return any(token.lower() in lower for token in tokens)


# ---------------------------------------------------------------------------
# Duration parsing
# ---------------------------------------------------------------------------
_HUMAN_RE = re.compile(r"^\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*min?)?\s*$", re.IGNORECASE)
_ISO_RE = re.compile(r"^\s*P?T?(?:(\d+)H)?(?:(\d+)M)?\s*$")
_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")


def parse_duration(value: Any) -> int:
    """
    Duration in minutes from "2h 33min", "1h", "45min", "PT2H30M" or "02:30".

    Anything else yields 0.
    """
    if not isinstance(value, str) or not value.strip():
        return 0
    for pattern in (_HUMAN_RE, _ISO_RE, _CLOCK_RE):
        m = pattern.match(value)
        if m and any(m.groups()):
            hours, minutes = (int(g) if g else 0 for g in m.groups())
            return hours * 60 + minutes
    log.debug("Unparseable duration %r", value)
    return 0


# ---------------------------------------------------------------------------
# Class-level selection
# ---------------------------------------------------------------------------
def _offer_qualifies(status: Optional[str], seats: Optional[int], strict: bool) -> bool:
    """
    An offer is on sale if its status is saleable and it has seats left.
    With strict=False (Italo) missing status/seat fields do not disqualify.
    """
    if status is None:
        status_ok = not strict
    else:
        status_ok = str(status).upper() in SALEABLE_STATUSES
    if seats is None:
        seats_ok = not strict
    else:
        seats_ok = seats > 0
    return status_ok and seats_ok


def _select_class_fare(
    class_name: str,
    offers: list[dict],
    min_price: Optional[Decimal],
    tokens: Iterable[str],
) -> tuple[Optional[FareLine], Optional[int]]:
    """
    Pick the fare line for one class from normalised offers
    ({"name", "price", "seats", "status", "strict"}).

    Returns (line_or_None, reported_seat_total_or_None).
    """
    cheapest = None
    reported_seats: Optional[int] = None

    for offer in offers:
        if is_age_restricted(offer["name"], tokens):
            continue
        seats = offer["seats"]
        if seats is not None:
            reported_seats = (reported_seats or 0) + seats
        if offer["price"] is None:
            continue
        if not _offer_qualifies(offer["status"], seats, offer["strict"]):
            continue
        if cheapest is None or offer["price"] < cheapest["price"]:
            cheapest = offer

    if cheapest is not None:
        return FareLine(class_name, cheapest["price"], cheapest["seats"] or None), reported_seats
    if min_price is not None:
        return FareLine(class_name, min_price, None), reported_seats
    return None, reported_seats


def _merge_line(lines: dict[str, FareLine], line: FareLine) -> None:
    # A class reported by several grids keeps its cheapest line
    existing = lines.get(line.fare_class)
    if existing is None or line.price < existing.price:
        lines[line.fare_class] = line


def _finish_lines(
    lines: dict[str, FareLine],
    fallback_price: Optional[Decimal],
) -> tuple[FareLine, ...]:
    if lines:
        return tuple(lines.values())
    if fallback_price is not None:
        return (FareLine(DEFAULT_FARE_CLASS, fallback_price, None),)
    return ()


# ---------------------------------------------------------------------------
# Provider A: Trenitalia
# ---------------------------------------------------------------------------
def parse_trenitalia_solution(
    payload: dict,
    tokens: Iterable[str] = AGE_RESTRICTED_TOKENS,
) -> Optional[Journey]:
    """
    Convert one entry of the `solutions` array into a Journey.

    Returns None only when the departure timestamp is missing or invalid.
    """
    solution = first_present(payload, "solution", default=payload)
    departure = parse_timestamp(first_present(solution, "departureTime", "departure", "departureDate"))
    if departure is None:
        log.debug("Skipping Trenitalia solution without departure: %s", solution.get("id"))
        return None
    arrival = parse_timestamp(first_present(solution, "arrivalTime", "arrival", "arrivalDate"))

    trains = first_present(solution, "trains", "nodes", default=[])
    train = trains[0] if isinstance(trains, list) and trains else {}
    train_number = str(first_present(train, "name", "number", "trainNumber", "acronym", default="N/A"))
    train_type = str(first_present(
        train, "denomination", "trainCategory", "category", "acronym", default="Trenitalia"
    ))

    lines: dict[str, FareLine] = {}
    total: Optional[int] = None

    for grid in first_present(payload, "grids", default=[]) or []:
        for service in first_present(grid, "services", default=[]) or []:
            class_name = str(first_present(service, "name", "serviceName", default=DEFAULT_FARE_CLASS))
            if is_age_restricted(class_name, tokens):
                continue
            offers = [
                {
                    "name": first_present(offer, "name", "serviceName", default=""),
                    "price": to_amount(first_present(offer, "price", "amount")),
                    "seats": to_int(first_present(offer, "availableAmount", "availableSeats", "available")),
                    "status": first_present(offer, "status", "offerStatus"),
                    "strict": True,
                }
                for offer in first_present(service, "offers", default=[]) or []
            ]
            min_price = to_amount(first_present(service, "minPrice", "minimumPrice"))
            line, seats = _select_class_fare(class_name, offers, min_price, tokens)
            if seats is not None:
                total = (total or 0) + seats
            if line is not None:
                _merge_line(lines, line)

    fallback = to_amount(first_present(solution, "price", "minPrice"))
    return Journey(
        train_number=train_number,
        train_type=train_type,
        departure=departure,
        arrival=arrival,
        duration_min=parse_duration(first_present(solution, "duration", default="")),
        fares=_finish_lines(lines, fallback),
        total_available=total,
    )


# ---------------------------------------------------------------------------
# Provider B: Italo
# ---------------------------------------------------------------------------
def _italo_offer(fare: dict) -> dict:
    return {
        "name": first_present(fare, "FareName", "Name", default=""),
        "price": to_amount(first_present(fare, "Price", "Amount", "price")),
        "seats": to_int(first_present(fare, "AvailableSeats", "SeatsAvailable", "Availability")),
        "status": first_present(fare, "Status", "FareStatus"),
        "strict": False,
    }


def parse_italo_journey(
    payload: dict,
    tokens: Iterable[str] = AGE_RESTRICTED_TOKENS,
) -> Optional[Journey]:
    """
    Convert one entry of the `Journeys` array into a Journey.

    Low-cost fares form one class per fare name; regular fares one class
    per "<SeatClass> <FareName>" label.
    """
    departure = parse_timestamp(first_present(payload, "DepartureTime", "DepartureDate", "departureTime"))
    if departure is None:
        log.debug("Skipping Italo journey without departure: %s", payload.get("TrainNumber"))
        return None
    arrival = parse_timestamp(first_present(payload, "ArrivalTime", "ArrivalDate", "arrivalTime"))

    classes: dict[str, list[dict]] = {}
    class_min: dict[str, Optional[Decimal]] = {}

    for fare in first_present(payload, "LowCostFares", "DiscountFares", default=[]) or []:
        label = str(first_present(fare, "FareName", "Name", default="Low Cost"))
        if is_age_restricted(label, tokens):
            continue
        classes.setdefault(label, []).append(_italo_offer(fare))
        class_min.setdefault(label, to_amount(first_present(fare, "MinPrice")))

    for fare in first_present(payload, "Fares", "StandardFares", default=[]) or []:
        seat_class = str(first_present(fare, "SeatClass", "Class", default=""))
        fare_name = str(first_present(fare, "FareName", "Name", default=""))
        label = f"{seat_class} {fare_name}".strip() or DEFAULT_FARE_CLASS
        if is_age_restricted(label, tokens):
            continue
        classes.setdefault(label, []).append(_italo_offer(fare))
        class_min.setdefault(label, to_amount(first_present(fare, "MinPrice")))

    lines: dict[str, FareLine] = {}
    total: Optional[int] = None
    for label, offers in classes.items():
        line, seats = _select_class_fare(label, offers, class_min.get(label), tokens)
        if seats is not None:
            total = (total or 0) + seats
        if line is not None:
            _merge_line(lines, line)

    train_number = str(first_present(
        payload, "TrainNumber", "Number", "TrainCode", "Category", "TrainType", default="N/A"
    ))
    return Journey(
        train_number=train_number,
        train_type=str(first_present(payload, "TrainType", "Category", default="Italo")),
        departure=departure,
        arrival=arrival,
        duration_min=parse_duration(first_present(payload, "Duration", "TravelTime", default="")),
        fares=_finish_lines(lines, to_amount(first_present(payload, "Price", "MinPrice"))),
        total_available=total,
    )


# ---------------------------------------------------------------------------
# Response-level extraction
# ---------------------------------------------------------------------------
_PARSERS = {
    TRENITALIA: (("solutions",), parse_trenitalia_solution),
    ITALO:      (("Journeys", "OutboundJourneys"), parse_italo_journey),
}


def extract_journeys(
    provider: str,
    data: Any,
    tokens: Iterable[str] = AGE_RESTRICTED_TOKENS,
) -> list[Journey]:
    """
    Parse a whole provider response. Journeys without fare lines are dropped.
    """
    list_keys, parser = _PARSERS[provider]
    entries = first_present(data, *list_keys, default=[])
    if not isinstance(entries, list):
        log.warning("%s response has no journey list (keys=%s)", provider,
                    list(data) if isinstance(data, dict) else type(data).__name__)
        return []

    journeys = []
    dropped = 0
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        journey = parser(entry, tokens)
        if journey is None:
            continue
        if not journey.fares:
            dropped += 1
            continue
        journeys.append(journey)

    if dropped:
        log.debug("%s: dropped %d journeys without fares", provider, dropped)
    return journeys
