"""
HTTP client for the two booking APIs.

  - Trenitalia (lefrecce.it): POST /ticket/solutions with numeric location
    IDs and an ISO-8601 UTC anchor; returns up to `limit` departures from
    that anchor onwards.
  - Italo: POST /booking/search with three-letter station codes and a
    departure date; returns the whole day.

Failure policy: a non-2xx status, a transport error or an unparseable body
yields an empty list. A call whose proxy fails is repeated once without the
proxy; nothing else is retried and the collector logs and moves on.
"""
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx

from config import (
    API_TIMEOUT_S,
    ITALO,
    ITALO_SEARCH_URL,
    TRENITALIA,
    TRENITALIA_RESULT_LIMIT,
    TRENITALIA_SOLUTIONS_URL,
    USER_AGENT,
)
from fares import Journey, extract_journeys
from proxy import ProxyCache

log = logging.getLogger(__name__)

_TRENITALIA_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "Accept-Language": "it-IT,it;q=0.9,en-US;q=0.8,en;q=0.7",
    "User-Agent": USER_AGENT,
    "Origin": "https://www.lefrecce.it",
    "Referer": "https://www.lefrecce.it/",
}

_ITALO_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "Accept-Language": "it-IT,it;q=0.9",
    "User-Agent": USER_AGENT,
    "Origin": "https://www.italotreno.it",
    "Referer": "https://www.italotreno.it/",
}


# ---------------------------------------------------------------------------
# Low-level HTTP helper
# ---------------------------------------------------------------------------
async def _send(
    client: httpx.AsyncClient,
    url: str,
    payload: dict,
    headers: dict,
    proxy: Optional[str],
) -> httpx.Response:
    if proxy is None:
        return await client.post(url, json=payload, headers=headers, timeout=API_TIMEOUT_S)
    # httpx binds proxies to a client, so proxied calls get a short-lived one
    async with httpx.AsyncClient(proxy=proxy, timeout=API_TIMEOUT_S) as proxied:
        return await proxied.post(url, json=payload, headers=headers)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    payload: dict,
    headers: dict,
    proxy_cache: Optional[ProxyCache] = None,
) -> Optional[Any]:
    """
    POST `payload` and return the decoded JSON body, or None on any failure.
    """
    proxy = await proxy_cache.pick() if proxy_cache is not None else None
    try:
        if proxy is not None:
            try:
                resp = await _send(client, url, payload, headers, proxy)
            except httpx.HTTPError as exc:
                log.warning("POST %s via proxy failed, retrying direct: %r", url, exc)
                resp = await _send(client, url, payload, headers, None)
        else:
            resp = await _send(client, url, payload, headers, None)
    except httpx.HTTPError as exc:
        log.error("POST %s failed: %r", url, exc)
        return None

    if not resp.is_success:
        log.error(
            "POST %s returned HTTP %d body_snippet=%r",
            url, resp.status_code, (resp.text or "")[:200],
        )
        return None

    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log.error("POST %s returned malformed JSON: %s", url, exc)
        return None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
def _iso_utc(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def trenitalia_request_body(
    origin_id: int,
    dest_id: int,
    anchor: datetime,
    limit: int = TRENITALIA_RESULT_LIMIT,
) -> dict:
    return {
        "departureLocationId": origin_id,
        "arrivalLocationId": dest_id,
        "departureTime": _iso_utc(anchor),
        "adults": 1,
        "children": 0,
        "criteria": {
            "frecceOnly": False,
            "regionalOnly": False,
            "noChanges": False,
            "order": "DEPARTURE_DATE",
            "limit": limit,
            "offset": 0,
        },
        "advancedSearchRequest": {
            "bestFare": False,
        },
    }


def italo_request_body(origin_code: str, dest_code: str, day: date) -> dict:
    return {
        "DepartureStation": origin_code,
        "ArrivalStation": dest_code,
        "DepartureDate": day.isoformat(),
        "ReturnDate": None,
        "Adults": 1,
        "Children": 0,
        "Infants": 0,
        "YoungAdults": 0,
        "Seniors": 0,
        "CartaFreccia": None,
        "DiscountCards": [],
        "IsOneWay": True,
    }


# ---------------------------------------------------------------------------
# Public API functions
# ---------------------------------------------------------------------------
async def search_trenitalia(
    client: httpx.AsyncClient,
    origin_id: int,
    dest_id: int,
    anchor: datetime,
    proxy_cache: Optional[ProxyCache] = None,
    limit: int = TRENITALIA_RESULT_LIMIT,
) -> list[Journey]:
    """Journeys departing from `anchor` onwards, with normalised fares."""
    body = trenitalia_request_body(origin_id, dest_id, anchor, limit=limit)
    data = await post_json(client, TRENITALIA_SOLUTIONS_URL, body, _TRENITALIA_HEADERS, proxy_cache)
    if data is None:
        return []
    journeys = extract_journeys(TRENITALIA, data)
    log.info(
        "Trenitalia: %d trains for %s -> %s from %s",
        len(journeys), origin_id, dest_id, body["departureTime"],
    )
    return journeys


async def search_italo(
    client: httpx.AsyncClient,
    origin_code: str,
    dest_code: str,
    anchor: datetime,
    proxy_cache: Optional[ProxyCache] = None,
) -> list[Journey]:
    """All journeys on the anchor's date; Italo ignores the time of day."""
    day = anchor.date()
    body = italo_request_body(origin_code, dest_code, day)
    data = await post_json(client, ITALO_SEARCH_URL, body, _ITALO_HEADERS, proxy_cache)
    if data is None:
        return []
    journeys = extract_journeys(ITALO, data)
    log.info("Italo: %d trains for %s -> %s on %s", len(journeys), origin_code, dest_code, day)
    return journeys


SEARCHES = {
    TRENITALIA: search_trenitalia,
    ITALO:      search_italo,
}
