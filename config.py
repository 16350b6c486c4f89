"""
Central configuration for the train fare tracker.
"""
import os
from datetime import time

# ---------------------------------------------------------------------------
# Station IDs
# ---------------------------------------------------------------------------
# Trenitalia (lefrecce.it) needs numeric location IDs.
# Look them up with /website/locations/search?name=<STATION>&limit=5
TRENITALIA_STATIONS = {
    "ROMA_TERMINI":     830008409,
    "NAPOLI_CENTRALE":  830009218,
    "MILANO_CENTRALE":  830008300,
    "FIRENZE_SMN":      830000601,
    "VENEZIA_SL":       830000827,
    "BOLOGNA_CENTRALE": 830005100,
    "TORINO_PN":        830000219,
}

# Italo uses three-letter station codes
ITALO_STATIONS = {
    "ROMA_TERMINI":     "ROT",
    "ROMA_TIBURTINA":   "RTI",
    "NAPOLI_CENTRALE":  "NAC",
    "NAPOLI_AFRAGOLA":  "NAA",
    "MILANO_CENTRALE":  "MIC",
    "MILANO_ROGOREDO":  "MIR",
    "FIRENZE_SMN":      "FIS",
    "VENEZIA_MESTRE":   "VEM",
    "BOLOGNA_CENTRALE": "BOC",
    "TORINO_PN":        "TOP",
}

# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
TRENITALIA = "TRENITALIA"
ITALO = "ITALO"

PROVIDER_STATIONS = {
    TRENITALIA: TRENITALIA_STATIONS,
    ITALO:      ITALO_STATIONS,
}

# Italo only accepts a departure date, so every anchor of a direction
# collapses into a single query.
DATE_ONLY_PROVIDERS = {ITALO}

# Comma-separated, e.g. "TRENITALIA,ITALO"
ENABLED_PROVIDERS = [
    p.strip().upper()
    for p in os.getenv("SCRAPE_PROVIDERS", TRENITALIA).split(",")
    if p.strip()
]

# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------
OUTBOUND = "outbound"
RETURN = "return"
DIRECTIONS = (OUTBOUND, RETURN)

SCHEDULES = {
    # ---- Roma -> Napoli, 07:00 local ----
    OUTBOUND: {
        "origin":       "ROMA_TERMINI",
        "destination":  "NAPOLI_CENTRALE",
        "origin_name":  "Roma Termini",
        "dest_name":    "Napoli Centrale",
        "local_times":  [time(7, 0)],
        # 05:00 UTC reaches 07:00 local in both summer (05:00Z) and winter (06:00Z)
        "anchors_utc":  [time(5, 0)],
        "label":        "Roma → Napoli (07:00)",
    },
    # ---- Napoli -> Roma, 16:55 / 17:00 / 17:05 local ----
    # The summer (14:55-15:05Z) and winter (15:55-16:05Z) windows do not
    # overlap, so one anchor per regime.
    RETURN: {
        "origin":       "NAPOLI_CENTRALE",
        "destination":  "ROMA_TERMINI",
        "origin_name":  "Napoli Centrale",
        "dest_name":    "Roma Termini",
        "local_times":  [time(16, 55), time(17, 0), time(17, 5)],
        "anchors_utc":  [time(14, 30), time(15, 30)],
        "label":        "Napoli → Roma (16:55-17:05)",
    },
}

# ---------------------------------------------------------------------------
# Time-window matching
# ---------------------------------------------------------------------------
# "exact" (default) or "tolerant" (deprecated, kept for comparison runs)
MATCH_MODE = os.getenv("MATCH_MODE", "exact").lower()

TOLERANT_WINDOWS = {
    OUTBOUND: {"target": time(7, 0),  "tolerance_min": 30},
    RETURN:   {"target": time(17, 0), "tolerance_min": 15},
}

# Local offsets (hours east of UTC) for the region the schedules live in
SUMMER_UTC_OFFSET_H = 2
WINTER_UTC_OFFSET_H = 1

# ---------------------------------------------------------------------------
# Fare filtering
# ---------------------------------------------------------------------------
# Youth/senior-only fares; matched case-insensitively as substrings
AGE_RESTRICTED_TOKENS = ("young", "giovani", "youth", "senior")

# Offer status meaning "on sale"
SALEABLE_STATUSES = {"SALEABLE"}

DEFAULT_FARE_CLASS = "Standard"

# ---------------------------------------------------------------------------
# API settings
# ---------------------------------------------------------------------------
TRENITALIA_SOLUTIONS_URL = (
    "https://www.lefrecce.it/Channels.Website.BFF.WEB/website/ticket/solutions"
)
TRENITALIA_RESULT_LIMIT = 20

ITALO_SEARCH_URL = "https://italoinviaggio.italotreno.it/api/booking/search"

API_TIMEOUT_S = 30
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Fixed pauses between consecutive upstream calls (no backoff)
PAUSE_BETWEEN_ANCHORS_S = 1.5
PAUSE_BETWEEN_DIRECTIONS_S = 2.0

# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------
WEBSHARE_API_KEY = os.getenv("WEBSHARE_API_KEY")
WEBSHARE_LIST_URL = (
    "https://proxy.webshare.io/api/v2/proxy/list/?mode=direct&page=1&page_size=100"
)
PROXY_CACHE_TTL_S = 300

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------
DEFAULT_SCRAPE_DAYS = int(os.getenv("SCRAPE_DAYS", "60"))
MAX_SCRAPE_DAYS = 120

SCRAPE_INTERVAL_S = int(os.getenv("SCRAPE_INTERVAL_S", str(24 * 3600)))
RUN_ON_START = os.getenv("RUN_ON_START", "false").lower() == "true"

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
DB_PATH = os.getenv("TRAINFARES_DB_PATH", "fares.db")

# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------
SERVER_HOST = os.getenv("TRAINFARES_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("TRAINFARES_PORT", "8000"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FILE = "trainfares.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
