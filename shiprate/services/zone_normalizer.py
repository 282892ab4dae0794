"""
Zone key normalisation.

Providers spell the same zone differently ("A", "zone_a", "route_a",
"z_a", "Within State"). Rate cards and eligibility rules compare on one
canonical key, ``zone<letter>``, or ``all`` for the wildcard.
"""
import re
from typing import Optional

ALL_ZONES = "all"

# Named zones follow the A-F distance ladder
NAMED_ZONES = {
    "local": "a",
    "within_city": "a",
    "intracity": "a",
    "within_state": "b",
    "intrastate": "b",
    "regional": "c",
    "metro": "d",
    "metro_to_metro": "d",
    "national": "d",
    "rest_of_india": "d",
    "roi": "d",
    "special": "e",
    "north_east": "e",
    "ne_jk": "e",
    "remote": "f",
    "oda": "f",
}

ZONE_PATTERNS = [
    re.compile(r"^([a-f])$"),
    re.compile(r"^zone[_\-]?([a-f])$"),
    re.compile(r"^route[_\-]?([a-f])$"),
    re.compile(r"^z[_\-]?([a-f])$"),
    re.compile(r"^[a-z0-9]+(?:_[a-z0-9]+)*_([a-f])$"),
]


def _clean(raw: str) -> str:
    return re.sub(r"[\s\-]+", "_", raw.strip().lower())


def normalize_zone_key(raw: Optional[str]) -> Optional[str]:
    """
    Map a provider or card zone spelling to the canonical key.

    Returns None when the spelling is unknown so callers take their
    explicit fallback branch.
    """
    if raw is None:
        return None
    key = _clean(str(raw))
    if not key:
        return None
    if key in (ALL_ZONES, "*"):
        return ALL_ZONES
    if key in NAMED_ZONES:
        return f"zone{NAMED_ZONES[key]}"
    for pattern in ZONE_PATTERNS:
        match = pattern.match(key)
        if match:
            return f"zone{match.group(1)}"
    return None


def zone_lookup_key(raw: Optional[str]) -> Optional[str]:
    """Canonical key when known, otherwise the cleaned spelling."""
    if raw is None:
        return None
    canonical = normalize_zone_key(raw)
    if canonical:
        return canonical
    cleaned = _clean(str(raw))
    return cleaned or None


def zone_supported(zone: Optional[str], zone_support: list) -> bool:
    """Empty support lists and the ``all`` token mean no restriction."""
    keys = [zone_lookup_key(z) for z in zone_support or []]
    keys = [k for k in keys if k]
    if not keys or ALL_ZONES in keys:
        return True
    if zone is None:
        return False
    return zone_lookup_key(zone) in keys
