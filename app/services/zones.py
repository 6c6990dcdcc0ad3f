"""
Zone resolution: free-text location → coarse pricing zone.

Cheap substring heuristic, not geocoding. Kept behind the ``ZoneResolver``
protocol so a real geocoder can replace it without touching pricing or dispatch.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

# Checked in order; first hit wins. The IATA code itself must stand alone as a
# word ("Populus" is not POP), the longer phrases match anywhere in the text.
AIRPORT_ALIASES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("PUJ", ("punta cana airport",)),
    ("SDQ", ("santo domingo airport", "las americas")),
    ("LRM", ("la romana airport",)),
    ("POP", ("puerto plata",)),
)
_AIRPORT_CODE_RE = {code: re.compile(rf"\b{code}\b", re.IGNORECASE) for code, _ in AIRPORT_ALIASES}


@dataclass(frozen=True)
class HotelZoneEntry:
    hotel_name: str
    zone_code: str
    search_terms: tuple[str, ...] = field(default_factory=tuple)


class ZoneResolver(Protocol):
    def resolve(self, location: str) -> Optional[str]:
        ...


class SubstringZoneResolver:
    """
    Resolution order:
      1. airport code as a whole word, or an airport phrase
      2. hotel name contained in the text, scanning the whole table
      3. any hotel's alternate search term contained in the text
    """

    def __init__(self, hotel_zones: Iterable[HotelZoneEntry] = ()):
        self._zones = tuple(hotel_zones)

    def resolve(self, location: str) -> Optional[str]:
        if not location:
            return None
        text = location.lower()

        for code, aliases in AIRPORT_ALIASES:
            if _AIRPORT_CODE_RE[code].search(text) or any(alias in text for alias in aliases):
                return code

        for zone in self._zones:
            if zone.hotel_name and zone.hotel_name.lower() in text:
                return zone.zone_code

        for zone in self._zones:
            for term in zone.search_terms:
                if term and term.lower() in text:
                    return zone.zone_code

        return None
