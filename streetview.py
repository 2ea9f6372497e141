"""Street-level imagery lookup.

The scheduler only depends on the ImageryProvider protocol: one async lookup per
probe coordinate that resolves to either a miss or the canonical panorama id.
StreetViewMetadataClient implements it against the Street View Static metadata
endpoint (free, no image download).
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

STREETVIEW_METADATA_URL = "https://maps.googleapis.com/maps/api/streetview/metadata"


@dataclass(frozen=True)
class LookupResult:
    found: bool
    pano_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    heading: float = 0.0

    @classmethod
    def miss(cls) -> "LookupResult":
        return cls(found=False)


class ImageryProvider(Protocol):
    async def lookup(self, lat: float, lng: float, radius_m: int) -> LookupResult:
        ...


def parse_metadata_response(data: dict) -> LookupResult:
    """Map a metadata payload to a LookupResult. Anything but status OK is a miss."""
    if not isinstance(data, dict) or data.get("status") != "OK":
        return LookupResult.miss()
    pano_id = data.get("pano_id")
    loc = data.get("location") or {}
    try:
        lat = float(loc["lat"])
        lng = float(loc["lng"])
    except (KeyError, TypeError, ValueError):
        return LookupResult.miss()
    if not pano_id:
        return LookupResult.miss()
    try:
        heading = float(data.get("heading") or 0.0)
    except (TypeError, ValueError):
        heading = 0.0
    return LookupResult(found=True, pano_id=str(pano_id), lat=lat, lng=lng, heading=heading)


class StreetViewMetadataClient:
    def __init__(self, api_key: str, timeout: float = 10.0, source: Optional[str] = None) -> None:
        if not api_key:
            raise ValueError("GOOGLE_MAPS_API_KEY is required for Street View lookups")
        self.api_key = api_key
        self.timeout = timeout
        self.source = source  # e.g. 'outdoor' to skip indoor panoramas

    def _build_url(self, lat: float, lng: float, radius_m: int) -> str:
        params = {
            "location": f"{lat},{lng}",
            "radius": int(radius_m),
            "key": self.api_key,
        }
        if self.source:
            params["source"] = self.source
        return f"{STREETVIEW_METADATA_URL}?{urlencode(params)}"

    def fetch_metadata(self, lat: float, lng: float, radius_m: int) -> LookupResult:
        """Blocking lookup; network failures and timeouts count as empty cells."""
        req = Request(self._build_url(lat, lng, radius_m), headers={"User-Agent": "streetscan/1.0"})
        try:
            with urlopen(req, timeout=self.timeout) as r:
                data = json.loads(r.read().decode("utf-8", errors="ignore"))
        except (HTTPError, URLError, OSError, ValueError) as e:
            logger.debug("lookup failed at %.6f,%.6f: %s", lat, lng, e)
            return LookupResult.miss()
        return parse_metadata_response(data)

    async def lookup(self, lat: float, lng: float, radius_m: int) -> LookupResult:
        return await asyncio.to_thread(self.fetch_metadata, lat, lng, radius_m)
