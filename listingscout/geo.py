"""Geocoding and distance tiers.

OpenCage API: https://opencagedata.com/api

Endpoint: GET https://api.opencagedata.com/geocode/v1/json?q=...&key=...&limit=1

Geocoding is best effort. A service error or an empty result leaves the
listing with null coordinates and a null distance; it is never dropped.
Locations that are marketplace names rather than places ("eBay",
"Facebook Marketplace", the source's own name) are not looked up at all and
get distance 0 with null coordinates.
"""
import math
import threading
import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from .entities import CandidateListing
from .utils import logger

EARTH_RADIUS_MILES = 3959

NON_GEOGRAPHIC_LABELS = {"", "unknown location", "ebay", "facebook marketplace", "online", "nationwide", "shipping"}

Coordinates = Tuple[float, float]


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def distance_bucket(distance: Optional[float]) -> Optional[str]:
    """Reporting tier: "<100", "100-500" (both ends inclusive) or ">500"."""
    if distance is None:
        return None
    if distance < 100:
        return "<100"
    if distance <= 500:
        return "100-500"
    return ">500"


class OpenCageGeocoder:
    """OpenCage forward geocoder with a small in-memory cache."""

    BASE_URL = "https://api.opencagedata.com/geocode/v1/json"

    def __init__(self, api_key: str, session: Optional[requests.Session] = None,
                 min_interval: float = 0.1, timeout: float = 10):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.min_interval = min_interval
        self.timeout = timeout
        self.last_request_time = 0.0
        self._cache: Dict[str, Optional[Coordinates]] = {}
        self._lock = threading.Lock()

    def _wait_for_rate_limit(self):
        with self._lock:
            elapsed = time.monotonic() - self.last_request_time
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self.last_request_time = time.monotonic()

    def geocode(self, query: str) -> Optional[Coordinates]:
        if not query or not query.strip():
            return None
        key = query.strip().lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        self._wait_for_rate_limit()
        params = {"q": query.strip(), "key": self.api_key, "limit": 1, "no_annotations": 1}
        coords = None
        try:
            response = self.session.get(self.BASE_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            results = data.get("results") or []
            if results:
                geometry = results[0]["geometry"]
                coords = (float(geometry["lat"]), float(geometry["lng"]))
        except requests.exceptions.RequestException as e:
            logger.warning("Geocoding request failed for %r: %s", query, e)
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Geocoding response unreadable for %r: %s", query, e)
            return None

        with self._lock:
            self._cache[key] = coords
        return coords


class GeoResolver:
    """Adds coordinates and distance from the searcher's reference point."""

    def __init__(self, geocoder, reference: Optional[Coordinates]):
        self.geocoder = geocoder
        self.reference = reference

    @classmethod
    def for_search(cls, geocoder, location: Optional[str], default: Coordinates) -> "GeoResolver":
        """Reference point from the search's location override, else `default`."""
        reference = default
        if location and geocoder is not None:
            coords = geocoder.geocode(location)
            if coords:
                reference = coords
                logger.info("Reference location %r -> %.4f, %.4f", location, coords[0], coords[1])
            else:
                logger.info("Reference location %r not resolved, using default", location)
        return cls(geocoder, reference)

    @staticmethod
    def is_non_geographic(candidate: CandidateListing) -> bool:
        label = (candidate.location or "").strip().lower()
        return label in NON_GEOGRAPHIC_LABELS or label == candidate.source.strip().lower()

    def resolve(self, candidate: CandidateListing) -> CandidateListing:
        if candidate.synthetic or self.is_non_geographic(candidate):
            return replace(candidate, latitude=None, longitude=None, distance=0.0)
        if self.geocoder is None:
            return replace(candidate, latitude=None, longitude=None, distance=None)
        try:
            coords = self.geocoder.geocode(candidate.location)
        except Exception as e:
            logger.warning("Geocoder raised for %r: %s", candidate.location, e)
            coords = None
        if not coords:
            return replace(candidate, latitude=None, longitude=None, distance=None)
        lat, lon = coords
        distance = None
        if self.reference is not None:
            distance = round(haversine(self.reference[0], self.reference[1], lat, lon), 2)
        return replace(candidate, latitude=lat, longitude=lon, distance=distance)

    def resolve_all(self, candidates: Iterable[CandidateListing]) -> List[CandidateListing]:
        return [self.resolve(c) for c in candidates]
