# Overview: Thin geocoding/routing client for an OpenRouteService-compatible API.

"""
Every call is bounded by GEO_TIMEOUT_SECONDS and degrades to None on any
transport error, timeout, non-2xx response or empty result, with a logged
warning. Callers decide whether None is fatal.

Coordinates on the wire are [longitude, latitude]; Coordinates keeps them
named to avoid swapping.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
from flask import current_app


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass
class RouteInfo:
    distance_m: float
    duration_s: float
    coordinates: list = field(default_factory=list)
    summary: dict = field(default_factory=dict)


class OpenRouteServiceClient:
    """Geo provider backed by httpx; installed on app.extensions["geo_provider"]."""

    def __init__(self, api_key: str, base_url: str, timeout: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._geocode_cache: dict[str, Coordinates | None] = {}

    def _get(self, path: str, params: dict) -> dict | None:
        params = {"api_key": self.api_key, **params}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                resp = client.get(path, params=params)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as exc:
            current_app.logger.warning("Geo provider request %s failed: %s", path, exc)
        except ValueError as exc:
            current_app.logger.warning("Geo provider returned invalid JSON for %s: %s", path, exc)
        return None

    def geocode(self, text: str) -> Coordinates | None:
        """Resolve free-form location text to coordinates (first feature wins)."""
        if not text:
            return None
        if text in self._geocode_cache:
            return self._geocode_cache[text]

        data = self._get("/geocode/search", {"text": text})
        coords = None
        features = (data or {}).get("features") or []
        if features:
            point = (features[0].get("geometry") or {}).get("coordinates") or []
            if len(point) >= 2:
                coords = Coordinates(latitude=float(point[1]), longitude=float(point[0]))
        if coords is None:
            current_app.logger.warning("No geocoding result for %r", text)
        else:
            self._geocode_cache[text] = coords
        return coords

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteInfo | None:
        """Driving route between two points."""
        data = self._get(
            "/v2/directions/driving-car",
            {
                "start": f"{origin.longitude},{origin.latitude}",
                "end": f"{destination.longitude},{destination.latitude}",
            },
        )
        features = (data or {}).get("features") or []
        if not features:
            current_app.logger.warning("No route found between %s and %s", origin, destination)
            return None

        feature = features[0]
        props = feature.get("properties") or {}
        segments = props.get("segments") or [{}]
        return RouteInfo(
            distance_m=segments[0].get("distance", 0) or 0,
            duration_s=segments[0].get("duration", 0) or 0,
            coordinates=(feature.get("geometry") or {}).get("coordinates") or [],
            summary=props.get("summary") or {},
        )


def get_geo_provider():
    return current_app.extensions["geo_provider"]
