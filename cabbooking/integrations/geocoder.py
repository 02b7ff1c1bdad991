"""
Road distance between stops.

``GoogleDistanceMatrix`` asks the Distance Matrix API for every leg of the
route (pickup, via stops, drop) and sums them.  ``StraightLineDistance`` is
the local fallback when no API key is configured: it needs coordinates on
every stop and applies the road factor to the great-circle distance.

Either way a failure to resolve a distance is a 503, not a 400: the
request itself may be fine.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx

from cabbooking.domain.distance import road_distance_km
from cabbooking.domain.money import round_km
from cabbooking.errors import BadRequestError, ServiceUnavailableError

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


def _as_query(stop: dict) -> str:
    if stop.get("lat") is not None and stop.get("lng") is not None:
        return f"{stop['lat']},{stop['lng']}"
    parts = [stop.get("address"), stop.get("city")]
    return ", ".join(p for p in parts if p)


class DistanceProvider(ABC):
    @abstractmethod
    async def route_km(self, stops: Sequence[dict]) -> float:
        """Road distance in km along *stops* (location dicts), in order."""


class StraightLineDistance(DistanceProvider):
    async def route_km(self, stops: Sequence[dict]) -> float:
        points = []
        for stop in stops:
            if stop.get("lat") is None or stop.get("lng") is None:
                raise BadRequestError(
                    f"Coordinates are required for {stop.get('city', 'every stop')}"
                )
            points.append((float(stop["lat"]), float(stop["lng"])))
        return road_distance_km(points)


class GoogleDistanceMatrix(DistanceProvider):
    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _leg_meters(self, origin: dict, destination: dict) -> int:
        try:
            response = await self._client.get(
                DISTANCE_MATRIX_URL,
                params={
                    "origins": _as_query(origin),
                    "destinations": _as_query(destination),
                    "units": "metric",
                    "key": self.api_key,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Distance matrix request failed: %s", exc)
            raise ServiceUnavailableError("Unable to calculate distance") from exc

        data = response.json()
        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError) as exc:
            raise ServiceUnavailableError("Unable to calculate distance") from exc
        if data.get("status") != "OK" or element.get("status") != "OK":
            logger.warning(
                "Distance matrix status %s/%s for %s -> %s",
                data.get("status"), element.get("status"),
                origin.get("city"), destination.get("city"),
            )
            raise ServiceUnavailableError("Unable to calculate distance")
        return element["distance"]["value"]

    async def route_km(self, stops: Sequence[dict]) -> float:
        meters = 0
        for origin, destination in zip(stops, stops[1:]):
            meters += await self._leg_meters(origin, destination)
        return round_km(meters / 1000)

    async def aclose(self) -> None:
        await self._client.aclose()
