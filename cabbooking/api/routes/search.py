"""
Search and quote endpoints
==========================

POST /api/v1/search              -- price every vehicle class for a route
GET  /api/v1/search/{search_id}  -- re-open a recent search
POST /api/v1/estimate-fare       -- price one vehicle class
"""

from fastapi import APIRouter, Depends, Request

from cabbooking.api.dependencies import get_booking_service
from cabbooking.api.middleware import RATE_LIMIT, limiter
from cabbooking.api.schemas import (
    EstimateFareRequest,
    FareResponse,
    SearchRequest,
    SearchResponse,
)
from cabbooking.services.bookings import BookingService

router = APIRouter(tags=["search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Search vehicle options for a trip",
    responses={503: {"description": "Distance service unavailable"}},
)
@limiter.limit(RATE_LIMIT)
async def search(
    request: Request,
    body: SearchRequest,
    service: BookingService = Depends(get_booking_service),
):
    return await service.search(
        trip_type=body.trip_type,
        pickup=body.pickup.to_location(),
        drop=body.drop.to_location() if body.drop else None,
        via=[v.to_location() for v in body.via],
        start_time=body.start_time,
        extras=body.to_extras(),
        include_tolls=body.include_tolls,
    )


@router.get(
    "/search/{search_id}",
    response_model=SearchResponse,
    summary="Fetch a recent search result",
)
@limiter.limit(RATE_LIMIT)
async def get_search(
    request: Request,
    search_id: str,
    service: BookingService = Depends(get_booking_service),
):
    return await service.get_search(search_id)


@router.post(
    "/estimate-fare",
    response_model=FareResponse,
    summary="Estimate the fare for one vehicle class",
)
@limiter.limit(RATE_LIMIT)
async def estimate_fare(
    request: Request,
    body: EstimateFareRequest,
    service: BookingService = Depends(get_booking_service),
):
    fare = await service.estimate(
        trip_type=body.trip_type,
        vehicle_class=body.vehicle_class,
        start_time=body.start_time,
        distance_km=body.distance_km,
        pickup=body.pickup.to_location() if body.pickup else None,
        drop=body.drop.to_location() if body.drop else None,
        via=[v.to_location() for v in body.via],
        extras=body.to_extras(),
        include_tolls=body.include_tolls,
    )
    return fare.to_dict()
