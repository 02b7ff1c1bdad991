"""
Process-wide collaborator clients, built once from settings.

Adapters without credentials fall back to their local variant:
straight-line distance without a Maps key, log-only notifications without
an FCM key.
"""

from __future__ import annotations

from functools import lru_cache

from cabbooking.config import settings

from .gateway import PaymentGateway, RazorpayGateway
from .geocoder import DistanceProvider, GoogleDistanceMatrix, StraightLineDistance
from .notifier import FcmNotifier, LogNotifier, Notifier


@lru_cache
def get_gateway() -> PaymentGateway:
    return RazorpayGateway(
        settings.gateway_base_url,
        settings.gateway_key_id,
        settings.gateway_key_secret,
        timeout=settings.gateway_timeout_seconds,
    )


@lru_cache
def get_distance_provider() -> DistanceProvider:
    if settings.google_maps_api_key:
        return GoogleDistanceMatrix(settings.google_maps_api_key)
    return StraightLineDistance()


@lru_cache
def get_notifier() -> Notifier:
    if settings.fcm_server_key:
        return FcmNotifier(settings.fcm_server_key)
    return LogNotifier()


async def close_clients() -> None:
    for factory in (get_gateway, get_distance_provider, get_notifier):
        if factory.cache_info().currsize:
            client = factory()
            if hasattr(client, "aclose"):
                await client.aclose()
        factory.cache_clear()
