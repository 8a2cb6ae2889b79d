"""
Conversions entre le trajet local (Trip) et le contrat HTTP du store distant.

L'id local du trajet voyage en clientUuid : un trajet tiré du serveur
retrouve donc son id local, et un push rejoué retombe sur le même
enregistrement distant.
"""

import uuid
from typing import Optional

from tracksync.schemas.location import PositionSample, SyncInfo, SyncState, Trip, TripStatus
from tracksync.schemas.route import LocationPayload, RouteCreate, RouteResponse, RouteUpdate
from tracksync.services.stats_service import compute_stats


def sample_to_location(sample: PositionSample) -> LocationPayload:
    return LocationPayload(
        id=sample.id,
        latitude=sample.latitude,
        longitude=sample.longitude,
        timestamp=sample.timestamp,
        altitude=sample.altitude_m,
        speed=sample.speed_mps,
        accuracy=sample.horizontal_accuracy_m,
        heading=sample.heading_deg,
    )


def location_to_sample(location: LocationPayload, namespace: uuid.UUID, index: int) -> PositionSample:
    """Échantillon local ; sans id client, un id stable est dérivé de (trajet, rang)."""
    return PositionSample(
        id=location.id or uuid.uuid5(namespace, str(index)),
        timestamp=location.timestamp,
        latitude=location.latitude,
        longitude=location.longitude,
        horizontal_accuracy_m=location.accuracy,
        altitude_m=location.altitude,
        speed_mps=location.speed,
        heading_deg=location.heading,
    )


def trip_to_create_payload(trip: Trip) -> RouteCreate:
    """Corps du POST. Lève ValidationError si le trajet ne respecte pas le contrat."""
    return RouteCreate(
        name=trip.name,
        description=trip.description,
        client_uuid=trip.id,
        locations=[sample_to_location(s) for s in trip.samples],
        start_time=trip.start_time,
        end_time=trip.end_time,
    )


def trip_to_update_payload(trip: Trip) -> RouteUpdate:
    """Corps du PUT : le trajet complet remplace la copie distante."""
    return RouteUpdate(
        name=trip.name,
        description=trip.description,
        locations=[sample_to_location(s) for s in trip.samples],
        start_time=trip.start_time,
        end_time=trip.end_time,
    )


def route_to_trip(route: RouteResponse, owner_id: Optional[str] = None) -> Trip:
    """Trajet local synchronisé construit depuis la copie distante."""
    samples = [
        location_to_sample(location, route.client_uuid, index)
        for index, location in enumerate(route.locations)
    ]
    return Trip(
        id=route.client_uuid,
        owner_id=owner_id,
        name=route.name,
        description=route.description,
        status=TripStatus.CLOSED,
        samples=samples,
        stats=compute_stats(samples),
        sync=SyncInfo(
            state=SyncState.SYNCED,
            remote_id=route.id,
            remote_updated_at=route.updated_at,
        ),
        modified_at=route.updated_at,
    )
