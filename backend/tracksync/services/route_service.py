"""
Service métier du store distant des trajets.
Création idempotente (clientUuid), liste paginée, détail, mise à jour,
suppression et agrégats sur une période.
"""

import logging
import math
import uuid
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tracksync.models.route import Route, RouteLocation
from tracksync.schemas.location import as_utc, utcnow
from tracksync.schemas.route import (
    LocationPayload,
    Pagination,
    RecentRoute,
    RouteCreate,
    RouteListResponse,
    RouteResponse,
    RouteStatsSummary,
    RouteSummary,
    RouteUpdate,
)
from tracksync.services.route_mapping import location_to_sample
from tracksync.services.stats_service import compute_stats

logger = logging.getLogger(__name__)

RECENT_ROUTES_COUNT = 5


def create_route(db: Session, owner_id: str, data: RouteCreate) -> tuple[RouteResponse, bool]:
    """
    Crée un trajet et ses positions ; les statistiques sont calculées côté serveur.

    Idempotent : si clientUuid est déjà connu pour ce propriétaire, le trajet
    existant est renvoyé tel quel. Retourne (trajet, créé).
    """
    if data.client_uuid is not None:
        existing = _find_by_client_uuid(db, owner_id, data.client_uuid)
        if existing is not None:
            logger.info("Trajet déjà reçu (clientUuid %s), renvoi de %s", data.client_uuid, existing.id)
            return _to_response(existing), False

    client_uuid = data.client_uuid or uuid.uuid4()
    route = Route(
        owner_id=owner_id,
        client_uuid=client_uuid,
        name=data.name,
        description=data.description,
        start_time=data.start_time,
        end_time=data.end_time,
    )
    _set_locations(route, data.locations)
    db.add(route)

    try:
        db.commit()
    except IntegrityError:
        # Deux envois concurrents du même clientUuid : le premier a gagné
        db.rollback()
        existing = _find_by_client_uuid(db, owner_id, client_uuid)
        if existing is None:
            raise
        return _to_response(existing), False

    db.refresh(route)
    logger.info(
        "Trajet créé : %s (%s), %d positions, %.0f m",
        route.name, route.id, len(data.locations), route.total_distance,
    )
    return _to_response(route), True


def list_routes(
    db: Session,
    owner_id: str,
    page: int = 1,
    limit: int = 20,
    start_date=None,
    end_date=None,
    search: Optional[str] = None,
    updated_since=None,
) -> RouteListResponse:
    """
    Liste paginée des trajets du propriétaire, du plus récent au plus ancien.

    Avec updated_since, seuls les trajets modifiés depuis (bornes incluses)
    sont renvoyés, triés par date de modification croissante pour que la
    pagination reste stable pendant un pull.
    """
    query = select(Route).where(Route.owner_id == owner_id)
    if start_date is not None:
        query = query.where(Route.start_time >= as_utc(start_date))
    if end_date is not None:
        query = query.where(Route.start_time <= as_utc(end_date))
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Route.name.ilike(pattern), Route.description.ilike(pattern)))

    if updated_since is not None:
        query = query.where(Route.updated_at >= as_utc(updated_since))
        query = query.order_by(Route.updated_at.asc(), Route.id)
    else:
        query = query.order_by(Route.start_time.desc(), Route.id)

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    routes = db.execute(query.offset((page - 1) * limit).limit(limit)).scalars().all()

    return RouteListResponse(
        routes=[_to_summary(r) for r in routes],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


def get_route(db: Session, owner_id: str, route_id: uuid.UUID) -> Optional[RouteResponse]:
    """Retourne un trajet par son ID, ou None s'il n'existe pas pour ce propriétaire."""
    route = _owned(db, owner_id, route_id)
    if route is None:
        return None
    return _to_response(route)


def update_route(db: Session, owner_id: str, route_id: uuid.UUID, data: RouteUpdate) -> Optional[RouteResponse]:
    """
    Met à jour les champs fournis d'un trajet.
    Si locations est fourni, toutes les positions sont remplacées et les
    statistiques recalculées. Lève ValueError si les horaires deviennent incohérents.
    """
    route = _owned(db, owner_id, route_id)
    if route is None:
        return None

    update_data = data.model_dump(exclude_unset=True, exclude_none=True, exclude={"locations"})
    for field, value in update_data.items():
        setattr(route, field, value)

    if as_utc(route.end_time) <= as_utc(route.start_time):
        db.rollback()
        raise ValueError("L'heure de fin doit être postérieure à l'heure de début.")

    if data.locations is not None:
        _set_locations(route, data.locations)

    # Un remplacement des positions seul ne déclenche pas onupdate
    route.updated_at = utcnow()
    db.commit()
    db.refresh(route)
    logger.info("Trajet mis à jour : %s (%s)", route.name, route.id)
    return _to_response(route)


def delete_route(db: Session, owner_id: str, route_id: uuid.UUID) -> bool:
    """
    Supprime définitivement un trajet et ses positions.
    Retourne True si supprimé, False si non trouvé.
    """
    route = _owned(db, owner_id, route_id)
    if route is None:
        return False

    db.delete(route)
    db.commit()
    logger.info("Trajet supprimé : %s", route_id)
    return True


def stats_summary(db: Session, owner_id: str, days: int = 30) -> RouteStatsSummary:
    """Agrégats des trajets commencés pendant les `days` derniers jours."""
    since = utcnow() - timedelta(days=days)
    routes = db.execute(
        select(Route)
        .where(Route.owner_id == owner_id, Route.start_time >= since)
        .order_by(Route.start_time.desc())
    ).scalars().all()

    total_distance = sum(r.total_distance or 0.0 for r in routes)
    total_duration = sum(r.total_duration or 0.0 for r in routes)

    return RouteStatsSummary(
        period_days=days,
        total_routes=len(routes),
        total_distance=total_distance,
        total_duration=total_duration,
        average_speed=total_distance / total_duration if total_duration > 0 else 0.0,
        max_speed=max((r.max_speed or 0.0 for r in routes), default=0.0),
        total_elevation_gain=sum(r.elevation_gain or 0.0 for r in routes),
        recent_routes=[
            RecentRoute(
                id=r.id,
                name=r.name,
                start_time=as_utc(r.start_time),
                total_distance=r.total_distance or 0.0,
                total_duration=r.total_duration or 0.0,
            )
            for r in routes[:RECENT_ROUTES_COUNT]
        ],
    )


def _owned(db: Session, owner_id: str, route_id: uuid.UUID) -> Optional[Route]:
    route = db.get(Route, route_id)
    if route is None or route.owner_id != owner_id:
        return None
    return route


def _find_by_client_uuid(db: Session, owner_id: str, client_uuid: uuid.UUID) -> Optional[Route]:
    return db.execute(
        select(Route).where(Route.owner_id == owner_id, Route.client_uuid == client_uuid)
    ).scalar_one_or_none()


def _set_locations(route: Route, locations: List[LocationPayload]) -> None:
    """Remplace les positions du trajet et recalcule ses statistiques."""
    route.locations = [
        RouteLocation(
            sequence=index,
            sample_id=loc.id,
            latitude=loc.latitude,
            longitude=loc.longitude,
            timestamp=loc.timestamp,
            altitude=loc.altitude,
            speed=loc.speed,
            accuracy=loc.accuracy,
            heading=loc.heading,
        )
        for index, loc in enumerate(locations)
    ]

    stats = compute_stats([
        location_to_sample(loc, route.client_uuid, index)
        for index, loc in enumerate(locations)
    ])
    route.total_distance = stats.total_distance_m
    route.total_duration = stats.total_duration_s
    route.average_speed = stats.average_speed_mps
    route.max_speed = stats.max_speed_mps
    route.elevation_gain = stats.elevation_gain_m
    route.elevation_loss = stats.elevation_loss_m


def _to_summary(route: Route) -> RouteSummary:
    return RouteSummary(**_summary_fields(route))


def _to_response(route: Route) -> RouteResponse:
    """Construit le schéma de réponse avec les positions dans l'ordre."""
    return RouteResponse(
        **_summary_fields(route),
        locations=[
            LocationPayload(
                id=loc.sample_id,
                latitude=loc.latitude,
                longitude=loc.longitude,
                timestamp=loc.timestamp,
                altitude=loc.altitude,
                speed=loc.speed,
                accuracy=loc.accuracy,
                heading=loc.heading,
            )
            for loc in route.locations
        ],
    )


def _summary_fields(route: Route) -> dict:
    # SQLite relit des datetimes naïfs : ils sont en UTC
    return {
        "id": route.id,
        "client_uuid": route.client_uuid,
        "name": route.name,
        "description": route.description,
        "start_time": as_utc(route.start_time),
        "end_time": as_utc(route.end_time),
        "total_distance": route.total_distance or 0.0,
        "total_duration": route.total_duration or 0.0,
        "average_speed": route.average_speed or 0.0,
        "max_speed": route.max_speed or 0.0,
        "elevation_gain": route.elevation_gain or 0.0,
        "elevation_loss": route.elevation_loss or 0.0,
        "created_at": as_utc(route.created_at),
        "updated_at": as_utc(route.updated_at),
    }
