"""
Router du store distant des trajets.
CRUD complet, liste paginée filtrable, export GPX et agrégats par période.
Toutes les routes exigent un jeton Bearer ; un appareil ne voit que ses trajets.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from tracksync.auth import get_current_owner
from tracksync.database import get_db
from tracksync.schemas.route import (
    RouteCreate,
    RouteListResponse,
    RouteResponse,
    RouteStatsSummary,
    RouteUpdate,
)
from tracksync.services import gpx_service, route_service
from tracksync.services.route_mapping import route_to_trip

router = APIRouter(prefix="/api/v1/routes", tags=["Trajets"])


@router.post("", response_model=RouteResponse, status_code=201, summary="Enregistrer un trajet")
def create_route(
    data: RouteCreate,
    response: Response,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """
    Enregistre un trajet et ses positions (au moins 2).
    Les statistiques sont recalculées côté serveur.

    Idempotent : un clientUuid déjà reçu renvoie le trajet existant avec un 200,
    sans créer de doublon.
    """
    route, created = route_service.create_route(db, owner_id, data)
    if not created:
        response.status_code = 200
    return route


@router.get("", response_model=RouteListResponse, summary="Lister les trajets")
def list_routes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None, max_length=100),
    updated_since: Optional[datetime] = Query(None, alias="updatedSince"),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """
    Liste paginée des trajets, du plus récent au plus ancien.
    Filtres : intervalle sur l'heure de début, recherche dans le nom et la description,
    et updatedSince pour les pull incrémentaux (trié par modification).
    """
    return route_service.list_routes(
        db, owner_id,
        page=page, limit=limit,
        start_date=start_date, end_date=end_date,
        search=search, updated_since=updated_since,
    )


@router.get("/stats/summary", response_model=RouteStatsSummary, summary="Statistiques sur une période")
def stats_summary(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Totaux des trajets des `days` derniers jours et les 5 plus récents."""
    return route_service.stats_summary(db, owner_id, days)


@router.get("/{route_id}", response_model=RouteResponse, summary="Détail d'un trajet")
def get_route(
    route_id: uuid.UUID,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Retourne un trajet avec ses positions dans l'ordre chronologique."""
    route = route_service.get_route(db, owner_id, route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Trajet introuvable.")
    return route


@router.put("/{route_id}", response_model=RouteResponse, summary="Modifier un trajet")
def update_route(
    route_id: uuid.UUID,
    data: RouteUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """
    Met à jour les informations d'un trajet.
    Seuls les champs fournis sont modifiés ; locations remplace toutes les positions.
    """
    try:
        route = route_service.update_route(db, owner_id, route_id, data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if route is None:
        raise HTTPException(status_code=404, detail="Trajet introuvable.")
    return route


@router.delete("/{route_id}", status_code=204, summary="Supprimer un trajet")
def delete_route(
    route_id: uuid.UUID,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Supprime définitivement un trajet et ses positions."""
    if not route_service.delete_route(db, owner_id, route_id):
        raise HTTPException(status_code=404, detail="Trajet introuvable.")


@router.get("/{route_id}/export", summary="Exporter un trajet en GPX")
def export_route(
    route_id: uuid.UUID,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Télécharge le trajet au format GPX 1.1 (une piste, un point par position)."""
    route = route_service.get_route(db, owner_id, route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Trajet introuvable.")

    filename = gpx_service.export_filename(route.name)
    return Response(
        content=gpx_service.encode_gpx(route_to_trip(route, owner_id)),
        media_type=gpx_service.GPX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
