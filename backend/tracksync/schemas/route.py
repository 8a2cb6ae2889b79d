"""
Schémas Pydantic du contrat HTTP du store distant (JSON en camelCase).
Endpoints : /api/v1/routes

Partagés par le serveur (validation des requêtes, réponses) et par le
client HTTP du réconciliateur (sérialisation des push, lecture des pull).
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tracksync.schemas.location import as_utc

MIN_LOCATIONS = 2
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not 1 <= len(v) <= MAX_NAME_LENGTH:
        raise ValueError(f"Le nom du trajet doit contenir entre 1 et {MAX_NAME_LENGTH} caractères.")
    return v


def _clean_description(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if len(v) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(f"La description ne peut pas dépasser {MAX_DESCRIPTION_LENGTH} caractères.")
    return v


def _check_locations(v: Optional[List["LocationPayload"]]) -> Optional[List["LocationPayload"]]:
    if v is not None and len(v) < MIN_LOCATIONS:
        raise ValueError(f"Un trajet doit contenir au moins {MIN_LOCATIONS} positions.")
    return v


class LocationPayload(WireModel):
    """Une position d'un trajet, telle qu'échangée avec le store distant."""
    id: Optional[uuid.UUID] = None  # id client de l'échantillon
    latitude: float
    longitude: float
    timestamp: datetime
    altitude: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None

    @field_validator("latitude")
    @classmethod
    def latitude_in_range(cls, v: float) -> float:
        if not -90 <= v <= 90:
            raise ValueError("La latitude doit être comprise entre -90 et 90.")
        return v

    @field_validator("longitude")
    @classmethod
    def longitude_in_range(cls, v: float) -> float:
        if not -180 <= v <= 180:
            raise ValueError("La longitude doit être comprise entre -180 et 180.")
        return v

    @field_validator("speed", "accuracy")
    @classmethod
    def not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("La valeur doit être positive.")
        return v

    @field_validator("heading")
    @classmethod
    def heading_in_range(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not 0 <= v <= 360:
            raise ValueError("Le cap doit être compris entre 0 et 360.")
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_aware(cls, v: datetime) -> datetime:
        return as_utc(v)


class RouteCreate(WireModel):
    name: str
    description: Optional[str] = None
    client_uuid: Optional[uuid.UUID] = None  # clé d'idempotence générée par l'appareil
    locations: List[LocationPayload]
    start_time: datetime
    end_time: datetime

    @field_validator("name")
    @classmethod
    def name_length(cls, v: str) -> str:
        return _clean_name(v)

    @field_validator("description")
    @classmethod
    def description_length(cls, v: Optional[str]) -> Optional[str]:
        return _clean_description(v)

    @field_validator("locations")
    @classmethod
    def at_least_two_locations(cls, v: List[LocationPayload]) -> List[LocationPayload]:
        return _check_locations(v)

    @field_validator("start_time")
    @classmethod
    def start_aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("end_time")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        v = as_utc(v)
        start = info.data.get("start_time")
        if start is not None and v <= start:
            raise ValueError("L'heure de fin doit être postérieure à l'heure de début.")
        return v


class RouteUpdate(WireModel):
    """Seuls les champs fournis sont modifiés ; locations remplace toutes les positions."""
    name: Optional[str] = None
    description: Optional[str] = None
    locations: Optional[List[LocationPayload]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def name_length(cls, v: Optional[str]) -> Optional[str]:
        return _clean_name(v)

    @field_validator("description")
    @classmethod
    def description_length(cls, v: Optional[str]) -> Optional[str]:
        return _clean_description(v)

    @field_validator("locations")
    @classmethod
    def at_least_two_locations(cls, v: Optional[List[LocationPayload]]) -> Optional[List[LocationPayload]]:
        return _check_locations(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else v

    @model_validator(mode="after")
    def times_with_locations(self) -> "RouteUpdate":
        if self.locations is not None and (self.start_time is None or self.end_time is None):
            raise ValueError("startTime et endTime sont obligatoires quand locations est fourni.")
        if self.start_time is not None and self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("L'heure de fin doit être postérieure à l'heure de début.")
        return self


class RouteSummary(WireModel):
    """Trajet sans positions (liste paginée)."""
    id: uuid.UUID
    client_uuid: uuid.UUID
    name: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    total_distance: float = 0.0
    total_duration: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0
    elevation_gain: float = 0.0
    elevation_loss: float = 0.0
    created_at: datetime
    updated_at: datetime


class RouteResponse(RouteSummary):
    """Trajet complet avec ses positions dans l'ordre chronologique."""
    locations: List[LocationPayload] = []


class Pagination(WireModel):
    page: int
    limit: int
    total: int
    pages: int


class RouteListResponse(WireModel):
    routes: List[RouteSummary]
    pagination: Pagination


class RecentRoute(WireModel):
    id: uuid.UUID
    name: str
    start_time: datetime
    total_distance: float
    total_duration: float


class RouteStatsSummary(WireModel):
    """Agrégats sur une période glissante (GET /routes/stats/summary)."""
    period_days: int
    total_routes: int
    total_distance: float
    total_duration: float
    average_speed: float
    max_speed: float
    total_elevation_gain: float
    recent_routes: List[RecentRoute] = []
