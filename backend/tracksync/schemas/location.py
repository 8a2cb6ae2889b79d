"""
Schémas Pydantic du coeur embarqué : échantillons de position, trajets,
statistiques et état de synchronisation.

Ces modèles sont aussi le format de persistance du cache local
(un fichier JSON par trajet, sérialisé via model_dump_json).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def as_utc(value: datetime) -> datetime:
    """Ramène un datetime en UTC ; un datetime naïf est considéré comme UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripStatus(str, Enum):
    OPEN = "open"      # reçoit encore des échantillons
    CLOSED = "closed"  # statistiques finalisées


class SyncState(str, Enum):
    LOCAL_ONLY = "local_only"
    PENDING_PUSH = "pending_push"
    SYNCED = "synced"
    CONFLICT = "conflict"
    REJECTED = "rejected"


UNSYNCED_STATES = {SyncState.LOCAL_ONLY, SyncState.PENDING_PUSH}


class PositionSample(BaseModel):
    """Une lecture GPS brute, immuable une fois créée."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    timestamp: datetime
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    # Une précision négative reste représentable : c'est l'ingestion qui la rejette
    horizontal_accuracy_m: Optional[float] = None
    altitude_m: Optional[float] = None
    speed_mps: Optional[float] = Field(default=None, ge=0)
    heading_deg: Optional[float] = Field(default=None, ge=0, le=360)

    @field_validator("timestamp")
    @classmethod
    def timestamp_aware(cls, v: datetime) -> datetime:
        return as_utc(v)


class TripStats(BaseModel):
    """Agrégats dérivés des échantillons, jamais édités à la main."""

    total_distance_m: float = 0.0
    total_duration_s: float = 0.0
    average_speed_mps: float = 0.0
    max_speed_mps: float = 0.0
    elevation_gain_m: float = 0.0
    elevation_loss_m: float = 0.0


class SyncInfo(BaseModel):
    """Suivi de synchronisation d'un trajet, tenu par le réconciliateur."""

    state: SyncState = SyncState.LOCAL_ONLY
    remote_id: Optional[uuid.UUID] = None
    remote_updated_at: Optional[datetime] = None  # marqueur de la copie distante connue
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


class Trip(BaseModel):
    """
    Trajet : séquence chronologique d'échantillons (ids uniques).
    L'id sert aussi de clé d'idempotence lors du push (clientUuid).
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: TripStatus = TripStatus.OPEN
    samples: List[PositionSample] = []
    stats: TripStats = Field(default_factory=TripStats)
    sync: SyncInfo = Field(default_factory=SyncInfo)
    revision: int = 0
    modified_at: datetime = Field(default_factory=utcnow)

    @property
    def start_time(self) -> Optional[datetime]:
        return self.samples[0].timestamp if self.samples else None

    @property
    def end_time(self) -> Optional[datetime]:
        return self.samples[-1].timestamp if self.samples else None

    def edited(self, **changes) -> "Trip":
        """
        Copie du trajet après une modification locale.

        Incrémente la révision ; un trajet synchronisé repasse en attente de
        push, un trajet rejeté redevient poussable. Un conflit reste un conflit
        tant qu'il n'est pas résolu explicitement.
        """
        sync = self.sync
        if sync.state == SyncState.SYNCED:
            sync = sync.model_copy(update={"state": SyncState.PENDING_PUSH})
        elif sync.state == SyncState.REJECTED:
            state = SyncState.PENDING_PUSH if sync.remote_id else SyncState.LOCAL_ONLY
            sync = sync.model_copy(
                update={"state": state, "attempts": 0, "next_attempt_at": None, "last_error": None}
            )

        changes.update(sync=sync, revision=self.revision + 1, modified_at=utcnow())
        return self.model_copy(update=changes)

    def summary(self) -> "TripSummary":
        return TripSummary(
            id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            description=self.description,
            status=self.status,
            start_time=self.start_time,
            end_time=self.end_time,
            sample_count=len(self.samples),
            stats=self.stats,
            sync_state=self.sync.state,
        )


class TripSummary(BaseModel):
    """Trajet sans ses échantillons (vues liste)."""

    id: uuid.UUID
    owner_id: Optional[str]
    name: str
    description: Optional[str]
    status: TripStatus
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    sample_count: int
    stats: TripStats
    sync_state: SyncState


class DateRange(BaseModel):
    """Intervalle inclusif appliqué à l'heure de début des trajets."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment <= self.end
