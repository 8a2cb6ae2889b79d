"""
Schémas Pydantic pour la synchronisation cache local ↔ store distant.

Stratégie : réconciliation à trois voies
- le trajet local porte l'id client (clé d'idempotence, envoyée en clientUuid)
- le marqueur de dernière synchro (updatedAt serveur) borne le pull
- une modification des deux côtés → état conflict, les deux versions sont gardées
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from tracksync.schemas.location import Trip, utcnow


class SyncMarker(BaseModel):
    """Marqueur durable de la dernière synchronisation réussie."""
    updated_since: Optional[datetime] = None  # plus grand updatedAt distant déjà vu
    last_success_at: Optional[datetime] = None


class Tombstone(BaseModel):
    """Suppression locale pas encore propagée au store distant."""
    trip_id: uuid.UUID
    remote_id: Optional[uuid.UUID] = None  # inconnu si le push n'a jamais été confirmé
    deleted_at: datetime = Field(default_factory=utcnow)


class PushOutcome(str, Enum):
    PUSHED = "pushed"        # accepté (créé, rejoué ou mis à jour)
    DEFERRED = "deferred"    # échec transitoire, retenté plus tard
    REJECTED = "rejected"    # rejet de validation, jamais retenté
    SKIPPED = "skipped"      # pas poussable (ouvert, conflit, backoff en cours)


class PushResult(BaseModel):
    trip_id: uuid.UUID
    outcome: PushOutcome
    remote_id: Optional[uuid.UUID] = None
    message: Optional[str] = None
    errors: List[dict] = []


class ConflictRecord(BaseModel):
    """Les deux versions d'un trajet en conflit, remontées à l'appelant."""
    trip_id: uuid.UUID
    local: Trip
    remote: Trip


class ReconcileReport(BaseModel):
    """Rapport d'un cycle de réconciliation."""

    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    skipped: bool = False          # un cycle était déjà en cours
    auth_failed: bool = False      # ré-authentification impossible, cycle interrompu
    pull_failed: bool = False
    pulled: int = 0
    inserted: List[str] = []
    updated: List[str] = []
    unchanged: List[str] = []
    conflicts: List[ConflictRecord] = []
    pushes: List[PushResult] = []
    deleted: List[str] = []
    errors: List[str] = []

    @property
    def pushed(self) -> List[PushResult]:
        return [p for p in self.pushes if p.outcome == PushOutcome.PUSHED]

    @property
    def rejected(self) -> List[PushResult]:
        return [p for p in self.pushes if p.outcome == PushOutcome.REJECTED]

    @property
    def deferred(self) -> List[PushResult]:
        return [p for p in self.pushes if p.outcome == PushOutcome.DEFERRED]
