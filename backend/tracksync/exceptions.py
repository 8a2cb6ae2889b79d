"""
Taxonomie des erreurs du coeur de suivi.

Les erreurs liées à un échantillon sont absorbées par la boucle d'ingestion,
celles liées à un trajet ou à la synchronisation sont renvoyées à l'appelant
(PushResult, ReconcileReport) ; aucune ne doit faire tomber le processus hôte.
"""

import uuid
from typing import List, Optional


class TrackingError(Exception):
    """Classe de base de toutes les erreurs du coeur de suivi."""


class InvalidSample(TrackingError):
    """Échantillon rejeté (coordonnée ou précision invalide), ignoré et journalisé."""

    def __init__(self, message: str, sample_id: Optional[uuid.UUID] = None):
        super().__init__(message)
        self.sample_id = sample_id


class SegmentationRestartAmbiguity(TrackingError):
    """Plusieurs trajets ouverts dans le cache au redémarrage."""

    def __init__(self, trip_ids: List[uuid.UUID]):
        super().__init__(f"{len(trip_ids)} trajets ouverts trouvés dans le cache.")
        self.trip_ids = trip_ids


class ReconcileConflict(TrackingError):
    """Trajet modifié des deux côtés depuis la dernière synchronisation."""

    def __init__(self, trip_id: uuid.UUID):
        super().__init__(f"Conflit de synchronisation sur le trajet {trip_id}.")
        self.trip_id = trip_id


class TransientSyncFailure(TrackingError):
    """Erreur réseau ou 5xx, à retenter avec backoff."""


class TerminalSyncRejection(TrackingError):
    """Rejet de validation par le store distant, jamais retenté."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


class Unauthorized(TrackingError):
    """Jeton absent ou expiré : retentable uniquement après ré-authentification."""


class RemoteTripNotFound(TrackingError):
    """Le trajet n'existe pas (ou plus) sur le store distant."""


class TripNotFound(TrackingError):
    """Trajet absent du cache local."""

    def __init__(self, trip_id: uuid.UUID):
        super().__init__(f"Trajet {trip_id} introuvable.")
        self.trip_id = trip_id


class CacheCorruption(TrackingError):
    """Enregistrement illisible, mis en quarantaine et exclu des listes."""

    def __init__(self, trip_id: uuid.UUID, reason: str):
        super().__init__(f"Enregistrement {trip_id} illisible : {reason}")
        self.trip_id = trip_id
        self.reason = reason
