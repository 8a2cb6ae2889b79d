"""
Découpage du flux d'échantillons en trajets.

Machine à deux états par trajet : OPEN (reçoit des échantillons) et CLOSED
(statistiques finalisées). Pour chaque échantillon, on compare au trajet
ouvert :
- pas de trajet ouvert, jour calendaire différent (fuseau de référence) ou
  trou supérieur au seuil d'inactivité → on clôture le trajet courant et on
  en ouvre un nouveau avec cet échantillon ;
- sinon → ajout au trajet ouvert.

Le découpeur est pur : il ne fait aucune I/O et renvoie des événements que
l'appelant persiste. Après un redémarrage, l'appelant le rattache au trajet
ouvert relu depuis le cache via resume(), jamais depuis la mémoire.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo

from tracksync.config import settings
from tracksync.schemas.location import PositionSample, Trip, TripStatus
from tracksync.services.stats_service import compute_stats, extend_stats

logger = logging.getLogger(__name__)


class SegmentEventKind(str, Enum):
    OPENED = "opened"
    APPENDED = "appended"
    CLOSED = "closed"
    IGNORED = "ignored"  # doublon d'id ou échantillon antérieur au dernier


@dataclass(frozen=True)
class SegmentEvent:
    kind: SegmentEventKind
    trip: Trip
    sample: Optional[PositionSample] = None


class TripSegmenter:
    """Regroupe les échantillons ordonnés en trajets."""

    def __init__(
        self,
        timezone_name: Optional[str] = None,
        inactivity_gap: Optional[timedelta] = None,
        owner_id: Optional[str] = None,
    ):
        self.tz = ZoneInfo(timezone_name or settings.REFERENCE_TIMEZONE)
        self.inactivity_gap = inactivity_gap or timedelta(minutes=settings.INACTIVITY_GAP_MINUTES)
        self.owner_id = owner_id
        self._open: Optional[Trip] = None
        self._seen_ids: set = set()

    @property
    def open_trip(self) -> Optional[Trip]:
        return self._open

    def resume(self, trip: Trip) -> None:
        """Se rattache à un trajet ouvert relu depuis le cache."""
        if trip.status != TripStatus.OPEN or not trip.samples:
            raise ValueError("Seul un trajet ouvert et non vide peut être repris.")
        self._open = trip
        self._seen_ids = {s.id for s in trip.samples}
        logger.info("Reprise du trajet ouvert %s (%d échantillons)", trip.id, len(trip.samples))

    def feed(self, sample: PositionSample) -> List[SegmentEvent]:
        """Traite un échantillon et renvoie les événements produits, dans l'ordre."""
        current = self._open

        if current is not None:
            if sample.id in self._seen_ids:
                logger.debug("Échantillon %s déjà présent, ignoré", sample.id)
                return [SegmentEvent(SegmentEventKind.IGNORED, current, sample)]
            if sample.timestamp < current.samples[-1].timestamp:
                logger.warning(
                    "Échantillon %s antérieur au dernier du trajet %s, ignoré",
                    sample.id, current.id,
                )
                return [SegmentEvent(SegmentEventKind.IGNORED, current, sample)]

        events: List[SegmentEvent] = []
        if current is None or self._starts_new_trip(current, sample):
            closed = self.close()
            if closed is not None:
                events.append(closed)
            self._open = self._new_trip(sample)
            self._seen_ids = {sample.id}
            events.append(SegmentEvent(SegmentEventKind.OPENED, self._open, sample))
            return events

        self._open = current.edited(
            samples=[*current.samples, sample],
            stats=extend_stats(current.stats, current.samples, sample),
        )
        self._seen_ids.add(sample.id)
        events.append(SegmentEvent(SegmentEventKind.APPENDED, self._open, sample))
        return events

    def close(self) -> Optional[SegmentEvent]:
        """Clôture le trajet ouvert (statistiques recalculées en entier)."""
        current = self._open
        if current is None:
            return None

        closed = current.edited(status=TripStatus.CLOSED, stats=compute_stats(current.samples))
        self._open = None
        self._seen_ids = set()
        logger.info(
            "Trajet %s clôturé : %d échantillons, %.0f m",
            closed.id, len(closed.samples), closed.stats.total_distance_m,
        )
        return SegmentEvent(SegmentEventKind.CLOSED, closed)

    def update_open(self, **changes) -> Trip:
        """Modifie le trajet ouvert (nom, description) sans toucher aux échantillons."""
        if self._open is None:
            raise ValueError("Aucun trajet ouvert.")
        self._open = self._open.edited(**changes)
        return self._open

    def discard(self) -> Optional[Trip]:
        """Abandonne le trajet ouvert (supprimé par l'utilisateur)."""
        current = self._open
        self._open = None
        self._seen_ids = set()
        return current

    def day_of(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def _starts_new_trip(self, current: Trip, sample: PositionSample) -> bool:
        last = current.samples[-1]
        if self.day_of(sample.timestamp) != self.day_of(current.samples[0].timestamp):
            return True
        return sample.timestamp - last.timestamp > self.inactivity_gap

    def _new_trip(self, sample: PositionSample) -> Trip:
        local = sample.timestamp.astimezone(self.tz)
        trip = Trip(
            owner_id=self.owner_id,
            name=f"Trajet du {local:%Y-%m-%d %H:%M}",
            samples=[sample],
            stats=compute_stats([sample]),
        )
        logger.info("Nouveau trajet ouvert %s (%s)", trip.id, trip.name)
        return trip
