"""
Cache local durable des trajets (un fichier JSON par trajet).

Disposition sous le répertoire racine :
- trips/<id>.json       trajets (ouverts, clôturés, synchronisés ou non)
- conflicts/<id>.json   copie distante d'un trajet en conflit
- tombstones/<id>.json  suppressions locales à propager au store distant
- quarantine/           enregistrements illisibles, exclus des listes
- sync_marker.json      marqueur de la dernière synchronisation réussie

Écritures atomiques : fichier temporaire → fsync → os.replace, un crash en
cours d'écriture laisse l'ancienne version lisible. Les écritures sur des
trajets différents ne se bloquent pas ; sur un même trajet elles passent une
par une, dans l'ordre de soumission (la dernière soumise gagne).
"""

import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from tracksync.config import settings
from tracksync.exceptions import CacheCorruption, SegmentationRestartAmbiguity, TripNotFound
from tracksync.schemas.location import DateRange, Trip, TripStatus, TripSummary, utcnow
from tracksync.schemas.sync import SyncMarker, Tombstone

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MARKER_FILE = "sync_marker.json"


class _Slot:
    """File d'attente par trajet : tickets servis dans l'ordre d'émission."""

    def __init__(self):
        self.cond = threading.Condition()
        self.issued = 0
        self.served = 0


def atomic_write(path: Path, content: str) -> None:
    """Écrit content dans path de façon atomique (temp → fsync → replace)."""
    fd, tmp_path = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        # Échec avant le replace : on nettoie le temporaire
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class LocalTripCache:
    """Stockage fichier-par-trajet, sûr en cas de crash."""

    def __init__(self, root: Optional[os.PathLike] = None):
        self.root = Path(root or settings.CACHE_DIR)
        self.trips_dir = self.root / "trips"
        self.conflicts_dir = self.root / "conflicts"
        self.tombstones_dir = self.root / "tombstones"
        self.quarantine_dir = self.root / "quarantine"
        for directory in (self.trips_dir, self.conflicts_dir, self.tombstones_dir, self.quarantine_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._guard = threading.Lock()
        self._slots: dict[uuid.UUID, _Slot] = {}

    # ------------------------------------------------------------------
    # Sérialisation par trajet
    # ------------------------------------------------------------------

    @contextmanager
    def _serialized(self, trip_id: uuid.UUID) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(trip_id, _Slot())
            ticket = slot.issued
            slot.issued += 1

        with slot.cond:
            slot.cond.wait_for(lambda: slot.served == ticket)
        try:
            yield
        finally:
            with slot.cond:
                slot.served += 1
                slot.cond.notify_all()
            # Plus personne en attente : le slot est libéré
            with self._guard:
                if slot.served == slot.issued and self._slots.get(trip_id) is slot:
                    del self._slots[trip_id]

    # ------------------------------------------------------------------
    # Trajets
    # ------------------------------------------------------------------

    def _trip_path(self, trip_id: uuid.UUID) -> Path:
        return self.trips_dir / f"{trip_id}.json"

    def put(self, trip: Trip) -> None:
        """Enregistre (ou remplace) un trajet."""
        with self._serialized(trip.id):
            atomic_write(self._trip_path(trip.id), trip.model_dump_json())
        logger.debug("Trajet %s enregistré (révision %d)", trip.id, trip.revision)

    def get(self, trip_id: uuid.UUID) -> Trip:
        """Retourne un trajet. Lève TripNotFound ou CacheCorruption."""
        trip = self._load(self._trip_path(trip_id), Trip)
        if trip is None:
            raise TripNotFound(trip_id)
        return trip

    def modify(self, trip_id: uuid.UUID, mutate: Callable[[Trip], Optional[Trip]]) -> Optional[Trip]:
        """
        Lecture-modification-écriture atomique d'un trajet.

        mutate reçoit la version courante et renvoie la nouvelle (ou None pour
        ne rien écrire). Lève TripNotFound si le trajet n'existe pas.
        """
        with self._serialized(trip_id):
            current = self.get(trip_id)
            updated = mutate(current)
            if updated is not None:
                atomic_write(self._trip_path(trip_id), updated.model_dump_json())
            return updated

    def delete(self, trip_id: uuid.UUID) -> bool:
        """Supprime un trajet et son éventuelle copie en conflit. True si supprimé."""
        with self._serialized(trip_id):
            path = self._trip_path(trip_id)
            existed = path.exists()
            path.unlink(missing_ok=True)
            (self.conflicts_dir / f"{trip_id}.json").unlink(missing_ok=True)
        if existed:
            logger.info("Trajet %s supprimé du cache", trip_id)
        return existed

    def list_trips(self) -> List[Trip]:
        """Tous les trajets lisibles (les illisibles partent en quarantaine)."""
        trips = []
        for path in sorted(self.trips_dir.glob("*.json")):
            try:
                trip = self._load(path, Trip)
            except CacheCorruption:
                continue
            if trip is not None:
                trips.append(trip)
        return trips

    def list_by_date_range(self, date_range: DateRange) -> List[TripSummary]:
        """Résumés (sans échantillons) des trajets commençant dans l'intervalle, récents d'abord."""
        summaries = [
            trip.summary()
            for trip in self.list_trips()
            if date_range.contains(trip.start_time)
        ]
        summaries.sort(key=lambda s: s.start_time, reverse=True)
        return summaries

    def open_trips(self) -> List[Trip]:
        return [t for t in self.list_trips() if t.status == TripStatus.OPEN and t.samples]

    def find_open_trip(self) -> Optional[Trip]:
        """
        Trajet ouvert enregistré (référence après redémarrage).
        Lève SegmentationRestartAmbiguity s'il y en a plusieurs.
        """
        candidates = self.open_trips()
        if len(candidates) > 1:
            raise SegmentationRestartAmbiguity([t.id for t in candidates])
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------
    # Copies en conflit
    # ------------------------------------------------------------------

    def put_conflict(self, trip_id: uuid.UUID, remote_version: Trip) -> None:
        atomic_write(self.conflicts_dir / f"{trip_id}.json", remote_version.model_dump_json())

    def get_conflict(self, trip_id: uuid.UUID) -> Optional[Trip]:
        return self._load(self.conflicts_dir / f"{trip_id}.json", Trip)

    def drop_conflict(self, trip_id: uuid.UUID) -> None:
        (self.conflicts_dir / f"{trip_id}.json").unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Suppressions en attente de propagation
    # ------------------------------------------------------------------

    def add_tombstone(self, tombstone: Tombstone) -> None:
        atomic_write(self.tombstones_dir / f"{tombstone.trip_id}.json", tombstone.model_dump_json())

    def tombstones(self) -> List[Tombstone]:
        result = []
        for path in sorted(self.tombstones_dir.glob("*.json")):
            try:
                tombstone = self._load(path, Tombstone)
            except CacheCorruption:
                continue
            if tombstone is not None:
                result.append(tombstone)
        return result

    def drop_tombstone(self, trip_id: uuid.UUID) -> None:
        (self.tombstones_dir / f"{trip_id}.json").unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Marqueur de synchronisation
    # ------------------------------------------------------------------

    def read_marker(self) -> SyncMarker:
        try:
            marker = self._load(self.root / MARKER_FILE, SyncMarker)
        except CacheCorruption:
            # Marqueur perdu : le prochain pull repart de zéro
            return SyncMarker()
        return marker or SyncMarker()

    def write_marker(self, marker: SyncMarker) -> None:
        atomic_write(self.root / MARKER_FILE, marker.model_dump_json())

    # ------------------------------------------------------------------
    # Lecture et quarantaine
    # ------------------------------------------------------------------

    def quarantined(self) -> List[str]:
        """Noms des enregistrements mis en quarantaine (signal de maintenance)."""
        return sorted(p.name for p in self.quarantine_dir.iterdir() if p.is_file())

    def _load(self, path: Path, model: Type[M]) -> Optional[M]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            self._quarantine(path, str(exc))
            raise CacheCorruption(self._record_id(path), str(exc)) from exc

        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            self._quarantine(path, str(exc))
            raise CacheCorruption(self._record_id(path), str(exc)) from exc

    def _quarantine(self, path: Path, reason: str) -> None:
        target = self.quarantine_dir / f"{path.parent.name}-{path.stem}-{utcnow():%Y%m%dT%H%M%S%f}.json"
        try:
            os.replace(path, target)
        except FileNotFoundError:
            return
        logger.error("Enregistrement illisible mis en quarantaine : %s (%s)", path.name, reason)

    @staticmethod
    def _record_id(path: Path):
        try:
            return uuid.UUID(path.stem)
        except ValueError:
            return path.stem
