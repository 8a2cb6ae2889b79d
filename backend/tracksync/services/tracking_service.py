"""
Session de suivi : point d'entrée du coeur embarqué pour l'hôte mobile.

- submit() ne fait que mettre l'échantillon en file ; un unique thread
  d'ingestion le valide, le découpe en trajets et persiste le résultat.
- Les commandes de l'utilisateur qui touchent au trajet ouvert (clôture,
  renommage, suppression) passent par la même file et rendent leur résultat
  via un Future : le découpeur n'est jamais partagé entre threads.
- stop() coupe l'ingestion immédiatement (la file est abandonnée) sans
  toucher à la synchronisation, qui tourne dans son propre worker.
- Aucune exception ne sort du thread d'ingestion : les échantillons
  invalides sont journalisés et ignorés.
"""

import logging
import queue
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional

from tracksync.exceptions import CacheCorruption, InvalidSample, SegmentationRestartAmbiguity, TripNotFound
from tracksync.schemas.location import DateRange, PositionSample, Trip, TripStatus, TripSummary
from tracksync.schemas.route import MAX_DESCRIPTION_LENGTH, MAX_NAME_LENGTH
from tracksync.services.cache_service import LocalTripCache
from tracksync.services.gpx_service import encode_gpx
from tracksync.services.ingest_service import RawSample, SampleIngestor, SamplingMode, SamplingPolicy
from tracksync.services.segment_service import SegmentEvent, SegmentEventKind, TripSegmenter
from tracksync.services.stats_service import compute_stats
from tracksync.services.sync_service import TripReconciler

logger = logging.getLogger(__name__)

_STOP = object()
POLL_INTERVAL_S = 0.2


@dataclass
class _Command:
    action: Callable[[], object]
    future: Future


def _checked_name(name: str) -> str:
    name = (name or "").strip()
    if not 1 <= len(name) <= MAX_NAME_LENGTH:
        raise ValueError(f"Le nom du trajet doit contenir entre 1 et {MAX_NAME_LENGTH} caractères.")
    return name


def _checked_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    description = description.strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(f"La description ne peut pas dépasser {MAX_DESCRIPTION_LENGTH} caractères.")
    return description


class TrackingService:
    """Relie ingestion, découpage, cache et abonnés de présentation."""

    def __init__(
        self,
        cache: LocalTripCache,
        reconciler: Optional[TripReconciler] = None,
        owner_id: Optional[str] = None,
        segmenter: Optional[TripSegmenter] = None,
        max_accuracy_m: Optional[float] = None,
        policies: Optional[dict[SamplingMode, SamplingPolicy]] = None,
    ):
        self.cache = cache
        self.reconciler = reconciler
        self.segmenter = segmenter or TripSegmenter(owner_id=owner_id)
        self.ingestor = SampleIngestor(self._on_accepted, max_accuracy_m=max_accuracy_m, policies=policies)

        self._queue: queue.Queue = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # Exécution des commandes quand le thread d'ingestion ne tourne pas
        self._inline_lock = threading.RLock()

        self._listeners_lock = threading.Lock()
        self._sample_listeners: List[Callable[[Trip, PositionSample], None]] = []
        self._closed_listeners: List[Callable[[Trip], None]] = []
        self._mode_listeners: List[Callable[[SamplingMode], None]] = []

    # ------------------------------------------------------------------
    # Cycle de vie
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """Reprend le trajet ouvert du cache puis démarre le thread d'ingestion."""
        if self.running:
            return

        with self._inline_lock:
            self._resume_open_trip()
            self.ingestor.reset()

        self._stop_event.clear()
        self._queue = queue.Queue()
        self._thread = threading.Thread(target=self._intake_loop, name="tracksync-intake", daemon=True)
        self._thread.start()
        logger.info("Session de suivi démarrée (mode %s)", self.ingestor.mode.value)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Coupe l'ingestion : les éléments encore en file sont abandonnés."""
        thread = self._thread
        if thread is None:
            return

        self._stop_event.set()
        discarded = self._drain()
        self._queue.put(_STOP)
        thread.join(timeout)
        self._thread = None
        logger.info("Session de suivi arrêtée (%d éléments en attente abandonnés)", discarded)

    def submit(self, raw: RawSample) -> bool:
        """Met un échantillon brut en file. False si la session est arrêtée (échantillon abandonné)."""
        if not self.running:
            logger.debug("Session arrêtée, échantillon abandonné")
            return False
        self._queue.put(raw)
        return True

    def _resume_open_trip(self) -> None:
        try:
            trip = self.cache.find_open_trip()
        except SegmentationRestartAmbiguity as e:
            logger.warning("%s Seul le plus récent reste ouvert.", e)
            candidates = sorted(self.cache.open_trips(), key=lambda t: t.end_time)
            trip = candidates[-1]
            for stale in candidates[:-1]:
                closed = stale.edited(status=TripStatus.CLOSED, stats=compute_stats(stale.samples))
                self.cache.put(closed)
                self._notify(self._closed_listeners, closed)

        if trip is not None and self.segmenter.open_trip is None:
            self.segmenter.resume(trip)

    # ------------------------------------------------------------------
    # Thread d'ingestion
    # ------------------------------------------------------------------

    def _intake_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                item = self._queue.get(timeout=POLL_INTERVAL_S)
            except queue.Empty:
                continue
            if item is _STOP or self._stop_event.is_set():
                if isinstance(item, _Command):
                    item.future.cancel()
                break

            if isinstance(item, _Command):
                self._run_command(item)
            else:
                self._ingest(item)

    def _ingest(self, raw: RawSample) -> None:
        try:
            self.ingestor.accept(raw)
        except InvalidSample as e:
            logger.warning("Échantillon rejeté : %s", e)
        except Exception:
            logger.exception("Erreur inattendue lors de l'ingestion d'un échantillon")

    def _on_accepted(self, sample: PositionSample) -> None:
        self._apply(self.segmenter.feed(sample))

    def _apply(self, events: List[SegmentEvent]) -> None:
        for event in events:
            if event.kind == SegmentEventKind.IGNORED:
                continue
            self._persist(event.trip)
            if event.kind == SegmentEventKind.CLOSED:
                self._notify(self._closed_listeners, event.trip)
            else:
                self._notify(self._sample_listeners, event.trip, event.sample)

    def _persist(self, trip: Trip) -> None:
        try:
            self.cache.put(trip)
        except OSError:
            logger.exception("Écriture du trajet %s impossible", trip.id)

    def _run_command(self, command: _Command) -> None:
        if not command.future.set_running_or_notify_cancel():
            return
        try:
            command.future.set_result(command.action())
        except Exception as e:
            command.future.set_exception(e)

    def _drain(self) -> int:
        discarded = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return discarded
            if isinstance(item, _Command):
                item.future.cancel()
            discarded += 1

    def _call_in_intake(self, action: Callable[[], object], timeout: Optional[float] = None):
        """
        Exécute action dans le thread d'ingestion et attend son résultat.
        Lève CancelledError si la session s'arrête avant son exécution.
        """
        if threading.current_thread() is self._thread:
            return action()
        if not self.running:
            with self._inline_lock:
                return action()

        future: Future = Future()
        self._queue.put(_Command(action, future))
        return future.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Commandes de l'utilisateur
    # ------------------------------------------------------------------

    def finish_trip(self, name: Optional[str] = None, description: Optional[str] = None) -> Optional[Trip]:
        """Clôture le trajet ouvert (enregistrement manuel). None s'il n'y en a pas."""
        changes = {}
        if name is not None:
            changes["name"] = _checked_name(name)
        if description is not None:
            changes["description"] = _checked_description(description)

        def action() -> Optional[Trip]:
            if self.segmenter.open_trip is None:
                return None
            if changes:
                self.segmenter.update_open(**changes)
            event = self.segmenter.close()
            self.ingestor.reset()
            self._apply([event])
            return event.trip

        return self._call_in_intake(action)

    def rename_trip(self, trip_id: uuid.UUID, name: str, description: Optional[str] = None) -> Trip:
        """Renomme un trajet (et remplace sa description si elle est fournie)."""
        changes = {"name": _checked_name(name)}
        if description is not None:
            changes["description"] = _checked_description(description)

        def action() -> Trip:
            open_trip = self.segmenter.open_trip
            if open_trip is not None and open_trip.id == trip_id:
                renamed = self.segmenter.update_open(**changes)
                self._persist(renamed)
                return renamed
            return self.cache.modify(trip_id, lambda trip: trip.edited(**changes))

        trip = self._call_in_intake(action)
        logger.info("Trajet %s renommé : %s", trip_id, trip.name)
        return trip

    def delete_trip(self, trip_id: uuid.UUID) -> bool:
        """Supprime un trajet ; la suppression distante suit au prochain cycle de synchronisation."""

        def action() -> bool:
            open_trip = self.segmenter.open_trip
            if open_trip is not None and open_trip.id == trip_id:
                self.segmenter.discard()
                self.ingestor.reset()
            if self.reconciler is not None:
                return self.reconciler.delete_trip(trip_id)
            return self.cache.delete(trip_id)

        return self._call_in_intake(action)

    def export_trip(self, trip_id: uuid.UUID) -> bytes:
        """GPX du trajet. Lève TripNotFound s'il n'existe pas."""
        return encode_gpx(self.cache.get(trip_id))

    # ------------------------------------------------------------------
    # Lecture (présentation)
    # ------------------------------------------------------------------

    def get_trips_in_range(self, date_range: DateRange) -> List[TripSummary]:
        return self.cache.list_by_date_range(date_range)

    def get_trip_detail(self, trip_id: uuid.UUID) -> Optional[Trip]:
        try:
            return self.cache.get(trip_id)
        except (TripNotFound, CacheCorruption):
            return None

    # ------------------------------------------------------------------
    # Modes d'échantillonnage
    # ------------------------------------------------------------------

    def enter_background(self) -> None:
        """L'hôte passe en arrière-plan : débit réduit (changement significatif)."""
        self._switch_mode(SamplingMode.SIGNIFICANT_CHANGE)

    def enter_foreground(self) -> None:
        """Retour au premier plan : plein débit."""
        self._switch_mode(SamplingMode.FULL)

    def _switch_mode(self, mode: SamplingMode) -> None:
        if self.ingestor.mode == mode:
            return
        self.ingestor.set_mode(mode)
        self._notify(self._mode_listeners, mode)

    # ------------------------------------------------------------------
    # Abonnements
    # ------------------------------------------------------------------

    def subscribe_sample_appended(self, callback: Callable[[Trip, PositionSample], None]) -> Callable[[], None]:
        return self._subscribe(self._sample_listeners, callback)

    def subscribe_trip_closed(self, callback: Callable[[Trip], None]) -> Callable[[], None]:
        return self._subscribe(self._closed_listeners, callback)

    def subscribe_mode_changed(self, callback: Callable[[SamplingMode], None]) -> Callable[[], None]:
        return self._subscribe(self._mode_listeners, callback)

    def _subscribe(self, listeners: list, callback: Callable) -> Callable[[], None]:
        with self._listeners_lock:
            listeners.append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def _notify(self, listeners: list, *args) -> None:
        with self._listeners_lock:
            callbacks = list(listeners)
        for callback in callbacks:
            try:
                callback(*args)
            except Exception:
                logger.exception("Abonné %r en erreur", callback)
