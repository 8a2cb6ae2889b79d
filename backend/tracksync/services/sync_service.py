"""
Service de synchronisation cache local ↔ store distant.

Stratégie : réconciliation à trois voies, un cycle à la fois
0. Propage les suppressions locales en attente (tombstones) ; un 404 compte
   comme une suppression réussie.
   Un trajet supprimé avant la confirmation de son push attend que le pull
   retrouve sa copie distante (par clientUuid) pour la supprimer.
1. Pull des trajets distants modifiés depuis le marqueur (updatedAt ≥ marqueur).
2. Trajet distant inconnu localement → inséré en état synced.
3. Trajet connu :
   - local jamais confirmé (réponse du push perdue) → rattaché à la copie distante
   - copie distante identique à celle déjà vue → rien à faire
   - conflit non résolu et copie distante inchangée → rien à faire
   - local synced (pas de modification locale) → la version distante gagne
   - local modifié (local_only, pending_push, rejected, conflict) → conflict,
     les deux versions sont gardées et remontées dans le rapport
4. Push des trajets clôturés non synchronisés dont le délai de backoff est écoulé.

Idempotence : l'id local voyage en clientUuid, un push rejoué renvoie
l'enregistrement existant. Les écritures dans le cache passent par
cache.modify() et comparent la révision : une modification locale faite
pendant un push n'est jamais écrasée.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from tracksync.config import settings
from tracksync.exceptions import (
    CacheCorruption,
    ReconcileConflict,
    RemoteTripNotFound,
    TerminalSyncRejection,
    TransientSyncFailure,
    TripNotFound,
    Unauthorized,
)
from tracksync.schemas.location import UNSYNCED_STATES, SyncState, Trip, TripStatus, as_utc, utcnow
from tracksync.schemas.route import RouteResponse, RouteSummary
from tracksync.schemas.sync import (
    ConflictRecord,
    PushOutcome,
    PushResult,
    ReconcileReport,
    SyncMarker,
    Tombstone,
)
from tracksync.services.cache_service import LocalTripCache
from tracksync.services.remote_client import RemoteStore, TokenProvider
from tracksync.services.route_mapping import route_to_trip, trip_to_create_payload, trip_to_update_payload

logger = logging.getLogger(__name__)

# Premier pull : tout l'historique, trié par date de modification
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Au-delà, le délai dépasse de toute façon le plafond
MAX_BACKOFF_EXPONENT = 30


class TripReconciler:
    """Réconcilie le cache local avec le store distant."""

    def __init__(
        self,
        cache: LocalTripCache,
        remote: RemoteStore,
        token_provider: TokenProvider,
        clock: Callable[[], datetime] = utcnow,
        backoff_base_s: Optional[float] = None,
        backoff_max_s: Optional[float] = None,
        page_size: Optional[int] = None,
    ):
        self.cache = cache
        self.remote = remote
        self.token_provider = token_provider
        self.clock = clock
        self.backoff_base_s = backoff_base_s if backoff_base_s is not None else settings.SYNC_BACKOFF_BASE_SECONDS
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else settings.SYNC_BACKOFF_MAX_SECONDS
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self._cycle_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cycle complet
    # ------------------------------------------------------------------

    def reconcile(self) -> ReconcileReport:
        """
        Exécute un cycle de réconciliation et retourne son rapport.
        Un appel pendant un cycle en cours ne lance rien (rapport skipped=True).
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Cycle de synchronisation déjà en cours, appel ignoré")
            return ReconcileReport(started_at=self.clock(), finished_at=self.clock(), skipped=True)

        try:
            report = ReconcileReport(started_at=self.clock())
            try:
                self._propagate_deletions(report)
                self._pull_and_merge(report)
                self._push_pending(report)
            except Unauthorized as e:
                report.auth_failed = True
                report.errors.append(f"Authentification refusée : {e}")
                logger.warning("Ré-authentification impossible, cycle interrompu")

            report.finished_at = self.clock()
            logger.info(
                "Synchronisation terminée : %d tirés, %d insérés, %d mis à jour, %d conflits, "
                "%d poussés, %d reportés, %d rejetés, %d suppressions",
                report.pulled, len(report.inserted), len(report.updated), len(report.conflicts),
                len(report.pushed), len(report.deferred), len(report.rejected), len(report.deleted),
            )
            return report
        finally:
            self._cycle_lock.release()

    # ------------------------------------------------------------------
    # Étape 0 : suppressions
    # ------------------------------------------------------------------

    def _propagate_deletions(self, report: ReconcileReport) -> None:
        for tombstone in self.cache.tombstones():
            if tombstone.remote_id is None:
                # Id distant encore inconnu : résolu au pull
                continue
            self._send_deletion(tombstone, report)

    def _send_deletion(self, tombstone: Tombstone, report: ReconcileReport) -> None:
        try:
            self._authorized(self.remote.delete_trip, tombstone.remote_id)
        except (TransientSyncFailure, TerminalSyncRejection) as e:
            report.errors.append(f"Suppression de {tombstone.trip_id} reportée : {e}")
            logger.warning("Suppression distante de %s reportée : %s", tombstone.trip_id, e)
            return

        self.cache.drop_tombstone(tombstone.trip_id)
        report.deleted.append(str(tombstone.trip_id))

    # ------------------------------------------------------------------
    # Étapes 1 à 3 : pull et fusion
    # ------------------------------------------------------------------

    def pull(self, since: Optional[datetime]) -> List[RouteSummary]:
        """
        Résumés des trajets distants modifiés depuis since (bornes incluses).

        Pagination par curseur : chaque page repart du dernier updatedAt vu,
        un trajet modifié pendant le pull passe en fin de liste sans décaler
        les suivants. Un trajet vu deux fois garde son résumé le plus récent.
        """
        by_id: Dict[uuid.UUID, RouteSummary] = {}
        cursor = as_utc(since) if since is not None else EPOCH
        page = 1
        while True:
            listing = self._authorized(
                self.remote.list_trips, updated_since=cursor, page=page, limit=self.page_size
            )
            for summary in listing.routes:
                by_id.pop(summary.id, None)
                by_id[summary.id] = summary
            if not listing.routes or listing.pagination.page >= listing.pagination.pages:
                return list(by_id.values())

            last = listing.routes[-1].updated_at
            if last > cursor:
                cursor, page = last, 1
            else:
                # Page entière au même updatedAt : on avance dans ce groupe
                page += 1

    def _pull_and_merge(self, report: ReconcileReport) -> None:
        marker = self.cache.read_marker()
        try:
            summaries = self.pull(marker.updated_since)
        except (TransientSyncFailure, TerminalSyncRejection) as e:
            report.pull_failed = True
            report.errors.append(f"Pull impossible : {e}")
            logger.warning("Pull impossible, marqueur conservé : %s", e)
            return

        report.pulled = len(summaries)
        tombstones = {t.trip_id: t for t in self.cache.tombstones()}

        for summary in summaries:
            tombstone = tombstones.get(summary.client_uuid)
            if tombstone is not None:
                if tombstone.remote_id is None:
                    self._resolve_tombstone(tombstone, summary, report)
                else:
                    logger.debug("Trajet %s supprimé localement, pull ignoré", summary.client_uuid)
                continue
            try:
                self._merge(summary, report)
            except (TransientSyncFailure, TerminalSyncRejection) as e:
                report.pull_failed = True
                report.errors.append(f"Lecture de {summary.id} impossible : {e}")
                logger.warning("Lecture du trajet distant %s impossible : %s", summary.id, e)
                return

        newest = max((s.updated_at for s in summaries), default=None)
        self.cache.write_marker(SyncMarker(
            updated_since=newest or marker.updated_since,
            last_success_at=self.clock(),
        ))

    def _resolve_tombstone(self, tombstone: Tombstone, summary: RouteSummary, report: ReconcileReport) -> None:
        """Trajet supprimé localement avant la confirmation de son push : on supprime la copie distante."""
        resolved = tombstone.model_copy(update={"remote_id": summary.id})
        self.cache.add_tombstone(resolved)
        logger.info("Copie distante %s du trajet supprimé %s retrouvée", summary.id, tombstone.trip_id)
        self._send_deletion(resolved, report)

    def _merge(self, summary: RouteSummary, report: ReconcileReport) -> None:
        trip_id = summary.client_uuid
        try:
            local = self.cache.get(trip_id)
        except (TripNotFound, CacheCorruption):
            local = None

        if local is None:
            remote_trip = self._fetch(summary)
            if remote_trip is not None:
                self.cache.put(remote_trip)
                report.inserted.append(str(trip_id))
                logger.info("Trajet distant %s ajouté au cache", trip_id)
            return

        if local.sync.remote_id is None and local.sync.state in UNSYNCED_STATES:
            # Push arrivé au serveur mais réponse perdue : on rattache sans conflit
            self._link(trip_id, summary)
            report.unchanged.append(str(trip_id))
            return

        known = local.sync.remote_updated_at
        if known is not None and as_utc(known) == summary.updated_at:
            report.unchanged.append(str(trip_id))
            return

        if local.sync.state == SyncState.CONFLICT and self._conflict_seen(trip_id, summary):
            report.unchanged.append(str(trip_id))
            return

        remote_trip = self._fetch(summary)
        if remote_trip is None:
            return

        def take_remote(current: Trip) -> Trip:
            if current.sync.state != SyncState.SYNCED:
                raise ReconcileConflict(trip_id)
            return remote_trip.model_copy(update={
                "owner_id": current.owner_id or remote_trip.owner_id,
                "revision": current.revision + 1,
            })

        try:
            self.cache.modify(trip_id, take_remote)
        except ReconcileConflict:
            self._mark_conflict(trip_id, remote_trip, report)
            return
        except TripNotFound:
            # Supprimé localement entre-temps : la suppression sera propagée
            return

        report.updated.append(str(trip_id))
        logger.info("Trajet %s mis à jour depuis le store distant", trip_id)

    def _link(self, trip_id: uuid.UUID, summary: RouteSummary) -> None:
        """Associe le trajet local à sa copie distante ; la version locale sera poussée en PUT."""
        def apply(current: Trip) -> Optional[Trip]:
            if current.sync.remote_id is not None or current.sync.state not in UNSYNCED_STATES:
                return None
            sync = current.sync.model_copy(update={
                "state": SyncState.PENDING_PUSH,
                "remote_id": summary.id,
                "remote_updated_at": summary.updated_at,
            })
            return current.model_copy(update={"sync": sync})

        self._modify_if_present(trip_id, apply)
        logger.info("Trajet %s rattaché à sa copie distante %s", trip_id, summary.id)

    def _conflict_seen(self, trip_id: uuid.UUID, summary: RouteSummary) -> bool:
        """True si la copie distante en conflit est déjà celle que liste le serveur."""
        try:
            stored = self.cache.get_conflict(trip_id)
        except CacheCorruption:
            return False
        if stored is None or stored.sync.remote_updated_at is None:
            return False
        return as_utc(stored.sync.remote_updated_at) == summary.updated_at

    def _fetch(self, summary: RouteSummary) -> Optional[Trip]:
        try:
            route: RouteResponse = self._authorized(self.remote.get_trip, summary.id)
        except RemoteTripNotFound:
            logger.info("Trajet distant %s supprimé pendant le pull", summary.id)
            return None
        return route_to_trip(route)

    def _mark_conflict(self, trip_id: uuid.UUID, remote_trip: Trip, report: ReconcileReport) -> None:
        self.cache.put_conflict(trip_id, remote_trip)

        def mark(current: Trip) -> Trip:
            sync = current.sync.model_copy(update={
                "state": SyncState.CONFLICT,
                "next_attempt_at": None,
                "last_error": "Trajet modifié localement et sur le store distant.",
            })
            return current.model_copy(update={"sync": sync, "revision": current.revision + 1})

        local = self.cache.modify(trip_id, mark)
        report.conflicts.append(ConflictRecord(trip_id=trip_id, local=local, remote=remote_trip))
        logger.warning("Conflit sur le trajet %s : versions locale et distante conservées", trip_id)

    # ------------------------------------------------------------------
    # Étape 4 : push
    # ------------------------------------------------------------------

    def _push_pending(self, report: ReconcileReport) -> None:
        now = self.clock()
        for trip in self.cache.list_trips():
            if trip.status != TripStatus.CLOSED or trip.sync.state not in UNSYNCED_STATES:
                continue
            next_attempt = trip.sync.next_attempt_at
            if next_attempt is not None and as_utc(next_attempt) > now:
                report.pushes.append(PushResult(
                    trip_id=trip.id,
                    outcome=PushOutcome.SKIPPED,
                    message=f"Nouvel essai prévu à {next_attempt.isoformat()}",
                ))
                continue
            report.pushes.append(self.push(trip))

    def push(self, trip: Trip) -> PushResult:
        """
        Envoie un trajet clôturé au store distant et enregistre l'issue dans le cache.

        POST avec clientUuid pour un trajet jamais poussé, PUT s'il a déjà un id
        distant (repli sur POST si le serveur ne le connaît plus). Lève
        Unauthorized si la ré-authentification échoue.
        """
        if trip.status != TripStatus.CLOSED:
            return PushResult(trip_id=trip.id, outcome=PushOutcome.SKIPPED, message="Trajet encore ouvert.")
        if trip.sync.state not in UNSYNCED_STATES:
            return PushResult(
                trip_id=trip.id,
                outcome=PushOutcome.SKIPPED,
                remote_id=trip.sync.remote_id,
                message=f"État {trip.sync.state.value} : rien à pousser.",
            )

        try:
            route = self._send(trip)
        except TransientSyncFailure as e:
            return self._defer(trip, str(e))
        except TerminalSyncRejection as e:
            return self._reject(trip, str(e), e.errors)
        except ValidationError as e:
            errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
            return self._reject(trip, "Trajet non conforme au contrat du store distant.", errors)

        return self._commit_pushed(trip, route)

    def _send(self, trip: Trip) -> RouteResponse:
        if trip.sync.remote_id is not None:
            try:
                return self._authorized(self.remote.update_trip, trip.sync.remote_id, trip_to_update_payload(trip))
            except RemoteTripNotFound:
                logger.info("Trajet %s inconnu du store distant, nouvel envoi", trip.id)

        route, created = self._authorized(self.remote.create_trip, trip_to_create_payload(trip))
        if not created:
            logger.info("Trajet %s déjà présent sur le store distant (%s)", trip.id, route.id)
        return route

    def _commit_pushed(self, trip: Trip, route: RouteResponse) -> PushResult:
        def apply(current: Trip) -> Trip:
            # Modifié pendant le push : la version distante est déjà en retard
            state = SyncState.SYNCED if current.revision == trip.revision else SyncState.PENDING_PUSH
            sync = current.sync.model_copy(update={
                "state": state,
                "remote_id": route.id,
                "remote_updated_at": route.updated_at,
                "attempts": 0,
                "next_attempt_at": None,
                "last_error": None,
            })
            return current.model_copy(update={"sync": sync})

        try:
            self.cache.modify(trip.id, apply)
        except TripNotFound:
            # Supprimé localement pendant le push : la copie distante doit partir aussi
            self.cache.add_tombstone(Tombstone(trip_id=trip.id, remote_id=route.id))
            logger.info("Trajet %s supprimé pendant le push, suppression distante planifiée", trip.id)

        logger.info("Trajet %s synchronisé (id distant %s)", trip.id, route.id)
        return PushResult(trip_id=trip.id, outcome=PushOutcome.PUSHED, remote_id=route.id)

    def _defer(self, trip: Trip, message: str) -> PushResult:
        attempts = trip.sync.attempts + 1
        exponent = min(attempts - 1, MAX_BACKOFF_EXPONENT)
        delay = min(self.backoff_base_s * 2 ** exponent, self.backoff_max_s)
        next_attempt = self.clock() + timedelta(seconds=delay)

        def apply(current: Trip) -> Optional[Trip]:
            if current.sync.state not in UNSYNCED_STATES:
                return None
            sync = current.sync.model_copy(update={
                "state": SyncState.PENDING_PUSH,
                "attempts": attempts,
                "next_attempt_at": next_attempt,
                "last_error": message,
            })
            return current.model_copy(update={"sync": sync})

        self._modify_if_present(trip.id, apply)
        logger.warning(
            "Push du trajet %s reporté (essai %d, prochain dans %.0f s) : %s",
            trip.id, attempts, delay, message,
        )
        return PushResult(
            trip_id=trip.id,
            outcome=PushOutcome.DEFERRED,
            remote_id=trip.sync.remote_id,
            message=message,
        )

    def _reject(self, trip: Trip, message: str, errors: List[dict]) -> PushResult:
        def apply(current: Trip) -> Trip:
            # Modifié pendant le push : la nouvelle version sera retentée
            state = SyncState.REJECTED if current.revision == trip.revision else current.sync.state
            sync = current.sync.model_copy(update={
                "state": state,
                "attempts": current.sync.attempts + 1,
                "next_attempt_at": None,
                "last_error": message,
            })
            return current.model_copy(update={"sync": sync})

        self._modify_if_present(trip.id, apply)
        logger.error("Trajet %s rejeté par le store distant : %s", trip.id, message)
        return PushResult(
            trip_id=trip.id,
            outcome=PushOutcome.REJECTED,
            remote_id=trip.sync.remote_id,
            message=message,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Opérations de l'utilisateur
    # ------------------------------------------------------------------

    def resolve_conflict(self, trip_id: uuid.UUID, keep: str = "local") -> Trip:
        """
        Tranche un conflit : keep="remote" adopte la copie distante,
        keep="local" garde la version locale et la repousse au prochain cycle.
        """
        if keep not in ("local", "remote"):
            raise ValueError("keep doit valoir 'local' ou 'remote'.")

        with self._cycle_lock:
            remote_trip = self.cache.get_conflict(trip_id)
            if remote_trip is None:
                raise ValueError(f"Aucun conflit en attente pour le trajet {trip_id}.")

            def apply(current: Trip) -> Trip:
                if keep == "remote":
                    return remote_trip.model_copy(update={
                        "owner_id": current.owner_id or remote_trip.owner_id,
                        "revision": current.revision + 1,
                    })
                sync = current.sync.model_copy(update={
                    "state": SyncState.PENDING_PUSH,
                    "remote_id": remote_trip.sync.remote_id,
                    "remote_updated_at": remote_trip.sync.remote_updated_at,
                    "attempts": 0,
                    "next_attempt_at": None,
                    "last_error": None,
                })
                return current.model_copy(update={"sync": sync, "revision": current.revision + 1})

            resolved = self.cache.modify(trip_id, apply)
            self.cache.drop_conflict(trip_id)

        logger.info("Conflit du trajet %s résolu (version %s gardée)", trip_id, keep)
        return resolved

    def delete_trip(self, trip_id: uuid.UUID) -> bool:
        """
        Supprime un trajet du cache ; s'il existe sur le store distant, la
        suppression y sera propagée au prochain cycle. True si supprimé.
        """
        try:
            trip = self.cache.get(trip_id)
        except TripNotFound:
            return False
        except CacheCorruption:
            logger.warning("Trajet %s illisible : suppression distante impossible", trip_id)
            return False

        if trip.sync.remote_id is not None:
            self.cache.add_tombstone(Tombstone(trip_id=trip.id, remote_id=trip.sync.remote_id))
        elif trip.sync.attempts > 0:
            # Push peut-être arrivé sans réponse : copie distante à retrouver au pull
            self.cache.add_tombstone(Tombstone(trip_id=trip.id))
        return self.cache.delete(trip_id)

    # ------------------------------------------------------------------
    # Utilitaires
    # ------------------------------------------------------------------

    def _authorized(self, call, *args, **kwargs):
        """Appelle le store distant ; sur 401, une ré-authentification puis un seul nouvel essai."""
        try:
            return call(*args, **kwargs)
        except Unauthorized:
            logger.info("Jeton refusé, tentative de ré-authentification")
            if not self.token_provider.refresh():
                raise
        return call(*args, **kwargs)

    def _modify_if_present(self, trip_id: uuid.UUID, mutate) -> None:
        try:
            self.cache.modify(trip_id, mutate)
        except TripNotFound:
            logger.debug("Trajet %s supprimé entre-temps, issue du push non enregistrée", trip_id)
