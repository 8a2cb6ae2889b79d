"""
Planificateur APScheduler pour la synchronisation périodique des trajets.

Le job lance un cycle de réconciliation toutes les SYNC_INTERVAL_SECONDS
(30 s par défaut). Un cycle encore en cours quand le minuteur expire est
sauté, jamais mis en file (max_instances=1, coalesce=True).
"""

import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from tracksync.config import settings
from tracksync.schemas.location import utcnow
from tracksync.schemas.sync import ReconcileReport
from tracksync.services.sync_service import TripReconciler

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "trip_reconciliation"


class SyncWorker:
    """Exécute la réconciliation en arrière-plan, indépendamment de la session de suivi."""

    def __init__(
        self,
        reconciler: TripReconciler,
        interval_seconds: Optional[float] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or settings.SYNC_INTERVAL_SECONDS
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.last_report: Optional[ReconcileReport] = None
        self._listeners: List[Callable[[ReconcileReport], None]] = []

    def _run_cycle(self) -> Optional[ReconcileReport]:
        """Tâche planifiée : un cycle de réconciliation, sans jamais lever."""
        try:
            report = self.reconciler.reconcile()
        except Exception as exc:
            logger.error("Erreur lors du cycle de synchronisation : %s", exc, exc_info=True)
            return None

        if not report.skipped:
            self.last_report = report
        for listener in list(self._listeners):
            try:
                listener(report)
            except Exception:
                logger.exception("Abonné au rapport de synchronisation en erreur")
        return report

    def subscribe(self, listener: Callable[[ReconcileReport], None]) -> Callable[[], None]:
        """Reçoit chaque rapport de cycle ; retourne la fonction de désabonnement."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self, run_immediately: bool = True) -> None:
        """Démarre le planificateur en arrière-plan."""
        options = {"next_run_time": utcnow()} if run_immediately else {}
        self.scheduler.add_job(
            self._run_cycle,
            trigger="interval",
            seconds=self.interval_seconds,
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        self.scheduler.start()
        logger.info("Scheduler démarré — synchronisation toutes les %s s.", self.interval_seconds)

    def run_now(self) -> Optional[ReconcileReport]:
        """Lance un cycle immédiatement dans le thread appelant (skipped si un cycle tourne déjà)."""
        return self._run_cycle()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def stop(self, wait: bool = True) -> None:
        """Arrête le planificateur ; avec wait=True, attend la fin du cycle en cours."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler arrêté.")
