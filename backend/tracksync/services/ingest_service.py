"""
Service d'ingestion des échantillons de position.

- Rejette les positions invalides (coordonnées hors bornes, précision
  négative ou au-delà du plafond) : une mauvaise position ne doit pas
  corrompre la géométrie d'un trajet.
- Applique la politique d'échantillonnage courante : plein débit au premier
  plan, mode "changement significatif" (débit réduit, filtre de distance
  plus large) quand l'hôte limite l'exécution en arrière-plan.
- Transmet les échantillons acceptés au découpeur, dans l'ordre d'arrivée.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Union

from pydantic import ValidationError

from tracksync.config import settings
from tracksync.exceptions import InvalidSample
from tracksync.schemas.location import PositionSample
from tracksync.services.geo import haversine_m

logger = logging.getLogger(__name__)


class SamplingMode(str, Enum):
    FULL = "full"                              # premier plan
    SIGNIFICANT_CHANGE = "significant_change"  # arrière-plan restreint


@dataclass(frozen=True)
class SamplingPolicy:
    """Filtre appliqué entre deux échantillons transmis."""

    distance_filter_m: float
    min_interval_s: float


def default_policies() -> dict[SamplingMode, SamplingPolicy]:
    return {
        SamplingMode.FULL: SamplingPolicy(
            distance_filter_m=settings.FOREGROUND_DISTANCE_FILTER_M,
            min_interval_s=0.0,
        ),
        SamplingMode.SIGNIFICANT_CHANGE: SamplingPolicy(
            distance_filter_m=settings.BACKGROUND_DISTANCE_FILTER_M,
            min_interval_s=settings.BACKGROUND_MIN_INTERVAL_SECONDS,
        ),
    }


RawSample = Union[PositionSample, Mapping]


class SampleIngestor:
    """Filtre les échantillons bruts et transmet les valides au découpeur."""

    def __init__(
        self,
        forward: Callable[[PositionSample], None],
        max_accuracy_m: Optional[float] = None,
        policies: Optional[dict[SamplingMode, SamplingPolicy]] = None,
    ):
        self._forward = forward
        self.max_accuracy_m = (
            settings.MAX_HORIZONTAL_ACCURACY_M if max_accuracy_m is None else max_accuracy_m
        )
        self._policies = policies or default_policies()
        self._mode = SamplingMode.FULL
        self._last_forwarded: Optional[PositionSample] = None

    @property
    def mode(self) -> SamplingMode:
        return self._mode

    def set_mode(self, mode: SamplingMode) -> None:
        if mode != self._mode:
            logger.info("Mode d'échantillonnage : %s → %s", self._mode.value, mode.value)
            self._mode = mode

    def reset(self) -> None:
        """Oublie le dernier échantillon transmis (nouvelle session de suivi)."""
        self._last_forwarded = None

    def accept(self, raw: RawSample) -> bool:
        """
        Valide un échantillon et le transmet au découpeur.

        Retourne True si l'échantillon a été transmis, False s'il a été écarté
        par la politique d'échantillonnage. Lève InvalidSample si la position
        est inexploitable.
        """
        sample = self._validate(raw)

        if not self._passes_policy(sample):
            logger.debug("Échantillon %s écarté (mode %s)", sample.id, self._mode.value)
            return False

        self._last_forwarded = sample
        self._forward(sample)
        return True

    def _validate(self, raw: RawSample) -> PositionSample:
        if isinstance(raw, PositionSample):
            sample = raw
        else:
            try:
                sample = PositionSample.model_validate(raw)
            except ValidationError as exc:
                raise InvalidSample(f"Échantillon invalide : {exc.errors()[0]['msg']}") from exc

        accuracy = sample.horizontal_accuracy_m
        if accuracy is not None and (accuracy < 0 or accuracy >= self.max_accuracy_m):
            raise InvalidSample(
                f"Précision horizontale hors limites : {accuracy} m "
                f"(plafond {self.max_accuracy_m} m).",
                sample_id=sample.id,
            )
        return sample

    def _passes_policy(self, sample: PositionSample) -> bool:
        last = self._last_forwarded
        if last is None:
            return True

        policy = self._policies[self._mode]
        if policy.min_interval_s > 0:
            elapsed = (sample.timestamp - last.timestamp).total_seconds()
            if elapsed < policy.min_interval_s:
                return False
        if policy.distance_filter_m > 0:
            moved = haversine_m(last.latitude, last.longitude, sample.latitude, sample.longitude)
            if moved < policy.distance_filter_m:
                return False
        return True
