"""
Calcul des statistiques d'un trajet (distance, durée, vitesses, dénivelé).

Fonctions pures, sans I/O. Le cumul se fait paire par paire, de gauche à
droite : extend_stats() reproduit exactement l'ordre des additions de
compute_stats(), un trajet ouvert n'a donc pas besoin d'être recalculé en
entier à chaque nouvel échantillon.
"""

from typing import Sequence

from tracksync.schemas.location import PositionSample, TripStats
from tracksync.services.geo import haversine_m


def _max_speed(current: float, sample: PositionSample) -> float:
    if sample.speed_mps is not None and sample.speed_mps > current:
        return sample.speed_mps
    return current


def _with_duration(
    distance: float,
    max_speed: float,
    gain: float,
    loss: float,
    first: PositionSample,
    last: PositionSample,
) -> TripStats:
    duration = (last.timestamp - first.timestamp).total_seconds()
    return TripStats(
        total_distance_m=distance,
        total_duration_s=max(0.0, duration),
        average_speed_mps=distance / duration if duration > 0 else 0.0,
        max_speed_mps=max_speed,
        elevation_gain_m=gain,
        elevation_loss_m=loss,
    )


def _step(
    distance: float,
    gain: float,
    loss: float,
    prev: PositionSample,
    curr: PositionSample,
) -> tuple[float, float, float]:
    """Ajoute la paire (prev, curr) aux cumuls distance / dénivelé."""
    distance += haversine_m(prev.latitude, prev.longitude, curr.latitude, curr.longitude)

    # Paires sans altitude d'un côté : ignorées, pas d'interpolation
    if prev.altitude_m is not None and curr.altitude_m is not None:
        delta = curr.altitude_m - prev.altitude_m
        if delta > 0:
            gain += delta
        else:
            loss += abs(delta)
    return distance, gain, loss


def compute_stats(samples: Sequence[PositionSample]) -> TripStats:
    """
    Statistiques d'une séquence chronologique d'échantillons.
    Moins de 2 échantillons → toutes les valeurs à zéro.
    """
    if len(samples) < 2:
        return TripStats()

    distance = gain = loss = 0.0
    max_speed = _max_speed(0.0, samples[0])
    for prev, curr in zip(samples, samples[1:]):
        distance, gain, loss = _step(distance, gain, loss, prev, curr)
        max_speed = _max_speed(max_speed, curr)

    return _with_duration(distance, max_speed, gain, loss, samples[0], samples[-1])


def extend_stats(
    stats: TripStats,
    samples: Sequence[PositionSample],
    new_sample: PositionSample,
) -> TripStats:
    """
    Statistiques après ajout de new_sample à la fin de samples.
    Résultat identique (au bit près) à compute_stats(samples + [new_sample]).
    """
    if len(samples) < 2:
        return compute_stats([*samples, new_sample])

    distance, gain, loss = _step(
        stats.total_distance_m,
        stats.elevation_gain_m,
        stats.elevation_loss_m,
        samples[-1],
        new_sample,
    )
    max_speed = _max_speed(stats.max_speed_mps, new_sample)
    return _with_duration(distance, max_speed, gain, loss, samples[0], new_sample)
