"""
Export d'un trajet au format GPX 1.1.

Transformation pure et déterministe : un trkpt par échantillon valide, dans
l'ordre chronologique ; <ele> seulement si l'altitude est connue ; la vitesse
en extension propriétaire seulement si elle est connue. Un trajet sans
échantillon donne un GPX sans point, jamais une erreur.
"""

import re
import xml.etree.ElementTree as ET

import gpxpy.gpx

from tracksync.schemas.location import PositionSample, Trip

GPX_MEDIA_TYPE = "application/gpx+xml"
GPX_CREATOR = "TrackSync"
EXTENSION_PREFIX = "tsx"
EXTENSION_NS = "https://tracksync.app/xmlschemas/TrackPointExtension/v1"


def _is_valid(sample: PositionSample) -> bool:
    return -90 <= sample.latitude <= 90 and -180 <= sample.longitude <= 180


def _track_point(sample: PositionSample) -> gpxpy.gpx.GPXTrackPoint:
    point = gpxpy.gpx.GPXTrackPoint(
        latitude=sample.latitude,
        longitude=sample.longitude,
        elevation=sample.altitude_m,
        time=sample.timestamp,
    )
    if sample.speed_mps is not None:
        speed = ET.Element(f"{{{EXTENSION_NS}}}speed")
        speed.text = str(sample.speed_mps)
        point.extensions.append(speed)
    return point


def encode_gpx(trip: Trip) -> bytes:
    """Sérialise le trajet en GPX (UTF-8)."""
    gpx = gpxpy.gpx.GPX()
    gpx.creator = GPX_CREATOR
    gpx.nsmap[EXTENSION_PREFIX] = EXTENSION_NS
    gpx.name = trip.name
    gpx.description = trip.description
    gpx.time = trip.start_time

    track = gpxpy.gpx.GPXTrack(name=trip.name, description=trip.description)
    segment = gpxpy.gpx.GPXTrackSegment()
    track.segments.append(segment)
    gpx.tracks.append(track)

    # sorted() est stable : les horodatages égaux gardent l'ordre d'arrivée
    for sample in sorted(trip.samples, key=lambda s: s.timestamp):
        if _is_valid(sample):
            segment.points.append(_track_point(sample))

    return gpx.to_xml(version="1.1").encode("utf-8")


def export_filename(name: str) -> str:
    """Nom de fichier dérivé du nom du trajet (caractères non alphanumériques → _)."""
    stem = re.sub(r"[^A-Za-z0-9]", "_", name or "")
    return f"{stem or 'trajet'}.gpx"
