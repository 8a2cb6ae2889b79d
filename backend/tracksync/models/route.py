"""
Modèles SQLAlchemy pour les trajets du store distant et leurs positions.

Architecture offline-first :
- client_uuid : généré côté appareil (id du trajet local), clé d'idempotence
- updated_at  : marqueur de dernière modification, borne les pull incrémentaux
- les statistiques sont recalculées à chaque écriture des positions
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship

from tracksync.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Route(Base):
    """Trajet enregistré par un appareil et synchronisé vers le serveur."""
    __tablename__ = "routes"
    __table_args__ = (
        UniqueConstraint("owner_id", "client_uuid", name="uq_routes_owner_client_uuid"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False, index=True)
    client_uuid = Column(Uuid, nullable=False, default=uuid.uuid4)  # Clé idempotence (offline-first)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)

    total_distance = Column(Float, default=0.0)    # mètres
    total_duration = Column(Float, default=0.0)    # secondes
    average_speed = Column(Float, default=0.0)     # m/s
    max_speed = Column(Float, default=0.0)         # m/s
    elevation_gain = Column(Float, default=0.0)    # mètres
    elevation_loss = Column(Float, default=0.0)    # mètres

    created_at = Column(DateTime(timezone=True), default=_now)
    # Horodatage applicatif (µs) : sert de marqueur aux pull incrémentaux
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, index=True)

    locations = relationship(
        "RouteLocation",
        order_by="RouteLocation.sequence",
        cascade="all, delete-orphan",
    )


class RouteLocation(Base):
    """Position d'un trajet, ordonnée par sequence."""
    __tablename__ = "route_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(Uuid, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    sample_id = Column(Uuid, nullable=True)  # id client de l'échantillon

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    altitude = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
