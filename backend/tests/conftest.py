"""
Configuration partagée pour tous les tests.
Base SQLite en mémoire à la place de PostgreSQL, cache local dans un
répertoire temporaire, jeton JWT signé avec la clé de test.
"""

import os

# Avant tout import de tracksync : Settings() lit l'environnement à l'import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"

import pytest
from fastapi.testclient import TestClient

from tracksync.auth import create_access_token
from tracksync.database import Base, SessionLocal, engine, get_db, init_db
from tracksync.main import app
from tracksync.services.cache_service import LocalTripCache

OWNER_ID = "appareil-test"


@pytest.fixture
def db_session():
    """Session sur une base vierge, supprimée après le test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    """Client HTTP de test branché sur la base SQLite du test."""
    app.dependency_overrides[get_db] = lambda: db_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_token() -> str:
    return create_access_token(OWNER_ID)


@pytest.fixture
def auth_headers(auth_token) -> dict:
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def cache(tmp_path) -> LocalTripCache:
    return LocalTripCache(tmp_path / "cache")
