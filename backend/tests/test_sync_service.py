"""
Tests du réconciliateur cache local ↔ store distant.

Deux niveaux :
- bout en bout : HttpRemoteStore branché sur l'API de test (TestClient),
  base SQLite en mémoire et cache dans un répertoire temporaire
- unitaires : store distant simulé (MagicMock) et horloge contrôlée pour
  le backoff, les rejets, la ré-authentification et la concurrence
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from tracksync.exceptions import (
    RemoteTripNotFound,
    TerminalSyncRejection,
    TransientSyncFailure,
    Unauthorized,
)
from tracksync.schemas.location import PositionSample, SyncInfo, SyncState, Trip, TripStatus
from tracksync.schemas.route import Pagination, RouteListResponse, RouteResponse, RouteSummary
from tracksync.schemas.sync import PushOutcome, SyncMarker, Tombstone
from tracksync.services.remote_client import HttpRemoteStore, StaticTokenProvider
from tracksync.services.stats_service import compute_stats
from tracksync.services.sync_service import EPOCH, TripReconciler

OWNER = "appareil-test"
T0 = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


# --- Helpers ---

class FakeClock:
    """Horloge contrôlée par le test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_trip(count: int = 3, status=TripStatus.CLOSED, name: str = "Balade", start: datetime = T0) -> Trip:
    samples = [
        PositionSample(
            timestamp=start + timedelta(minutes=i),
            latitude=50.85 + 0.001 * i,
            longitude=4.35,
            altitude_m=100.0 + 5 * i,
        )
        for i in range(count)
    ]
    return Trip(owner_id=OWNER, name=name, status=status, samples=samples, stats=compute_stats(samples))


def remote_response(trip: Trip, remote_id=None, updated_at: datetime = NOW, name=None) -> RouteResponse:
    return RouteResponse(
        id=remote_id or uuid.uuid4(),
        client_uuid=trip.id,
        name=name or trip.name,
        start_time=trip.start_time,
        end_time=trip.end_time,
        created_at=updated_at,
        updated_at=updated_at,
    )


def listing(*routes: RouteSummary, page: int = 1, pages: int = None) -> RouteListResponse:
    if pages is None:
        pages = 1 if routes else 0
    return RouteListResponse(
        routes=list(routes),
        pagination=Pagination(page=page, limit=50, total=len(routes), pages=pages),
    )


def summary_of(route: RouteResponse) -> RouteSummary:
    return RouteSummary(**route.model_dump(exclude={"locations"}))


def make_mock_remote() -> MagicMock:
    remote = MagicMock()
    remote.list_trips.return_value = listing()
    return remote


def route_body(client_uuid: uuid.UUID, name: str = "Depuis le web") -> dict:
    locations = [
        {
            "latitude": 50.85 + 0.001 * i,
            "longitude": 4.35,
            "timestamp": (T0 + timedelta(minutes=i)).isoformat(),
        }
        for i in range(3)
    ]
    return {
        "name": name,
        "clientUuid": str(client_uuid),
        "locations": locations,
        "startTime": locations[0]["timestamp"],
        "endTime": locations[-1]["timestamp"],
    }


@pytest.fixture
def reconciler(cache, client, auth_token) -> TripReconciler:
    """Réconciliateur branché sur l'API de test."""
    remote = HttpRemoteStore(StaticTokenProvider(auth_token), client=client)
    return TripReconciler(cache, remote, remote.token_provider)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> MagicMock:
    return make_mock_remote()


@pytest.fixture
def token_provider() -> MagicMock:
    provider = MagicMock()
    provider.token.return_value = "jeton"
    provider.refresh.return_value = False
    return provider


@pytest.fixture
def mocked(cache, remote, token_provider, clock) -> TripReconciler:
    """Réconciliateur sur store simulé : backoff 5 s, plafond 60 s."""
    return TripReconciler(cache, remote, token_provider, clock=clock, backoff_base_s=5, backoff_max_s=60)


# ============================================================
# Bout en bout : push
# ============================================================

def test_push_trajet_cloture(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)

    report = reconciler.reconcile()

    assert [p.outcome for p in report.pushes] == [PushOutcome.PUSHED]
    stored = cache.get(trip.id)
    assert stored.sync.state == SyncState.SYNCED
    assert stored.sync.remote_id is not None
    assert stored.sync.remote_updated_at is not None

    remote = client.get(f"/api/v1/routes/{stored.sync.remote_id}", headers=auth_headers).json()
    assert remote["clientUuid"] == str(trip.id)
    assert [loc["id"] for loc in remote["locations"]] == [str(s.id) for s in trip.samples]


def test_push_rejoue_sans_doublon(reconciler, cache, client, auth_headers):
    """Réponse perdue : le même trajet repoussé retombe sur l'enregistrement existant."""
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    cache.modify(trip.id, lambda t: t.model_copy(update={"sync": SyncInfo()}))
    report = reconciler.reconcile()

    assert report.pushes[0].outcome == PushOutcome.PUSHED
    assert report.pushes[0].remote_id == remote_id
    assert client.get("/api/v1/routes", headers=auth_headers).json()["pagination"]["total"] == 1


def test_post_rejoue_renvoie_l_enregistrement_existant(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    result = reconciler.push(trip)

    assert result.outcome == PushOutcome.PUSHED
    assert result.remote_id == remote_id
    assert client.get("/api/v1/routes", headers=auth_headers).json()["pagination"]["total"] == 1


def test_trajet_ouvert_jamais_pousse(reconciler, cache, client, auth_headers):
    cache.put(make_trip(status=TripStatus.OPEN))

    report = reconciler.reconcile()

    assert report.pushes == []
    assert client.get("/api/v1/routes", headers=auth_headers).json()["pagination"]["total"] == 0


def test_modification_locale_repoussee_en_put(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()

    cache.modify(trip.id, lambda t: t.edited(name="Renommé"))
    report = reconciler.reconcile()

    stored = cache.get(trip.id)
    assert report.pushed[0].remote_id == stored.sync.remote_id
    assert stored.sync.state == SyncState.SYNCED
    remote = client.get(f"/api/v1/routes/{stored.sync.remote_id}", headers=auth_headers).json()
    assert remote["name"] == "Renommé"


# ============================================================
# Bout en bout : pull
# ============================================================

def test_pull_insere_un_trajet_distant_inconnu(reconciler, cache, client, auth_headers):
    client_uuid = uuid.uuid4()
    client.post("/api/v1/routes", json=route_body(client_uuid), headers=auth_headers)

    report = reconciler.reconcile()

    assert report.inserted == [str(client_uuid)]
    trip = cache.get(client_uuid)
    assert trip.name == "Depuis le web"
    assert trip.status == TripStatus.CLOSED
    assert trip.sync.state == SyncState.SYNCED
    assert len(trip.samples) == 3
    assert trip.stats.total_duration_s == 120
    assert report.pushes == []


def test_copie_distante_deja_vue_inchangee(reconciler, cache):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()

    report = reconciler.reconcile()

    assert report.unchanged == [str(trip.id)]
    assert report.updated == [] and report.pushes == []


def test_marqueur_avance_apres_un_pull_reussi(reconciler, cache, client, auth_headers):
    client.post("/api/v1/routes", json=route_body(uuid.uuid4()), headers=auth_headers)
    newest = client.post("/api/v1/routes", json=route_body(uuid.uuid4()), headers=auth_headers).json()

    reconciler.reconcile()

    marker = cache.read_marker()
    assert marker.updated_since.isoformat().startswith(newest["updatedAt"].rstrip("Z"))
    assert marker.last_success_at is not None


def test_distant_gagne_si_pas_de_modification_locale(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    client.put(f"/api/v1/routes/{remote_id}", json={"name": "Modifié ailleurs"}, headers=auth_headers)
    report = reconciler.reconcile()

    assert report.updated == [str(trip.id)]
    stored = cache.get(trip.id)
    assert stored.name == "Modifié ailleurs"
    assert stored.sync.state == SyncState.SYNCED
    assert stored.owner_id == OWNER


# ============================================================
# Bout en bout : conflits
# ============================================================

def _conflict(reconciler, cache, client, auth_headers) -> Trip:
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    cache.modify(trip.id, lambda t: t.edited(name="Version locale"))
    client.put(f"/api/v1/routes/{remote_id}", json={"name": "Version distante"}, headers=auth_headers)
    return trip


def test_modifie_des_deux_cotes_conflit_sans_perte(reconciler, cache, client, auth_headers):
    trip = _conflict(reconciler, cache, client, auth_headers)

    report = reconciler.reconcile()

    assert len(report.conflicts) == 1
    assert report.conflicts[0].local.name == "Version locale"
    assert report.conflicts[0].remote.name == "Version distante"
    stored = cache.get(trip.id)
    assert stored.name == "Version locale"
    assert stored.sync.state == SyncState.CONFLICT
    assert cache.get_conflict(trip.id).name == "Version distante"
    # Un trajet en conflit n'est pas poussé
    assert report.pushes == []


def test_resolution_en_gardant_la_version_locale(reconciler, cache, client, auth_headers):
    trip = _conflict(reconciler, cache, client, auth_headers)
    reconciler.reconcile()

    resolved = reconciler.resolve_conflict(trip.id, keep="local")
    report = reconciler.reconcile()

    assert resolved.sync.state == SyncState.PENDING_PUSH
    assert report.conflicts == []
    assert [p.outcome for p in report.pushes] == [PushOutcome.PUSHED]
    assert cache.get(trip.id).sync.state == SyncState.SYNCED
    assert cache.get_conflict(trip.id) is None
    remote_id = cache.get(trip.id).sync.remote_id
    assert client.get(f"/api/v1/routes/{remote_id}", headers=auth_headers).json()["name"] == "Version locale"


def test_resolution_en_gardant_la_version_distante(reconciler, cache, client, auth_headers):
    trip = _conflict(reconciler, cache, client, auth_headers)
    reconciler.reconcile()

    resolved = reconciler.resolve_conflict(trip.id, keep="remote")

    assert resolved.name == "Version distante"
    assert resolved.sync.state == SyncState.SYNCED
    assert cache.get_conflict(trip.id) is None
    assert reconciler.reconcile().pushes == []


def test_resolution_sans_conflit_refusee(mocked, cache):
    trip = make_trip()
    cache.put(trip)

    with pytest.raises(ValueError):
        mocked.resolve_conflict(trip.id)
    with pytest.raises(ValueError):
        mocked.resolve_conflict(trip.id, keep="les deux")


def test_conflit_non_resolu_stable_d_un_cycle_a_l_autre(reconciler, cache, client, auth_headers):
    trip = _conflict(reconciler, cache, client, auth_headers)
    reconciler.reconcile()
    revision = cache.get(trip.id).revision

    for _ in range(2):
        report = reconciler.reconcile()
        assert report.conflicts == []
        assert report.unchanged == [str(trip.id)]

    stored = cache.get(trip.id)
    assert stored.revision == revision
    assert stored.sync.state == SyncState.CONFLICT


def test_conflit_rafraichi_si_la_copie_distante_change_encore(reconciler, cache, client, auth_headers):
    trip = _conflict(reconciler, cache, client, auth_headers)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    client.put(f"/api/v1/routes/{remote_id}", json={"name": "Distante, encore"}, headers=auth_headers)
    report = reconciler.reconcile()

    assert [c.remote.name for c in report.conflicts] == ["Distante, encore"]
    assert cache.get_conflict(trip.id).name == "Distante, encore"
    assert cache.get(trip.id).name == "Version locale"


def test_echantillon_ajoute_localement_et_modification_distante(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id
    extra = PositionSample(timestamp=trip.end_time + timedelta(minutes=1), latitude=50.86, longitude=4.35)

    cache.modify(trip.id, lambda t: t.edited(samples=t.samples + [extra]))
    client.put(f"/api/v1/routes/{remote_id}", json={"name": "Version distante"}, headers=auth_headers)
    report = reconciler.reconcile()

    assert len(report.conflicts) == 1
    conflict = report.conflicts[0]
    assert [s.id for s in conflict.local.samples] == [s.id for s in trip.samples] + [extra.id]
    assert len(conflict.remote.samples) == 3
    assert conflict.remote.name == "Version distante"
    stored = cache.get(trip.id)
    assert stored.sync.state == SyncState.CONFLICT
    assert len(stored.samples) == 4
    assert report.pushes == []


# ============================================================
# Bout en bout : suppressions
# ============================================================

def test_suppression_locale_propagee(reconciler, cache, client, auth_headers):
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    remote_id = cache.get(trip.id).sync.remote_id

    assert reconciler.delete_trip(trip.id) is True
    report = reconciler.reconcile()

    assert report.deleted == [str(trip.id)]
    assert cache.tombstones() == []
    assert client.get(f"/api/v1/routes/{remote_id}", headers=auth_headers).status_code == 404


def test_suppression_d_un_trajet_jamais_pousse(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip)

    assert mocked.delete_trip(trip.id) is True
    assert cache.tombstones() == []
    assert mocked.delete_trip(trip.id) is False


def test_suppression_deja_faite_a_distance(mocked, cache, remote):
    """404 à la suppression : la tombstone est soldée."""
    remote.delete_trip.return_value = False
    cache.add_tombstone(Tombstone(trip_id=uuid.uuid4(), remote_id=uuid.uuid4()))

    report = mocked.reconcile()

    assert len(report.deleted) == 1
    assert cache.tombstones() == []


def test_suppression_reportee_bloque_le_retour_par_pull(mocked, cache, remote):
    trip = make_trip()
    route = remote_response(trip)
    cache.add_tombstone(Tombstone(trip_id=trip.id, remote_id=route.id))
    remote.delete_trip.side_effect = TransientSyncFailure("HTTP 503")
    remote.list_trips.return_value = listing(summary_of(route))

    report = mocked.reconcile()

    assert report.deleted == []
    assert report.inserted == []
    remote.get_trip.assert_not_called()
    assert len(cache.tombstones()) == 1


def test_suppression_apres_reponse_de_push_perdue(reconciler, cache, client, auth_headers):
    """Push arrivé au serveur sans confirmation : la copie distante est retrouvée puis supprimée."""
    trip = make_trip()
    cache.put(trip)
    reconciler.reconcile()
    cache.modify(trip.id, lambda t: t.model_copy(update={
        "sync": SyncInfo(state=SyncState.PENDING_PUSH, attempts=1),
    }))

    assert reconciler.delete_trip(trip.id) is True
    assert [t.remote_id for t in cache.tombstones()] == [None]
    report = reconciler.reconcile()

    assert report.inserted == []
    assert report.deleted == [str(trip.id)]
    assert cache.list_trips() == []
    assert cache.tombstones() == []
    assert client.get("/api/v1/routes", headers=auth_headers).json()["pagination"]["total"] == 0


def test_tombstone_sans_id_distant_attend_le_pull(mocked, cache, remote):
    cache.add_tombstone(Tombstone(trip_id=uuid.uuid4()))

    report = mocked.reconcile()

    remote.delete_trip.assert_not_called()
    assert report.deleted == []
    assert len(cache.tombstones()) == 1


# ============================================================
# Unitaires : échecs transitoires et backoff
# ============================================================

def test_echec_transitoire_reporte_avec_backoff(mocked, cache, remote, clock):
    trip = make_trip()
    cache.put(trip)
    remote.create_trip.side_effect = TransientSyncFailure("HTTP 503")

    report = mocked.reconcile()

    assert [p.outcome for p in report.pushes] == [PushOutcome.DEFERRED]
    stored = cache.get(trip.id)
    assert stored.sync.state == SyncState.PENDING_PUSH
    assert stored.sync.attempts == 1
    assert stored.sync.next_attempt_at == NOW + timedelta(seconds=5)
    assert stored.sync.last_error == "HTTP 503"


def test_backoff_respecte_avant_nouvel_essai(mocked, cache, remote, clock):
    trip = make_trip()
    cache.put(trip)
    remote.create_trip.side_effect = TransientSyncFailure("HTTP 503")
    mocked.reconcile()

    clock.advance(3)
    report = mocked.reconcile()

    assert [p.outcome for p in report.pushes] == [PushOutcome.SKIPPED]
    assert remote.create_trip.call_count == 1

    clock.advance(3)
    report = mocked.reconcile()

    assert [p.outcome for p in report.pushes] == [PushOutcome.DEFERRED]
    stored = cache.get(trip.id)
    assert stored.sync.attempts == 2
    assert stored.sync.next_attempt_at == clock.now + timedelta(seconds=10)


def test_backoff_plafonne(cache, remote, token_provider, clock):
    reconciler = TripReconciler(cache, remote, token_provider, clock=clock, backoff_base_s=5, backoff_max_s=8)
    trip = make_trip()
    cache.put(trip.model_copy(update={"sync": SyncInfo(state=SyncState.PENDING_PUSH, attempts=6)}))
    remote.create_trip.side_effect = TransientSyncFailure("délai dépassé")

    reconciler.reconcile()

    assert cache.get(trip.id).sync.next_attempt_at == NOW + timedelta(seconds=8)


def test_backoff_sans_debordement_apres_de_nombreux_echecs(cache, remote, token_provider, clock):
    reconciler = TripReconciler(cache, remote, token_provider, clock=clock, backoff_base_s=5.0, backoff_max_s=900.0)
    trip = make_trip()
    cache.put(trip.model_copy(update={"sync": SyncInfo(state=SyncState.PENDING_PUSH, attempts=1024)}))
    remote.create_trip.side_effect = TransientSyncFailure("HTTP 503")

    report = reconciler.reconcile()

    assert [p.outcome for p in report.pushes] == [PushOutcome.DEFERRED]
    stored = cache.get(trip.id)
    assert stored.sync.attempts == 1025
    assert stored.sync.next_attempt_at == NOW + timedelta(seconds=900)


def test_succes_apres_echec_remet_les_compteurs_a_zero(mocked, cache, remote, clock):
    trip = make_trip()
    cache.put(trip)
    remote.create_trip.side_effect = [TransientSyncFailure("HTTP 503"), (remote_response(trip), True)]
    mocked.reconcile()

    clock.advance(10)
    report = mocked.reconcile()

    assert report.pushed[0].trip_id == trip.id
    stored = cache.get(trip.id)
    assert stored.sync.state == SyncState.SYNCED
    assert stored.sync.attempts == 0
    assert stored.sync.next_attempt_at is None


def test_pull_en_echec_conserve_le_marqueur(mocked, cache, remote):
    marker = SyncMarker(updated_since=T0, last_success_at=T0)
    cache.write_marker(marker)
    remote.list_trips.side_effect = TransientSyncFailure("réseau")
    trip = make_trip()
    cache.put(trip)
    remote.create_trip.return_value = (remote_response(trip), True)

    report = mocked.reconcile()

    assert report.pull_failed is True
    assert cache.read_marker() == marker
    # Le push a quand même lieu
    assert report.pushed[0].trip_id == trip.id


def test_pull_parcourt_toutes_les_pages(mocked, remote):
    """Chaque page repart du dernier updatedAt reçu (pagination par curseur)."""
    first = remote_response(make_trip(), updated_at=T0 + timedelta(hours=1))
    second = remote_response(make_trip(), updated_at=T0 + timedelta(hours=2))
    remote.list_trips.side_effect = [
        listing(summary_of(first), page=1, pages=2),
        listing(summary_of(first), summary_of(second), page=1, pages=1),
    ]

    summaries = mocked.pull(T0)

    assert [s.id for s in summaries] == [first.id, second.id]
    calls = [(c.kwargs["updated_since"], c.kwargs["page"]) for c in remote.list_trips.call_args_list]
    assert calls == [(T0, 1), (first.updated_at, 1)]


def test_pull_sans_marqueur_part_de_l_origine(mocked, remote):
    mocked.pull(None)

    assert remote.list_trips.call_args.kwargs["updated_since"] == EPOCH


def test_pull_page_entiere_au_meme_updated_at(mocked, remote):
    same = [remote_response(make_trip(), updated_at=T0) for _ in range(3)]
    remote.list_trips.side_effect = [
        listing(summary_of(same[0]), summary_of(same[1]), page=1, pages=2),
        listing(summary_of(same[2]), page=2, pages=2),
    ]

    summaries = mocked.pull(T0)

    assert [s.id for s in summaries] == [r.id for r in same]
    assert [c.kwargs["page"] for c in remote.list_trips.call_args_list] == [1, 2]


def test_trajet_modifie_pendant_le_pull_ne_masque_pas_les_suivants(cache, client, auth_token, auth_headers):
    created = [
        client.post("/api/v1/routes", json=route_body(uuid.uuid4(), name=name), headers=auth_headers).json()
        for name in ("A", "B", "C", "D")
    ]
    store = HttpRemoteStore(StaticTokenProvider(auth_token), client=client)
    list_trips = store.list_trips
    calls = []

    def list_then_edit(**kwargs):
        page = list_trips(**kwargs)
        if not calls:
            client.put(f"/api/v1/routes/{created[0]['id']}", json={"name": "A2"}, headers=auth_headers)
        calls.append(kwargs)
        return page

    store.list_trips = list_then_edit
    reconciler = TripReconciler(cache, store, store.token_provider, page_size=2)

    report = reconciler.reconcile()

    assert len(calls) > 1
    assert report.pulled == 4
    assert sorted(t.name for t in cache.list_trips()) == ["A2", "B", "C", "D"]


def test_reponse_illisible_du_store_remontee_dans_le_rapport(cache):
    """Page HTML d'un proxy à la place du JSON : le cycle se termine normalement."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy</html>")

    client = httpx.Client(base_url="http://store.test", transport=httpx.MockTransport(handler))
    store = HttpRemoteStore(StaticTokenProvider("jeton"), client=client)
    trip = make_trip()
    cache.put(trip)

    report = TripReconciler(cache, store, store.token_provider).reconcile()

    assert report.pull_failed is True
    assert [p.outcome for p in report.pushes] == [PushOutcome.DEFERRED]
    assert cache.get(trip.id).sync.state == SyncState.PENDING_PUSH


# ============================================================
# Unitaires : rejets
# ============================================================

def test_rejet_de_validation_jamais_retente(mocked, cache, remote, clock):
    trip = make_trip()
    cache.put(trip)
    errors = [{"field": "endTime", "message": "L'heure de fin doit être postérieure à l'heure de début."}]
    remote.create_trip.side_effect = TerminalSyncRejection("Données invalides.", errors)

    report = mocked.reconcile()

    assert report.rejected[0].errors == errors
    assert cache.get(trip.id).sync.state == SyncState.REJECTED

    clock.advance(3600)
    assert mocked.reconcile().pushes == []
    assert remote.create_trip.call_count == 1


def test_trajet_non_conforme_rejete_sans_appel_reseau(mocked, cache, remote):
    """Un trajet d'un seul échantillon ne respecte pas le contrat distant."""
    trip = make_trip(count=1)
    cache.put(trip)

    report = mocked.reconcile()

    assert report.rejected[0].trip_id == trip.id
    assert "locations" in [e["field"] for e in report.rejected[0].errors]
    assert cache.get(trip.id).sync.state == SyncState.REJECTED
    remote.create_trip.assert_not_called()


def test_trajet_rejete_redevient_poussable_apres_modification(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip)
    remote.create_trip.side_effect = TerminalSyncRejection("Données invalides.")
    mocked.reconcile()

    cache.modify(trip.id, lambda t: t.edited(name="Corrigé"))
    remote.create_trip.side_effect = None
    remote.create_trip.return_value = (remote_response(trip), True)
    report = mocked.reconcile()

    assert report.pushed[0].trip_id == trip.id


# ============================================================
# Unitaires : authentification
# ============================================================

def test_401_reauthentification_puis_succes(mocked, cache, remote, token_provider):
    trip = make_trip()
    cache.put(trip)
    token_provider.refresh.return_value = True
    remote.create_trip.side_effect = [Unauthorized("Jeton expiré."), (remote_response(trip), True)]

    report = mocked.reconcile()

    assert report.auth_failed is False
    assert report.pushed[0].trip_id == trip.id
    token_provider.refresh.assert_called_once()


def test_401_sans_reauthentification_interrompt_le_cycle(mocked, cache, remote, token_provider):
    trip = make_trip()
    cache.put(trip)
    remote.list_trips.side_effect = Unauthorized("Jeton expiré.")

    report = mocked.reconcile()

    assert report.auth_failed is True
    remote.create_trip.assert_not_called()
    assert cache.get(trip.id) == trip
    assert cache.read_marker() == SyncMarker()


# ============================================================
# Unitaires : concurrence
# ============================================================

def test_cycles_jamais_superposes(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip)
    nested = []

    def create(payload):
        nested.append(mocked.reconcile())
        return remote_response(trip), True

    remote.create_trip.side_effect = create

    report = mocked.reconcile()

    assert nested[0].skipped is True
    assert report.skipped is False
    assert remote.create_trip.call_count == 1


def test_modification_pendant_le_push_reste_en_attente(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip)
    route = remote_response(trip)

    def create(payload):
        cache.modify(trip.id, lambda t: t.edited(name="Renommé pendant l'envoi"))
        return route, True

    remote.create_trip.side_effect = create
    mocked.reconcile()

    stored = cache.get(trip.id)
    assert stored.name == "Renommé pendant l'envoi"
    assert stored.sync.state == SyncState.PENDING_PUSH
    assert stored.sync.remote_id == route.id

    remote.update_trip.return_value = remote_response(stored, remote_id=route.id)
    mocked.reconcile()

    assert remote.update_trip.call_args.args[0] == route.id
    assert remote.update_trip.call_args.args[1].name == "Renommé pendant l'envoi"
    assert cache.get(trip.id).sync.state == SyncState.SYNCED


def test_suppression_pendant_le_push_planifie_la_suppression_distante(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip)
    route = remote_response(trip)

    def create(payload):
        cache.delete(trip.id)
        return route, True

    remote.create_trip.side_effect = create
    mocked.reconcile()

    assert [(t.trip_id, t.remote_id) for t in cache.tombstones()] == [(trip.id, route.id)]

    remote.delete_trip.return_value = True
    report = mocked.reconcile()

    remote.delete_trip.assert_called_once_with(route.id)
    assert report.deleted == [str(trip.id)]


def test_put_sur_trajet_distant_disparu_repli_sur_post(mocked, cache, remote):
    trip = make_trip()
    cache.put(trip.model_copy(update={"sync": SyncInfo(state=SyncState.PENDING_PUSH, remote_id=uuid.uuid4())}))
    remote.update_trip.side_effect = RemoteTripNotFound("Trajet introuvable.")
    new_route = remote_response(trip)
    remote.create_trip.return_value = (new_route, True)

    report = mocked.reconcile()

    assert report.pushed[0].remote_id == new_route.id
    assert cache.get(trip.id).sync.remote_id == new_route.id
