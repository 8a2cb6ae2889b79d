"""
Client HTTP du store distant des trajets (contrat /api/v1/routes).

Traduit les réponses HTTP en erreurs du coeur de suivi :
- réseau injoignable, timeout, 429, 5xx → TransientSyncFailure (retentable)
- 400 / 422 et autres 4xx              → TerminalSyncRejection (jamais retenté)
- 401                                   → Unauthorized (ré-authentification)
- 404                                   → RemoteTripNotFound
- réponse 2xx illisible                 → TransientSyncFailure
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Protocol

import httpx

from tracksync.config import settings
from tracksync.exceptions import (
    RemoteTripNotFound,
    TerminalSyncRejection,
    TransientSyncFailure,
    Unauthorized,
)
from tracksync.schemas.location import as_utc
from tracksync.schemas.route import RouteCreate, RouteListResponse, RouteResponse, RouteUpdate

logger = logging.getLogger(__name__)

ROUTES_PATH = "/api/v1/routes"


class TokenProvider(Protocol):
    """Collaborateur d'authentification (hors périmètre) : fournit et renouvelle le jeton."""

    def token(self) -> Optional[str]:
        ...

    def refresh(self) -> bool:
        """Renouvelle le jeton ; False si la ré-authentification est impossible."""
        ...


class StaticTokenProvider:
    """Jeton fixe, sans renouvellement possible."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def token(self) -> Optional[str]:
        return self._token

    def refresh(self) -> bool:
        return False


class RemoteStore(Protocol):
    """Opérations du store distant utilisées par le réconciliateur."""

    def create_trip(self, payload: RouteCreate) -> tuple[RouteResponse, bool]:
        ...

    def update_trip(self, remote_id: uuid.UUID, payload: RouteUpdate) -> RouteResponse:
        ...

    def get_trip(self, remote_id: uuid.UUID) -> RouteResponse:
        ...

    def list_trips(
        self, updated_since: Optional[datetime] = None, page: int = 1, limit: int = 50
    ) -> RouteListResponse:
        ...

    def delete_trip(self, remote_id: uuid.UUID) -> bool:
        ...


def _wire_datetime(value: datetime) -> str:
    # "Z" plutôt que "+00:00" : un "+" mal encodé dans une query string devient un espace
    return as_utc(value).isoformat().replace("+00:00", "Z")


class HttpRemoteStore:
    """Implémentation httpx du store distant."""

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url or settings.REMOTE_BASE_URL,
            timeout=timeout or settings.REMOTE_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def create_trip(self, payload: RouteCreate) -> tuple[RouteResponse, bool]:
        """POST d'un trajet ; retourne (trajet distant, créé). Un rejeu renvoie créé=False."""
        response = self._request("POST", ROUTES_PATH, json=self._body(payload))
        return self._parse(RouteResponse, response), response.status_code == 201

    def update_trip(self, remote_id: uuid.UUID, payload: RouteUpdate) -> RouteResponse:
        response = self._request("PUT", f"{ROUTES_PATH}/{remote_id}", json=self._body(payload))
        return self._parse(RouteResponse, response)

    def get_trip(self, remote_id: uuid.UUID) -> RouteResponse:
        response = self._request("GET", f"{ROUTES_PATH}/{remote_id}")
        return self._parse(RouteResponse, response)

    def list_trips(
        self, updated_since: Optional[datetime] = None, page: int = 1, limit: int = 50
    ) -> RouteListResponse:
        params = {"page": page, "limit": limit}
        if updated_since is not None:
            params["updatedSince"] = _wire_datetime(updated_since)
        response = self._request("GET", ROUTES_PATH, params=params)
        return self._parse(RouteListResponse, response)

    def delete_trip(self, remote_id: uuid.UUID) -> bool:
        """Supprime un trajet distant. Un trajet déjà absent compte comme supprimé (False)."""
        try:
            self._request("DELETE", f"{ROUTES_PATH}/{remote_id}")
        except RemoteTripNotFound:
            logger.info("Trajet distant %s déjà supprimé", remote_id)
            return False
        return True

    @staticmethod
    def _parse(model, response: httpx.Response):
        """Réponse 2xx illisible (portail captif, proxy) : traitée comme une erreur transitoire."""
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            logger.warning("Réponse illisible du store distant (HTTP %d) : %s", response.status_code, e)
            raise TransientSyncFailure(f"Réponse illisible du store distant : {e}") from e

    @staticmethod
    def _body(payload) -> dict:
        return payload.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Accept": "application/json"}
        token = self.token_provider.token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Store distant injoignable (%s %s) : %s", method, path, e)
            raise TransientSyncFailure(f"Store distant injoignable : {e}") from e

        self._raise_for_status(response)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail") if isinstance(body, dict) else None
        message = detail if isinstance(detail, str) else f"HTTP {status}"

        if status == 401:
            raise Unauthorized(message)
        if status == 404:
            raise RemoteTripNotFound(message)
        if status == 429 or status >= 500:
            logger.warning("Erreur transitoire du store distant : HTTP %d", status)
            raise TransientSyncFailure(f"HTTP {status} : {message}")
        raise TerminalSyncRejection(message, body.get("errors") if isinstance(body, dict) else None)
