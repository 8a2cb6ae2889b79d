"""
Authentification des appareils auprès du store distant.

Les jetons sont émis par un service d'authentification externe ; le store
vérifie seulement leur signature et leur expiration (JWT HS256, claim
`sub` = identifiant du propriétaire des trajets).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tracksync.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(owner_id: str, expires_minutes: Optional[int] = None) -> str:
    """Émet un jeton signé pour owner_id (outil de développement et de test)."""
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    return jwt.encode({"sub": owner_id, "exp": expire}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Dépendance FastAPI : retourne l'identifiant du propriétaire authentifié."""
    if credentials is None:
        raise _unauthorized("Authentification requise.")

    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Jeton expiré.")
    except jwt.InvalidTokenError as e:
        logger.warning("Jeton refusé : %s", e)
        raise _unauthorized("Jeton invalide.")

    owner_id = payload.get("sub")
    if not owner_id:
        raise _unauthorized("Jeton invalide.")
    return owner_id
