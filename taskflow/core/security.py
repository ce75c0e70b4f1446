import logging
from typing import Annotated, Dict, Any

import jwt
import requests
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from jwt.algorithms import RSAAlgorithm

from taskflow.config import KEYCLOAK_SERVER_URL, KEYCLOAK_REALM, KEYCLOAK_API_CLIENT_ID, KEYCLOAK_ADMIN_ROLE
from taskflow.db_models.enums import Role
from taskflow.models import Principal

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def get_keycloak_public_keys() -> Dict[str, Any]:
    """Fetch public keys from Keycloak server."""
    certs_url = f"{KEYCLOAK_SERVER_URL}realms/{KEYCLOAK_REALM}/protocol/openid-connect/certs"
    response = requests.get(certs_url, timeout=10)
    response.raise_for_status()
    jwks_data = response.json()
    logger.debug("Fetched %d keys from JWKS", len(jwks_data.get("keys", [])))
    return jwks_data


def principal_from_claims(claims: Dict[str, Any]) -> Principal:
    """Map verified token claims to the acting principal."""
    user_id = claims.get("sub", "")
    if not user_id:
        raise ValueError("Token has no subject")
    realm_roles = claims.get("realm_access", {}).get("roles", [])
    role = Role.ADMIN if KEYCLOAK_ADMIN_ROLE in realm_roles else Role.MEMBER
    return Principal(id=user_id, role=role)


def decode_token(token: str, jwks: Dict[str, Any]) -> Dict[str, Any]:
    """Verify ``token`` against each key in the JWKS until one succeeds."""
    expected_issuer = f"{KEYCLOAK_SERVER_URL}realms/{KEYCLOAK_REALM}"
    last_exception = None
    for key_data in jwks.get("keys", []):
        try:
            public_key = RSAAlgorithm.from_jwk(key_data)
            return jwt.decode(
                token,
                public_key,
                algorithms=["RS256"],
                audience=["account", KEYCLOAK_API_CLIENT_ID],
                issuer=expected_issuer,
            )
        except jwt.ExpiredSignatureError:
            raise
        except jwt.InvalidTokenError as e:  # InvalidSignatureError is a subclass
            logger.debug("Token rejected by key %s: %s", key_data.get("kid", "N/A"), e)
            last_exception = e
    raise last_exception or jwt.InvalidTokenError("No signing keys available")


async def get_current_principal(request: Request, token: Annotated[str, Depends(oauth2_scheme)]) -> Principal:
    """Resolve the acting principal from a Keycloak JWT (header or cookie)."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        token = request.cookies.get("access_token", "")
    if not token:
        raise credentials_exception

    try:
        claims = decode_token(token, get_keycloak_public_keys())
        return principal_from_claims(claims)
    except (jwt.InvalidTokenError, requests.RequestException, ValueError) as e:
        logger.warning("Authentication failed: %s", e)
        raise credentials_exception from e
