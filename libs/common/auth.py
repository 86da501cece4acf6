"""Authentication and authorization utilities.

Central helpers for verifying OIDC-style bearer JWTs and turning them into a
``Principal`` (user, tenant, scopes) that the gateway uses for every request.

Design
- Locally, tokens are HS256-signed with a shared secret; ``AuthManager`` can
  also issue them so tests and development tools need no identity provider.
- Against an OIDC provider (e.g. Cognito) tokens are RS256 and verified with
  keys fetched from the provider's JWKS endpoint, plus issuer/audience checks.
- Tenant and user identity always come from verified claims, never from the
  request body.
- Small FastAPI dependencies offer a drop-in integration path.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from libs.storage.base import InvalidAssetKeyError, validate_tenant_id

logger = structlog.get_logger("auth")

# JWT token scheme
security = HTTPBearer(auto_error=False)

ADMIN_SCOPE = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity."""
    user_id: str
    tenant_id: str
    scopes: FrozenSet[str] = frozenset()
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes or ADMIN_SCOPE in self.scopes


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthManager:
    """Issues (local only) and validates end-user JWTs.

    Parameters
    - secret_key: Symmetric key for HS* algorithms
    - algorithm: JWT algorithm (``HS256`` locally, ``RS256`` with JWKS)
    - access_token_expire_minutes: Default TTL for locally issued tokens
    - issuer / audience: Enforced when set
    - jwks_url: OIDC JWKS endpoint; switches verification to provider keys
    - tenant_claim: Claim carrying the tenant id (``custom:tenant_id`` on Cognito)
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_token_expire_minutes: int = 30,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        jwks_url: Optional[str] = None,
        tenant_claim: str = "tenant_id"
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes
        self.issuer = issuer
        self.audience = audience
        self.tenant_claim = tenant_claim
        self.jwks_client = jwt.PyJWKClient(jwks_url) if jwks_url else None

    def create_access_token(
        self,
        subject: str,
        tenant_id: str,
        scopes: Iterable[str] = (),
        expires_delta: Optional[timedelta] = None,
        **extra_claims: Any
    ) -> str:
        """Create a signed access token for local development and tests."""
        if self.jwks_client is not None:
            raise RuntimeError("Tokens are issued by the OIDC provider when a JWKS URL is configured")

        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))
        to_encode: Dict[str, Any] = {
            "sub": subject,
            self.tenant_claim: tenant_id,
            "scope": " ".join(sorted(scopes)),
            "iat": now,
            "exp": expire,
            **extra_claims,
        }
        if self.issuer:
            to_encode["iss"] = self.issuer
        if self.audience:
            to_encode["aud"] = self.audience
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify and decode a JWT token.

        Raises ``HTTPException`` with 401 on invalid/expired tokens.
        """
        try:
            if self.jwks_client is not None:
                key = self.jwks_client.get_signing_key_from_jwt(token).key
            else:
                key = self.secret_key
            return jwt.decode(
                token,
                key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise _unauthorized("Token has expired")
        except jwt.PyJWKClientError as e:
            logger.warning("JWKS key lookup failed", error=str(e))
            raise _unauthorized("Could not validate credentials")
        except jwt.InvalidTokenError as e:
            logger.info("Rejected bearer token", error=str(e))
            raise _unauthorized("Could not validate credentials")

    def principal_from_claims(self, claims: Dict[str, Any]) -> Principal:
        """Map verified claims onto a ``Principal``."""
        user_id = claims.get("sub")
        tenant_id = claims.get(self.tenant_claim)
        if not user_id or not tenant_id:
            raise _unauthorized("Token is missing subject or tenant claims")
        try:
            tenant_id = validate_tenant_id(str(tenant_id))
        except InvalidAssetKeyError:
            logger.warning("Rejected token with malformed tenant claim", tenant_claim=self.tenant_claim)
            raise _unauthorized("Token tenant claim is malformed")
        return Principal(
            user_id=str(user_id),
            tenant_id=tenant_id,
            scopes=_extract_scopes(claims),
            claims=claims,
        )

    def authenticate(self, token: str) -> Principal:
        return self.principal_from_claims(self.verify_token(token))


def _extract_scopes(claims: Dict[str, Any]) -> FrozenSet[str]:
    """Collect scopes from ``scope`` (space separated), ``scp`` and groups."""
    scopes = set()
    raw_scope = claims.get("scope")
    if isinstance(raw_scope, str):
        scopes.update(s for s in raw_scope.split() if s)
    for name in ("scp", "cognito:groups"):
        value = claims.get(name)
        if isinstance(value, (list, tuple)):
            scopes.update(str(v) for v in value)
    return frozenset(scopes)


def get_auth_manager(request: Request) -> AuthManager:
    """Get auth manager from application state."""
    return request.app.state.auth_manager


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_manager: AuthManager = Depends(get_auth_manager)
) -> Principal:
    """FastAPI dependency resolving the caller from the bearer token."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")
    if auth_manager.jwks_client is not None:
        # JWKS key lookup does blocking HTTP.
        principal = await asyncio.to_thread(auth_manager.authenticate, credentials.credentials)
    else:
        principal = auth_manager.authenticate(credentials.credentials)
    structlog.contextvars.bind_contextvars(tenant_id=principal.tenant_id, user_id=principal.user_id)
    return principal


def require_scope(scope: str) -> Callable[..., Principal]:
    """Build a dependency that additionally requires ``scope``."""
    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_scope(scope):
            logger.warning(
                "Missing required scope",
                scope=scope,
                tenant_id=principal.tenant_id,
                user_id=principal.user_id
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Scope '{scope}' required"
            )
        return principal
    return dependency


def create_auth_manager_from_config(config) -> AuthManager:
    """Create auth manager from config."""
    return AuthManager(
        secret_key=config.ml_jwt_secret_key,
        algorithm=config.ml_jwt_algorithm,
        access_token_expire_minutes=config.ml_jwt_access_token_expire_minutes,
        issuer=config.ml_oidc_issuer,
        audience=config.ml_oidc_audience,
        jwks_url=config.ml_oidc_jwks_url,
        tenant_claim=config.ml_oidc_tenant_claim,
    )
