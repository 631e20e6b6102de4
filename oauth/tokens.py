"""Signed token codec for authorization codes and access tokens.

Codes, access tokens and the stashed authorization request are all HS256 JWTs
signed with one process-wide secret. They are told apart by the `type` claim,
which is checked before any other claim is trusted. Validity is signature plus
expiry only: there is no server-side state and no revocation list, so a token
stays usable until `exp` even after sign-out.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import jwt

from errors import ConfigurationError, InvalidToken

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_KEY_ID = "bridge-hs256"

AUTHORIZATION_CODE = "authorization_code"
ACCESS_TOKEN = "access_token"
AUTHORIZATION_REQUEST = "authorization_request"

AUTHORIZATION_CODE_TTL = 10 * 60
AUTHORIZATION_REQUEST_TTL = 10 * 60
DEFAULT_SCOPES = ["openid"]


def parse_scope(scope: Optional[str]) -> list:
    """Split a space-delimited scope string, keeping order and dropping duplicates."""
    scopes = []
    for item in (scope or "").split():
        if item not in scopes:
            scopes.append(item)
    return scopes or list(DEFAULT_SCOPES)


@dataclass
class AuthorizationCodeClaims:
    subject: str
    client_id: str
    redirect_uri: str
    scopes: list = field(default_factory=list)


@dataclass
class AccessTokenClaims:
    subject: str
    client_id: str
    scopes: list = field(default_factory=list)
    expires_at: int = 0

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


@dataclass
class AuthorizationRequest:
    client_id: str
    redirect_uri: str
    scope: str = ""
    state: str = ""


class TokenCodec:
    """Issues and verifies signed, self-contained tokens."""

    def __init__(self, secret: str, issuer: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ConfigurationError("OAUTH_JWT_SECRET is not set")
        self._secret = secret
        self.issuer = issuer
        self._clock = clock

    def issue(self, claims: dict, ttl: int) -> str:
        """Sign `claims` with iat/exp (and iss when configured) added."""
        now = self._clock()
        payload = dict(claims)
        payload["iat"] = int(now)
        # Rounded up: a token is never dead before now + ttl
        payload["exp"] = math.ceil(now + ttl)
        if self.issuer:
            payload["iss"] = self.issuer
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM,
                          headers={"kid": JWT_KEY_ID})

    def verify(self, token: str, expected_type: str) -> dict:
        """Return the claims of a valid token of `expected_type`.

        Raises:
            InvalidToken: bad signature, malformed, expired, wrong issuer or wrong type.
        """
        if not token:
            raise InvalidToken("missing token")
        try:
            # Time claims are checked below against the injected clock
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={
                    "require": ["exp", "type"],
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_aud": False,
                },
                issuer=self.issuer,
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"[JWT] Rejected token: {e}")
            raise InvalidToken(str(e)) from e

        if payload.get("type") != expected_type:
            logger.debug(f"[JWT] Expected {expected_type}, got {payload.get('type')}")
            raise InvalidToken(f"not an {expected_type}")

        if self._clock() >= payload["exp"]:
            raise InvalidToken("token expired")

        return payload

    # ---- authorization codes ----

    def issue_authorization_code(self, subject: str, client_id: str, redirect_uri: str,
                                 scopes: list) -> str:
        return self.issue({
            "sub": subject,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scopes": list(scopes),
            "type": AUTHORIZATION_CODE,
        }, AUTHORIZATION_CODE_TTL)

    def verify_authorization_code(self, code: str) -> AuthorizationCodeClaims:
        payload = self.verify(code, AUTHORIZATION_CODE)
        try:
            return AuthorizationCodeClaims(
                subject=payload["sub"],
                client_id=payload["client_id"],
                redirect_uri=payload["redirect_uri"],
                scopes=list(payload.get("scopes") or DEFAULT_SCOPES),
            )
        except KeyError as e:
            raise InvalidToken(f"authorization code missing claim {e}") from e

    # ---- access tokens ----

    def issue_access_token(self, subject: str, client_id: str, scopes: list, ttl: int) -> str:
        return self.issue({
            "sub": subject,
            "aud": client_id,
            "client_id": client_id,
            "scopes": list(scopes),
            "scope": " ".join(scopes),
            "type": ACCESS_TOKEN,
        }, ttl)

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        payload = self.verify(token, ACCESS_TOKEN)
        try:
            return AccessTokenClaims(
                subject=payload["sub"],
                client_id=payload["client_id"],
                scopes=list(payload.get("scopes") or []),
                expires_at=payload["exp"],
            )
        except KeyError as e:
            raise InvalidToken(f"access token missing claim {e}") from e

    # ---- stashed authorization request (oauth_params cookie) ----

    def issue_authorization_request(self, request: AuthorizationRequest) -> str:
        return self.issue({
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "scope": request.scope,
            "state": request.state,
            "type": AUTHORIZATION_REQUEST,
        }, AUTHORIZATION_REQUEST_TTL)

    def verify_authorization_request(self, token: str) -> AuthorizationRequest:
        payload = self.verify(token, AUTHORIZATION_REQUEST)
        try:
            return AuthorizationRequest(
                client_id=payload["client_id"],
                redirect_uri=payload["redirect_uri"],
                scope=payload.get("scope") or "",
                state=payload.get("state") or "",
            )
        except KeyError as e:
            raise InvalidToken(f"authorization request missing claim {e}") from e

    def jwks(self) -> dict:
        """Key metadata for /oauth/jwks. Symmetric keys are never published."""
        return {
            "keys": [
                {"kty": "oct", "kid": JWT_KEY_ID, "use": "sig", "alg": JWT_ALGORITHM}
            ]
        }
