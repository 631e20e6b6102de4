"""Auth bridge: identity-provider session -> OAuth code -> token pair.

States:

    Unauthenticated -> AuthorizationRequested   begin_authorization()
    AuthorizationRequested -> CodeIssued        complete_authorization()
    CodeIssued -> TokenIssued                   exchange_code()
    TokenIssued -> Refreshing -> TokenIssued    refresh()
    * -> Revoked                                sign_out() / revoke()

Authorization codes are not single-use: a code can be exchanged again until it
expires (10 minutes). It is bound to its client id and redirect URI.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from errors import AuthorizationError, InvalidToken, OAuthError, StorageError
from oauth.stores import RefreshTokenRecord, RefreshTokenStore
from oauth.tokens import AuthorizationRequest, TokenCodec, parse_scope

logger = logging.getLogger(__name__)

REFRESH_TOKEN_BYTES = 32


def append_query(url: str, params: dict) -> str:
    """Add `params` to `url`, keeping any query it already has."""
    parts = urlsplit(url)
    extra = urlencode(params)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"

    def to_dict(self) -> dict:
        body = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


class AuthBridgeFlow:
    """Mints, exchanges, refreshes and revokes tokens for one OAuth client."""

    def __init__(
        self,
        codec: TokenCodec,
        store: RefreshTokenStore,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 30 * 24 * 60 * 60,
        rotate_refresh_tokens: bool = True,
        expected_client_id: str = "",
    ):
        self.codec = codec
        self.store = store
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.expected_client_id = expected_client_id

    # ---- authorize ----

    def begin_authorization(self, response_type: str, client_id: str, redirect_uri: str,
                            scope: str = "", state: str = "") -> str:
        """Validate an authorization request and return the signed stash for it."""
        if response_type != "code":
            raise AuthorizationError("unsupported_response_type")
        if not client_id or not redirect_uri:
            raise AuthorizationError("invalid_request")
        if self.expected_client_id and client_id != self.expected_client_id:
            raise AuthorizationError("unauthorized_client")

        parts = urlsplit(redirect_uri)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise AuthorizationError("invalid_redirect_uri")

        return self.codec.issue_authorization_request(
            AuthorizationRequest(client_id=client_id, redirect_uri=redirect_uri,
                                 scope=scope or "", state=state or "")
        )

    def complete_authorization(self, stash: Optional[str], subject: Optional[str]) -> str:
        """Issue a code for `subject` and return the client redirect URL."""
        if not stash:
            raise AuthorizationError("missing_oauth_params")
        try:
            request = self.codec.verify_authorization_request(stash)
        except InvalidToken:
            raise AuthorizationError("missing_oauth_params")
        if not subject:
            raise AuthorizationError("no_session")

        code = self.codec.issue_authorization_code(
            subject=subject,
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            scopes=parse_scope(request.scope),
        )
        logger.info(f"[OAUTH] Issued authorization code for {subject} (client {request.client_id})")

        params = {"code": code}
        if request.state:
            params["state"] = request.state
        return append_query(request.redirect_uri, params)

    # ---- token ----

    def _issue_access_token(self, subject: str, client_id: str, scopes: list) -> str:
        return self.codec.issue_access_token(subject, client_id, scopes, self.access_token_ttl)

    def _new_refresh_record(self, subject: str, client_id: str, scope: str) -> RefreshTokenRecord:
        issued_at = self.store.now()
        return RefreshTokenRecord(
            token=secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
            subject=subject,
            client_id=client_id,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.refresh_token_ttl),
            scope=scope,
        )

    async def exchange_code(self, code: str, client_id: str,
                            redirect_uri: Optional[str] = None) -> TokenResponse:
        """Exchange an authorization code for an access token and refresh token.

        Raises:
            OAuthError: invalid_request, invalid_grant or invalid_client.
            StorageError: the refresh token could not be persisted.
        """
        if not code:
            raise OAuthError("invalid_request", "Missing authorization code")
        if not client_id:
            raise OAuthError("invalid_request", "Missing client_id")

        try:
            claims = self.codec.verify_authorization_code(code)
        except InvalidToken as e:
            logger.info(f"[TOKEN] Rejected authorization code: {e.reason}")
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        if claims.client_id != client_id:
            raise OAuthError("invalid_client", "Client id does not match authorization code")
        if self.expected_client_id and client_id != self.expected_client_id:
            raise OAuthError("invalid_client", "Invalid client credentials")
        if redirect_uri and redirect_uri != claims.redirect_uri:
            raise OAuthError("invalid_grant", "Redirect URI mismatch")

        scope = " ".join(claims.scopes)
        record = self._new_refresh_record(claims.subject, client_id, scope)
        await self.store.put(record.token, record.subject, record.client_id,
                             record.issued_at, record.expires_at, record.scope)

        logger.info(f"[TOKEN] Token pair issued for {claims.subject}")
        return TokenResponse(
            access_token=self._issue_access_token(claims.subject, client_id, claims.scopes),
            expires_in=self.access_token_ttl,
            scope=scope,
            refresh_token=record.token,
        )

    async def refresh(self, refresh_token: str, client_id: Optional[str] = None) -> TokenResponse:
        """Mint a new access token from a stored refresh token.

        With rotation the presented token is spent before its replacement is
        stored, so each refresh token answers at most one request. If storing
        the replacement fails the client has to authorize again.

        Raises:
            OAuthError: invalid_request or invalid_grant.
            StorageError: the store could not be read or written.
        """
        if not refresh_token:
            raise OAuthError("invalid_request", "Missing refresh_token")

        if self.rotate_refresh_tokens:
            # Spending the old token is the atomic step; a replay finds nothing
            record = await self.store.consume(refresh_token, client_id)
            if record is None:
                raise OAuthError("invalid_grant", "Invalid, expired or already used refresh token")
            replacement = self._new_refresh_record(record.subject, record.client_id, record.scope)
            await self.store.put(replacement.token, replacement.subject, replacement.client_id,
                                 replacement.issued_at, replacement.expires_at, replacement.scope)
            returned_token = replacement.token
        else:
            record = await self.store.get(refresh_token)
            if record is None:
                raise OAuthError("invalid_grant", "Invalid or expired refresh token")
            if client_id and client_id != record.client_id:
                raise OAuthError("invalid_grant", "Refresh token was issued to another client")
            returned_token = refresh_token

        scopes = parse_scope(record.scope)

        logger.info(f"[TOKEN] Access token refreshed for {record.subject}")
        return TokenResponse(
            access_token=self._issue_access_token(record.subject, record.client_id, scopes),
            expires_in=self.access_token_ttl,
            scope=" ".join(scopes),
            refresh_token=returned_token,
        )

    # ---- sign-out / revocation ----

    async def sign_out(self, access_token: str) -> Optional[str]:
        """Revoke all refresh tokens of the token's subject.

        Never raises: the client discards its tokens whatever happens here.
        Returns the subject when one was revoked.
        """
        try:
            claims = self.codec.verify_access_token(access_token)
        except InvalidToken as e:
            logger.info(f"[SIGNOUT] Token not verifiable ({e.reason}), nothing to revoke")
            return None

        try:
            await self.store.delete_all_for_subject(claims.subject)
        except StorageError as e:
            logger.warning(f"[SIGNOUT] Could not revoke refresh tokens for {claims.subject}: {e}")
            return None

        logger.info(f"[SIGNOUT] Signed out {claims.subject}")
        return claims.subject

    async def revoke(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """Token revocation: unknown or invalid tokens are silently accepted.

        Raises:
            StorageError: the store could not be reached.
        """
        if token_type_hint != "access_token":
            record = await self.store.get(token)
            if record is not None:
                await self.store.delete(token)
                logger.info(f"[REVOKE] Refresh token revoked for {record.subject}")
                return

        try:
            claims = self.codec.verify_access_token(token)
        except InvalidToken:
            logger.debug("[REVOKE] Token is neither a stored refresh token nor a valid access token")
            return

        await self.store.delete_all_for_subject(claims.subject)
        logger.info(f"[REVOKE] Access token presented, refresh tokens revoked for {claims.subject}")

    def userinfo(self, access_token: str) -> dict:
        """Raises InvalidToken when the access token does not verify."""
        claims = self.codec.verify_access_token(access_token)
        return {"sub": claims.subject, "email_verified": True}
