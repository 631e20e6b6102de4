"""Bearer-token middleware for the billing API.

Validates the access tokens this service issues. Validation is stateless
(signature + expiry), so a token keeps working until it expires even after the
user signs out.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from errors import InvalidToken
from oauth.identity import bearer_token
from oauth.tokens import TokenCodec

logger = logging.getLogger(__name__)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Require a valid access token on every path under `prefix`.

    The verified claims are exposed as `request.state.token_claims` and the
    subject as `request.state.subject`.
    """

    def __init__(self, app, codec: TokenCodec, server_url: str, prefix: str = "/api/"):
        super().__init__(app)
        self.codec = codec
        self.server_url = server_url
        self.prefix = prefix

    def _unauthorized(self, description: str) -> JSONResponse:
        return JSONResponse(
            {"error": "unauthorized", "error_description": description},
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer realm="{self.server_url}"'},
        )

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.prefix):
            return await call_next(request)

        token = bearer_token(request)
        if not token:
            logger.info("[AUTH] Request rejected: no Bearer token")
            return self._unauthorized("Missing or invalid Authorization header")

        try:
            claims = self.codec.verify_access_token(token)
        except InvalidToken as e:
            logger.info(f"[AUTH] Request rejected: {e.reason}")
            return self._unauthorized("Invalid or expired token")

        request.state.token_claims = claims
        request.state.subject = claims.subject
        return await call_next(request)
