"""Identity-provider session lookup.

The user signs in on the Supabase-hosted login page; afterwards the browser
carries a Supabase access token, either in the `sb-access-token` cookie or as a
bearer header. This module only turns that token into a subject.
"""

import logging
from typing import Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "sb-access-token"


def bearer_token(request: Request) -> Optional[str]:
    """Return the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


class SupabaseIdentity:
    """Resolves the subject of a Supabase session."""

    def __init__(self, supabase_client):
        self._supabase = supabase_client

    async def get_subject(self, request: Request) -> Optional[str]:
        token = request.cookies.get(SESSION_COOKIE_NAME) or bearer_token(request)
        if not token:
            return None
        if self._supabase is None:
            logger.warning("[IDP] Supabase is not configured, cannot resolve session")
            return None

        try:
            response = await run_in_threadpool(self._supabase.auth.get_user, token)
        except Exception as e:
            logger.info(f"[IDP] Session lookup failed: {e}")
            return None

        user = getattr(response, "user", None)
        if user is None:
            return None
        return user.id
