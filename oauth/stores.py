"""Refresh token storage backed by the Supabase `oauth_refresh_tokens` table.

Refresh tokens are the only server-side OAuth state: authorization codes and
access tokens are signed JWTs (see oauth/tokens.py). Every operation here is a
single-statement call, so concurrent handlers rely on the database's row-level
atomicity instead of locks.

The supabase-py client is synchronous; calls run in the threadpool so the event
loop is not blocked while the request is in flight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from errors import StorageError

logger = logging.getLogger(__name__)

REFRESH_TOKENS_TABLE = "oauth_refresh_tokens"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime:
    """Parse a timestamptz as returned by PostgREST."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RefreshTokenRecord:
    token: str
    subject: str
    client_id: str
    issued_at: datetime
    expires_at: datetime
    scope: str = ""

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    @classmethod
    def from_row(cls, row: dict) -> "RefreshTokenRecord":
        return cls(
            token=row["token"],
            subject=row["user_id"],
            client_id=row["client_id"],
            issued_at=parse_timestamp(row["issued_at"]),
            expires_at=parse_timestamp(row["expires_at"]),
            scope=row.get("scope") or "",
        )

    def to_row(self) -> dict:
        return {
            "token": self.token,
            "user_id": self.subject,
            "client_id": self.client_id,
            "scope": self.scope,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class RefreshTokenStore:
    """Persists, looks up and revokes refresh tokens."""

    def __init__(self, supabase_client, table: str = REFRESH_TOKENS_TABLE,
                 clock: Callable[[], datetime] = utcnow):
        self._supabase = supabase_client
        self._table = table
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def _execute(self, action: str, build):
        """Run one query built by `build(table)` and wrap any failure in StorageError."""
        def run():
            return build(self._supabase.table(self._table)).execute()

        try:
            return await run_in_threadpool(run)
        except Exception as e:
            logger.error(f"[STORE] {action} failed: {e}")
            raise StorageError(f"refresh token {action} failed: {e}") from e

    async def put(self, token: str, subject: str, client_id: str, issued_at: datetime,
                  expires_at: datetime, scope: str = "") -> None:
        record = RefreshTokenRecord(token, subject, client_id, issued_at, expires_at, scope)
        await self._execute("insert", lambda t: t.insert(record.to_row()))
        logger.debug(f"[STORE] Stored refresh token for {subject}")

    async def get(self, token: str) -> Optional[RefreshTokenRecord]:
        """Return the record if present and unexpired. Expired records are deleted."""
        if not token:
            return None

        response = await self._execute(
            "lookup", lambda t: t.select("*").eq("token", token).limit(1)
        )
        rows = response.data or []
        if not rows:
            return None

        record = RefreshTokenRecord.from_row(rows[0])
        if not record.is_valid(self._clock()):
            logger.info(f"[STORE] Refresh token for {record.subject} expired, removing")
            await self.delete(token)
            return None
        return record

    async def delete(self, token: str) -> None:
        # Deleting a missing row matches nothing and is not an error
        await self._execute("delete", lambda t: t.delete().eq("token", token))

    async def delete_all_for_subject(self, subject: str) -> None:
        """Revoke every refresh token owned by `subject`.

        Access tokens already issued to the subject stay valid until they expire.
        """
        await self._execute("revoke", lambda t: t.delete().eq("user_id", subject))
        logger.info(f"[STORE] Revoked all refresh tokens for {subject}")

    async def consume(self, token: str, client_id: Optional[str] = None) -> Optional[RefreshTokenRecord]:
        """Delete `token` and return its record if it was live.

        One DELETE ... RETURNING statement, so of two concurrent callers only
        one gets the row back. With `client_id`, a token issued to another
        client matches nothing and stays in place.
        """
        if not token:
            return None

        def build(t):
            query = t.delete().eq("token", token)
            if client_id:
                query = query.eq("client_id", client_id)
            return query

        response = await self._execute("consume", build)
        rows = response.data or []
        if len(rows) != 1:
            return None

        record = RefreshTokenRecord.from_row(rows[0])
        if not record.is_valid(self._clock()):
            logger.info(f"[STORE] Consumed expired refresh token for {record.subject}")
            return None
        return record

    async def purge_expired(self) -> None:
        """Opportunistic sweep of expired rows. Lookups never depend on it."""
        cutoff = self._clock().isoformat()
        await self._execute("purge", lambda t: t.delete().lt("expires_at", cutoff))
        logger.debug("[STORE] Purged expired refresh tokens")
