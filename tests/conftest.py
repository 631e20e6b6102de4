"""Shared fixtures: in-memory stand-ins for Supabase and the paywall API, and a fixed clock."""

import json
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from config import load_config
from oauth.flow import AuthBridgeFlow
from oauth.stores import RefreshTokenStore, parse_timestamp
from oauth.tokens import TokenCodec

SECRET = "test-signing-secret-that-is-long-enough-for-hs256"
OTHER_SECRET = "another-signing-secret-that-is-long-enough-for-hs256"
ISSUER = "http://testserver"
CLIENT_ID = "c1"
REDIRECT_URI = "https://x/cb"


class FakeQuery:
    """Mimics the supabase-py query builder for the calls the store makes."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = None
        self.payload = None
        self.filters = []
        self.max_rows = None

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: parse_timestamp(row[column]) < parse_timestamp(value))
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        # Each statement is atomic, as a single SQL statement is in Postgres
        with self.db.lock:
            return self._execute()

    def _execute(self):
        self.db.calls.append((self.table, self.op))
        if self.db.fail:
            raise ConnectionError("database unavailable")

        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            rows.extend(dict(r) for r in new_rows)
            return SimpleNamespace(data=new_rows)
        if self.op == "select":
            found = [dict(r) for r in rows if self._matches(r)]
            if self.max_rows is not None:
                found = found[:self.max_rows]
            return SimpleNamespace(data=found)
        if self.op == "delete":
            removed = [r for r in rows if self._matches(r)]
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return SimpleNamespace(data=removed)
        raise AssertionError(f"unexpected operation {self.op}")


class FakeAuth:
    def __init__(self):
        self.sessions = {}

    def get_user(self, jwt):
        if jwt not in self.sessions:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=self.sessions[jwt]))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.calls = []
        self.fail = False
        self.lock = threading.Lock()
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)


class Clock:
    """Settable clock usable as both a float and a datetime source."""

    def __init__(self, start: float = 1_700_000_000):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, issuer=ISSUER, clock=clock)


@pytest.fixture
def store(supabase, clock):
    return RefreshTokenStore(supabase, clock=clock.utc)


@pytest.fixture
def flow(codec, store):
    return AuthBridgeFlow(codec, store, access_token_ttl=900,
                          refresh_token_ttl=int(timedelta(days=30).total_seconds()))


@pytest.fixture
def config():
    return load_config({
        "OAUTH_JWT_SECRET": SECRET,
        "OAUTH_ISSUER": ISSUER,
        "OAUTH_CLIENT_ID": CLIENT_ID,
        "LOGIN_URL": "https://idp.test/login",
        "ERROR_PAGE_URL": "https://app.test/error",
        "PAYWALL_API_URL": "https://paywall.test",
        "PAYWALL_SECRET_KEY": "sk_test",
    })


class FakePaywall:
    """httpx MockTransport handler emulating the paywall customer API."""

    def __init__(self):
        self.customers = {}
        self.requests = []
        self.fail_with = None
        self.cancelled = []

    def add_customer(self, ref, external_ref, purchases=None):
        self.customers[ref] = {
            "reference": ref,
            "externalRef": external_ref,
            "email": f"{external_ref}@example.com",
            "name": external_ref,
            "purchases": purchases or [],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer sk_test"
        if self.fail_with is not None:
            if isinstance(self.fail_with, Exception):
                raise self.fail_with
            return httpx.Response(self.fail_with, text="boom")

        path = request.url.path
        if request.method == "GET" and path == "/v1/sdk/customers":
            external_ref = request.url.params["externalRef"]
            for customer in self.customers.values():
                if customer["externalRef"] == external_ref:
                    return httpx.Response(200, json={"customers": [customer]})
            return httpx.Response(404, text="not found")
        if request.method == "GET" and path.startswith("/v1/sdk/customers/"):
            ref = path.rsplit("/", 1)[1]
            if ref in self.customers:
                return httpx.Response(200, json=self.customers[ref])
            return httpx.Response(404, text="not found")
        if request.method == "POST" and path == "/v1/sdk/customers":
            body = json.loads(request.content)
            ref = f"cus_{len(self.customers) + 1}"
            self.add_customer(ref, body["externalRef"])
            return httpx.Response(201, json={"reference": ref, **body})
        if request.method == "POST" and path.endswith("/cancel"):
            purchase_ref = path.split("/")[-2]
            self.cancelled.append(purchase_ref)
            for customer in self.customers.values():
                for purchase in customer["purchases"]:
                    if purchase["reference"] == purchase_ref:
                        purchase["status"] = "cancelled"
            return httpx.Response(200, json={"purchase": {"reference": purchase_ref,
                                                          "status": "cancelled"}})
        return httpx.Response(404, text="no route")


@pytest.fixture
def paywall():
    return FakePaywall()
