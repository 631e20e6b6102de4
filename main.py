"""GPT Auth Bridge - OAuth bridge between Supabase sessions and AI-agent clients.

It handles:
- OAuth authorization code flow for the agent client (oauth/)
- Refresh token persistence and revocation in Supabase (oauth/stores.py)
- Deduplicated customer/subscription lookups against the paywall API (billing/)

Run with:
    uvicorn main:create_app --factory
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import create_client

from billing.client import PaywallClient
from billing.endpoints import router as billing_router, init_billing_routes
from billing.service import CustomerService
from config import Config, load_config
from errors import ConfigurationError, StorageError
from logging_config import flush_logs, setup_logging
from oauth.endpoints import router as oauth_router, init_oauth_routes
from oauth.flow import AuthBridgeFlow
from oauth.identity import SupabaseIdentity
from oauth.middleware import BearerAuthMiddleware
from oauth.stores import RefreshTokenStore
from oauth.tokens import TokenCodec

SERVICE_NAME = "gpt-auth-bridge"
VERSION = "0.3.0"

logger = logging.getLogger(__name__)


def load_environment():
    """Load .env from the working directory when present."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)


def create_app(
    config: Config = None,
    supabase_client=None,
    paywall_client: PaywallClient = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the FastAPI app.

    Raises:
        ConfigurationError: a required setting is missing or invalid.
    """
    if config is None:
        load_environment()
        config = load_config()
    config.validate()

    if supabase_client is None:
        if not (config.supabase_url and config.supabase_key):
            raise ConfigurationError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY) must be set"
            )
        supabase_client = create_client(config.supabase_url, config.supabase_key)

    if configure_logging:
        setup_logging(SERVICE_NAME, level=config.log_level, supabase_client=supabase_client)

    logger.info(f"[STARTUP] Issuer: {config.issuer}")
    logger.info(f"[STARTUP] Access token TTL: {config.access_token_ttl}s, "
                f"refresh rotation: {config.refresh_token_rotation}")

    codec = TokenCodec(config.jwt_secret, issuer=config.issuer)
    store = RefreshTokenStore(supabase_client)
    flow = AuthBridgeFlow(
        codec,
        store,
        access_token_ttl=config.access_token_ttl,
        refresh_token_ttl=config.refresh_token_ttl,
        rotate_refresh_tokens=config.refresh_token_rotation,
        expected_client_id=config.oauth_client_id,
    )

    if paywall_client is None:
        paywall_client = PaywallClient(
            config.paywall_secret_key,
            base_url=config.paywall_api_url,
            timeout=config.paywall_timeout,
        )
    customers = CustomerService(paywall_client, ttl=config.cache_ttl,
                                max_size=config.cache_max_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await store.purge_expired()
        except StorageError as e:
            logger.warning(f"[STARTUP] Could not purge expired refresh tokens: {e}")
        yield
        await paywall_client.aclose()
        flush_logs()

    app = FastAPI(
        title="GPT Auth Bridge",
        description="OAuth 2.0 bridge from Supabase sessions to AI-agent clients",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.flow = flow
    app.state.customers = customers

    app.add_middleware(BearerAuthMiddleware, codec=codec, server_url=config.issuer)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_oauth_routes(
        flow,
        SupabaseIdentity(supabase_client),
        config.issuer,
        login_url=config.login_url,
        error_page_url=config.error_page_url,
    )
    app.include_router(oauth_router)

    init_billing_routes(customers)
    app.include_router(billing_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": SERVICE_NAME, "cache": customers.stats()}

    @app.get("/")
    async def root():
        return {
            "name": "GPT Auth Bridge",
            "version": VERSION,
            "oauth": {
                "openid_configuration": f"{config.issuer}/.well-known/openid-configuration",
                "authorization_endpoint": f"{config.issuer}/oauth/authorize",
                "token_endpoint": f"{config.issuer}/oauth/token",
            },
            "endpoints": ["/api/sync-customer", "/api/check-subscription", "/api/cancel-subscription"],
        }

    return app


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn
    load_environment()
    settings = load_config()
    uvicorn.run("main:create_app", factory=True, host=settings.host, port=settings.port)
