"""OAuth endpoints for the AI-agent client.

- Discovery metadata (/.well-known/openid-configuration, /oauth/jwks)
- Authorization flow (/oauth/authorize -> identity provider login -> /oauth/callback)
- Token endpoint (/oauth/token)
- Sign-out, revocation and userinfo (/oauth/signout, /oauth/revoke, /oauth/userinfo)
"""

import logging

from fastapi import APIRouter, Request, Form
from fastapi.responses import JSONResponse, RedirectResponse

from errors import AuthorizationError, InvalidToken, OAuthError, StorageError
from oauth.flow import AuthBridgeFlow, append_query
from oauth.identity import SupabaseIdentity, bearer_token
from oauth.tokens import AUTHORIZATION_REQUEST_TTL

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

OAUTH_PARAMS_COOKIE_NAME = "oauth_params"
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# These will be set by init_oauth_routes()
_flow: AuthBridgeFlow = None
_identity: SupabaseIdentity = None
_server_url: str = ""
_login_url: str = "/login"
_error_page_url: str = "/"


def init_oauth_routes(flow: AuthBridgeFlow, identity: SupabaseIdentity, server_url: str,
                      login_url: str = "/login", error_page_url: str = "/"):
    """Wire the router to its collaborators.

    Must be called before including the router in the app.
    """
    global _flow, _identity, _server_url, _login_url, _error_page_url
    _flow = flow
    _identity = identity
    _server_url = server_url
    _login_url = login_url
    _error_page_url = error_page_url


def error_redirect(error: str) -> RedirectResponse:
    response = RedirectResponse(url=append_query(_error_page_url, {"error": error}), status_code=302)
    response.delete_cookie(OAUTH_PARAMS_COOKIE_NAME, path="/")
    return response


def is_json_request(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() == "application/json"


def oauth_error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=NO_STORE_HEADERS)


# ============== Discovery ==============

@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    """OpenID Provider metadata for agent clients."""
    return {
        "issuer": _server_url,
        "authorization_endpoint": f"{_server_url}/oauth/authorize",
        "token_endpoint": f"{_server_url}/oauth/token",
        "userinfo_endpoint": f"{_server_url}/oauth/userinfo",
        "revocation_endpoint": f"{_server_url}/oauth/revoke",
        "jwks_uri": f"{_server_url}/oauth/jwks",
        "scopes_supported": ["openid", "email", "profile"],
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["HS256"],
        "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
    }


@router.get("/oauth/jwks")
async def jwks():
    return _flow.codec.jwks()


# ============== Authorization Flow ==============

@router.get("/oauth/authorize")
async def authorize(
    response_type: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: str = "",
):
    """Stash the request in a signed cookie and hand off to the identity provider."""
    try:
        stash = _flow.begin_authorization(response_type, client_id, redirect_uri, scope, state)
    except AuthorizationError as e:
        logger.info(f"[AUTHORIZE] Rejected authorization request: {e.error}")
        return error_redirect(e.error)

    login = append_query(_login_url, {"next": f"{_server_url}/oauth/callback"})
    response = RedirectResponse(url=login, status_code=302)
    response.set_cookie(
        OAUTH_PARAMS_COOKIE_NAME,
        stash,
        max_age=AUTHORIZATION_REQUEST_TTL,
        httponly=True,
        secure=_server_url.startswith("https://"),
        samesite="lax",
        path="/",
    )
    return response


@router.get("/oauth/callback")
async def callback(request: Request):
    """Return point from the identity provider: issue the code and redirect to the client."""
    subject = await _identity.get_subject(request)
    try:
        redirect_url = _flow.complete_authorization(
            request.cookies.get(OAUTH_PARAMS_COOKIE_NAME), subject
        )
    except AuthorizationError as e:
        logger.info(f"[CALLBACK] Authorization failed: {e.error}")
        return error_redirect(e.error)

    response = RedirectResponse(url=redirect_url, status_code=302)
    response.delete_cookie(OAUTH_PARAMS_COOKIE_NAME, path="/")
    return response


# ============== Token Endpoint ==============

@router.post("/oauth/token")
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    refresh_token: str = Form(None),
):
    """OAuth 2.0 Token Endpoint (authorization_code and refresh_token grants)."""
    # Handle form data or JSON. A form body has already been read by now.
    if grant_type is None and is_json_request(request):
        try:
            data = await request.json()
        except ValueError:
            return oauth_error_response(OAuthError("invalid_request", "Body must be form data or JSON"))
        if not isinstance(data, dict):
            return oauth_error_response(OAuthError("invalid_request", "Body must be an object"))
        grant_type = data.get("grant_type")
        code = data.get("code")
        redirect_uri = data.get("redirect_uri")
        client_id = data.get("client_id")
        refresh_token = data.get("refresh_token")

    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

    try:
        if not grant_type:
            raise OAuthError("invalid_request", "Missing grant_type")
        if grant_type == "authorization_code":
            result = await _flow.exchange_code(code, client_id, redirect_uri)
        elif grant_type == "refresh_token":
            result = await _flow.refresh(refresh_token, client_id)
        else:
            raise OAuthError("unsupported_grant_type",
                             "Supported grant types are authorization_code and refresh_token")
    except OAuthError as e:
        return oauth_error_response(e)
    except StorageError:
        return oauth_error_response(
            OAuthError("server_error", "Token storage is unavailable", status_code=500)
        )

    return JSONResponse(result.to_dict(), headers=NO_STORE_HEADERS)


# ============== Sign-out / Revocation ==============

@router.post("/oauth/signout")
async def signout(request: Request):
    """Revoke the caller's refresh tokens. Succeeds whenever a token was supplied."""
    access_token = bearer_token(request)
    if not access_token:
        return JSONResponse(
            {"error": "invalid_request", "error_description": "Missing bearer token"},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )

    await _flow.sign_out(access_token)
    return {"success": True, "message": "Successfully signed out"}


@router.post("/oauth/revoke")
async def revoke(token: str = Form(None), token_type_hint: str = Form(None)):
    """Token revocation (RFC 7009): unknown tokens still get a 200."""
    if not token:
        return oauth_error_response(OAuthError("invalid_request", "Missing token parameter"))

    try:
        await _flow.revoke(token, token_type_hint)
    except StorageError:
        return oauth_error_response(
            OAuthError("server_error", "Token storage is unavailable", status_code=500)
        )
    return {"revoked": True}


@router.get("/oauth/userinfo")
async def userinfo(request: Request):
    access_token = bearer_token(request)
    try:
        return _flow.userinfo(access_token)
    except InvalidToken:
        return JSONResponse(
            {"error": "invalid_token", "error_description": "Invalid or expired access token"},
            status_code=401,
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
