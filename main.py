#!/usr/bin/env python3

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

from auth import OAuthProxy
from cloud_client import CloudConfig
from config import Config
from errors import InvalidClientMetadataError, InvalidRequestError, OAuthError
from models import HealthCheckResponse, RateLimitErrorResponse
from rate_limit import RateLimiter, RateLimitExceeded, get_rate_limiter, rate_limit_gate
from store import MemoryStore, OAuthStore, get_store

# Initialize configuration
config = Config()

# Configure logging
logging.basicConfig(level=config.log_level, format=config.log_format)
logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def parse_body(content_type: Optional[str], raw: bytes) -> Dict[str, str]:
    """Normalize a form-encoded or JSON request body into a flat parameter map"""
    if not raw or not raw.strip():
        return {}

    if "application/x-www-form-urlencoded" in (content_type or ""):
        try:
            return dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            raise InvalidRequestError("Invalid form body")

    try:
        data = json.loads(raw)
    except ValueError:
        raise InvalidRequestError("Invalid request body")

    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be an object")

    return {key: value if isinstance(value, str) else json.dumps(value)
            for key, value in data.items() if value is not None}


def get_base_url(request: Request, app_config: Config) -> str:
    """Public base URL as seen by the caller, honouring reverse proxies"""
    scheme = request.headers.get("x-forwarded-proto", "https")
    host = request.headers.get("host") or app_config.server_host
    return f"{scheme}://{host}"


def create_app(
    app_config: Optional[Config] = None,
    store: Optional[OAuthStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    rate_limiter: Optional[RateLimiter] = None,
    strict_rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the gateway application; arguments override the environment-derived defaults"""
    app_config = app_config or config
    if store is None:
        store = get_store(app_config)
    if rate_limiter is None:
        rate_limiter = get_rate_limiter(app_config)
    if strict_rate_limiter is None:
        strict_rate_limiter = get_rate_limiter(app_config, strict=True)

    proxy = OAuthProxy(app_config, store, transport=transport)
    cloud_config = CloudConfig()

    app = FastAPI(
        title="TiDB Cloud Remote MCP OAuth Gateway",
        description="OAuth 2.1 proxy for TiDB Cloud with PKCE and dynamic client registration",
        version=app_config.service_version,
        docs_url="/docs" if app_config.is_development else None,
        redoc_url="/redoc" if app_config.is_development else None,
    )
    app.state.config = app_config
    app.state.proxy = proxy

    rate_limited = Depends(rate_limit_gate(rate_limiter))
    strictly_rate_limited = Depends(rate_limit_gate(strict_rate_limiter))

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if app_config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        decision = getattr(request.state, "rate_limit", None)
        if decision is not None:
            response.headers.update(decision.headers)

        return response

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.allowed_origins,
        allow_credentials=app_config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate", "X-Request-ID", "Retry-After"],
    )

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        logger.info(f"{request.url.path} rejected: {exc.error} - {exc.description}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=NO_STORE_HEADERS)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        body = RateLimitErrorResponse(
            error_description="Rate limit exceeded. Please try again later.",
            retry_after=exc.decision.retry_after,
        )
        return JSONResponse(status_code=429, content=body.model_dump(), headers=exc.decision.headers)

    # Health and discovery endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint with component status"""
        return HealthCheckResponse(
            status="healthy",
            service=app_config.service_name,
            version=app_config.service_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "store": "memory" if isinstance(store, MemoryStore) else "redis",
                "oauth": "configured" if app_config.oauth_configured else "not_configured",
                "cloud_api": "configured" if cloud_config.configured else "not_configured",
            },
            environment=app_config.environment,
        )

    @app.get("/")
    async def root(request: Request):
        """Service description and endpoint index"""
        base_url = get_base_url(request, app_config)
        return {
            "name": app_config.service_name,
            "version": app_config.service_version,
            "description": "OAuth 2.1 gateway for TiDB Cloud remote MCP clients",
            "authentication": "OAuth 2.1 with PKCE and Dynamic Client Registration",
            "endpoints": {
                "oauth_metadata": f"{base_url}/.well-known/oauth-authorization-server",
                "protected_resource_metadata": f"{base_url}/.well-known/oauth-protected-resource",
                "authorize": f"{base_url}/authorize",
                "token": f"{base_url}/token",
                "register": f"{base_url}/register",
                "device_authorization": f"{base_url}/device/code",
                "health": f"{base_url}/health",
            },
            "documentation": app_config.service_documentation,
        }

    # OAuth 2.0 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata(request: Request):
        return proxy.get_authorization_server_metadata(get_base_url(request, app_config))

    # OAuth 2.0 Protected Resource Metadata (RFC 9728)
    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource_metadata(request: Request):
        return proxy.get_protected_resource_metadata(get_base_url(request, app_config))

    # Dynamic Client Registration (RFC 7591)
    @app.post("/register", status_code=201, dependencies=[strictly_rate_limited])
    async def dynamic_client_registration(request: Request):
        raw = await request.body()
        try:
            metadata = json.loads(raw) if raw.strip() else {}
        except ValueError:
            raise InvalidClientMetadataError("Request body must be JSON")
        if not isinstance(metadata, dict):
            raise InvalidClientMetadataError("Request body must be a JSON object")

        return await proxy.register_client(metadata)

    # OAuth Authorization endpoint
    @app.get("/authorize", dependencies=[strictly_rate_limited])
    async def oauth_authorize(request: Request):
        """Start the flow by redirecting the user agent to TiDB Cloud"""
        upstream_url = await proxy.authorize(dict(request.query_params), get_base_url(request, app_config))
        return RedirectResponse(url=upstream_url, status_code=302)

    # Upstream redirects back here
    async def oauth_callback(request: Request):
        """Finish the upstream leg and send the user agent back to the client"""
        client_url = await proxy.handle_callback(dict(request.query_params), get_base_url(request, app_config))
        return RedirectResponse(url=client_url, status_code=302)

    callback_paths = {app_config.oauth_callback_path, "/callback"}
    for path in sorted(callback_paths):
        app.add_api_route(path, oauth_callback, methods=["GET"], dependencies=[rate_limited])

    # OAuth Token endpoint
    @app.post("/token", dependencies=[strictly_rate_limited])
    async def oauth_token(request: Request):
        params = parse_body(request.headers.get("content-type"), await request.body())
        token_response = await proxy.exchange_token(params)
        return JSONResponse(content=token_response, headers=NO_STORE_HEADERS)

    # Device Authorization (RFC 8628)
    async def device_authorization(request: Request):
        """Forward a device code request to TiDB Cloud with the proxy's client"""
        params = parse_body(request.headers.get("content-type"), await request.body())
        device = await proxy.device_authorization(params)
        return JSONResponse(content=device, headers=NO_STORE_HEADERS)

    for path in ("/device/code", "/api/device/code"):
        app.add_api_route(path, device_authorization, methods=["POST"], dependencies=[strictly_rate_limited])

    # Token introspection endpoint
    @app.post("/introspect", dependencies=[rate_limited])
    async def token_introspection(request: Request):
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        params = parse_body(request.headers.get("content-type"), await request.body())
        token = params.get("token")
        if not token:
            raise InvalidRequestError("token parameter required")

        return JSONResponse(content=await proxy.introspect_token(token), headers=NO_STORE_HEADERS)

    # Token revocation endpoint
    @app.post("/revoke", dependencies=[rate_limited])
    async def token_revocation(request: Request):
        """OAuth 2.0 Token Revocation (RFC 7009)"""
        params = parse_body(request.headers.get("content-type"), await request.body())
        token = params.get("token")
        if not token:
            raise InvalidRequestError("token parameter required")

        await proxy.revoke_token(token)
        return {"revoked": True}

    # Bearer-protected view of the caller's session
    @app.get("/session", dependencies=[rate_limited])
    async def session_info(request: Request):
        base_url = get_base_url(request, app_config)
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse(
                status_code=401,
                content={"error": "unauthorized", "error_description": "Authentication required"},
                headers={
                    "WWW-Authenticate": f'Bearer resource_metadata="{base_url}/.well-known/oauth-protected-resource"'
                },
            )

        token_info = await proxy.verify_access_token(auth_header[7:].strip())
        if not token_info:
            return JSONResponse(
                status_code=401,
                content={"error": "invalid_token", "error_description": "Invalid or expired token"},
                headers={
                    "WWW-Authenticate": (
                        f'Bearer error="invalid_token", '
                        f'resource_metadata="{base_url}/.well-known/oauth-protected-resource"'
                    )
                },
            )

        return {
            "active": True,
            "token_type": token_info.token_type,
            "scopes": token_info.scopes,
            "expires_at": int(token_info.expires_at),
        }

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {app_config.service_name} v{app_config.service_version}")
        logger.info(f"Configuration: {app_config.safe_dict()}")
        if not app_config.oauth_configured:
            logger.warning("TiDB Cloud OAuth client credentials not set - authorization will fail at first use")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(f"Shutting down {app_config.service_name}")
        await store.close()
        for limiter in (rate_limiter, strict_rate_limiter):
            if limiter is not None:
                await limiter.close()

    return app


app = create_app()


if __name__ == "__main__":
    print(f"🚀 Starting {config.service_name} v{config.service_version}")
    print(f"📊 Environment: {config.environment}")
    print(f"🔑 TiDB Cloud OAuth configured: {'Yes' if config.oauth_configured else 'No'}")
    print(f"🗄️  OAuth store: {'Redis' if config.redis_url else 'in-memory'}")
    print(f"💚 Health check: http://{config.server_host}/health")

    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.is_development,
        log_level=config.log_level.lower(),
        access_log=True,
    )
