import hashlib
import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from config import Config
from errors import (
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    OAuthError,
    ServerError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    UpstreamError,
)
from models import (
    AuthorizationCode,
    AuthorizationState,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    DeviceAuthorizationResponse,
    FlowStage,
    RefreshTokenRecord,
    TokenInfo,
    TokenIntrospectionResponse,
    TokenResponse,
    UpstreamTokenResponse,
)
from pkce import create_pkce_challenge, verify_code_verifier
from state_codec import CompositeState, new_authorization_code, new_correlation_id
from store import OAuthStore

logger = logging.getLogger(__name__)

CLIENT_ID_ALPHABET = string.ascii_letters + string.digits


def token_key(token: str) -> str:
    """Store key for a bearer token; raw tokens are never used as keys"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _short(value: Optional[str]) -> str:
    return f"{value[:8]}..." if value else "-"


def _append_query(uri: str, params: Dict[str, Optional[str]]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{query}"


class OAuthProxy:
    """
    OAuth 2.1 proxy in front of the TiDB Cloud authorization server.

    Clients run an ordinary authorization-code + PKCE flow against this
    service. The proxy runs its own PKCE flow upstream with the confidential
    client credentials, then hands the client a one-time proxy code that is
    redeemed for the upstream tokens. Every piece of cross-request state goes
    through the store, so any instance can serve any step of the flow.
    """

    def __init__(
        self,
        config: Config,
        store: OAuthStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.transport = transport
        self.clock = clock

    def _transition(self, stage: FlowStage, flow_id: Optional[str], detail: str = "") -> None:
        message = f"OAuth flow {_short(flow_id)} -> {stage.value}"
        if detail:
            message += f": {detail}"
        if stage in (FlowStage.FAILED, FlowStage.EXPIRED):
            logger.warning(message)
        else:
            logger.info(message)

    def callback_url(self, base_url: str) -> str:
        return f"{base_url}{self.config.oauth_callback_path}"

    # Authorization
    async def authorize(self, params: Dict[str, str], base_url: str) -> str:
        """Validate the client's authorization request and return the upstream redirect URL"""
        redirect_uri = params.get("redirect_uri")
        response_type = params.get("response_type")

        if not redirect_uri:
            raise InvalidRequestError("Missing redirect_uri")
        if not response_type:
            raise InvalidRequestError("Missing response_type")
        if response_type != "code":
            raise UnsupportedResponseTypeError(f"Response type '{response_type}' not supported")

        if not self.config.oauth_client_id:
            logger.error("TIDB_CLOUD_OAUTH_CLIENT_ID is not set - refusing to start authorization")
            raise ServerError("OAuth not configured")

        correlation_id = new_correlation_id()
        upstream_pkce = create_pkce_challenge()
        client_state = params.get("state")

        auth_state = AuthorizationState(
            redirect_uri=redirect_uri,
            code_challenge=params.get("code_challenge") or None,
            code_challenge_method=params.get("code_challenge_method") or None,
            client_id=params.get("client_id") or "unknown",
            client_state=client_state,
            upstream_code_verifier=upstream_pkce.code_verifier,
            created_at=self.clock(),
        )
        await self.store.put_state(correlation_id, auth_state, self.config.oauth_state_ttl)
        self._transition(FlowStage.START, correlation_id, f"client {auth_state.client_id}")

        upstream_url = _append_query(self.config.upstream_authorize_url, {
            "client_id": self.config.oauth_client_id,
            "redirect_uri": self.callback_url(base_url),
            "response_type": "code",
            "scope": self.config.oauth_scope,
            "state": CompositeState(correlation_id, client_state).encode(),
            "code_challenge": upstream_pkce.code_challenge,
            "code_challenge_method": upstream_pkce.code_challenge_method,
        })

        self._transition(FlowStage.AWAITING_UPSTREAM_CALLBACK, correlation_id)
        return upstream_url

    async def handle_callback(self, params: Dict[str, str], base_url: str) -> str:
        """
        Complete the upstream leg and return the redirect URL back to the client.

        Problems with the proxy's own state raise OAuthError, which the route
        renders as JSON to the end user. Everything after the state is
        recovered is reported to the client's redirect URI instead.
        """
        if not self.config.oauth_configured:
            logger.error("Upstream OAuth credentials missing - cannot complete callback")
            raise ServerError("OAuth not configured")

        raw_state = params.get("state")
        if not raw_state:
            raise InvalidRequestError("Missing state parameter")

        composite = CompositeState.decode(raw_state)
        auth_state = await self.store.get_state(composite.correlation_id)
        if auth_state is None:
            self._transition(FlowStage.EXPIRED, composite.correlation_id, "unknown or expired state")
            raise InvalidRequestError("Invalid or expired state")

        # One-time use
        await self.store.delete_state(composite.correlation_id)

        if auth_state.client_state != composite.client_state:
            self._transition(FlowStage.FAILED, composite.correlation_id, "state payload mismatch")
            raise InvalidRequestError("State mismatch")

        client_state = auth_state.client_state

        error = params.get("error")
        if error:
            self._transition(FlowStage.FAILED, composite.correlation_id, f"upstream error {error}")
            return _append_query(auth_state.redirect_uri, {
                "error": error,
                "error_description": params.get("error_description"),
                "state": client_state,
            })

        upstream_code = params.get("code")
        if not upstream_code:
            self._transition(FlowStage.FAILED, composite.correlation_id, "no code from upstream")
            return _append_query(auth_state.redirect_uri, {
                "error": "invalid_request",
                "error_description": "Missing authorization code",
                "state": client_state,
            })

        try:
            tokens = await self._upstream_token_request({
                "client_id": self.config.oauth_client_id,
                "client_secret": self.config.oauth_client_secret,
                "grant_type": "authorization_code",
                "code": upstream_code,
                "redirect_uri": self.callback_url(base_url),
                "code_verifier": auth_state.upstream_code_verifier,
            })
        except UpstreamError as e:
            self._transition(FlowStage.FAILED, composite.correlation_id, str(e))
            return _append_query(auth_state.redirect_uri, {
                "error": "server_error",
                "error_description": "Failed to exchange authorization code",
                "state": client_state,
            })

        code = new_authorization_code()
        await self.store.put_code(code, AuthorizationCode(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            redirect_uri=auth_state.redirect_uri,
            code_challenge=auth_state.code_challenge,
            code_challenge_method=auth_state.code_challenge_method,
            client_id=auth_state.client_id,
            scope=tokens.scope,
            created_at=self.clock(),
        ), self.config.oauth_code_ttl)

        self._transition(FlowStage.EXCHANGED, composite.correlation_id, f"issued code {_short(code)}")
        return _append_query(auth_state.redirect_uri, {"code": code, "state": client_state})

    # Token endpoint
    async def exchange_token(self, params: Dict[str, str]) -> Dict[str, Any]:
        """Token endpoint: authorization_code and refresh_token grants"""
        grant_type = params.get("grant_type")

        if not grant_type:
            raise InvalidRequestError("Missing grant_type")
        if grant_type == "authorization_code":
            return await self._redeem_authorization_code(params)
        if grant_type == "refresh_token":
            return await self._refresh(params)

        raise UnsupportedGrantTypeError(f"Grant type '{grant_type}' not supported")

    async def _redeem_authorization_code(self, params: Dict[str, str]) -> Dict[str, Any]:
        code = params.get("code")
        if not code:
            raise InvalidRequestError("Missing code")

        record = await self.store.get_and_delete_code(code)
        if record is None:
            self._transition(FlowStage.EXPIRED, code, "code absent, expired or already redeemed")
            raise InvalidGrantError("Invalid or expired authorization code")

        redirect_uri = params.get("redirect_uri")
        if redirect_uri and redirect_uri != record.redirect_uri:
            raise InvalidGrantError("redirect_uri mismatch")

        if record.code_challenge:
            code_verifier = params.get("code_verifier")
            if not code_verifier:
                raise InvalidRequestError("code_verifier required")
            if not verify_code_verifier(record.code_challenge_method, code_verifier, record.code_challenge):
                raise InvalidGrantError("code_verifier mismatch")

        refresh_token = record.refresh_token
        if refresh_token and self.config.oauth_refresh_token_rotation:
            refresh_token = await self._mint_refresh_token(refresh_token, record.client_id)

        await self._track_token(record.access_token, refresh_token, record.expires_in, record.scope)
        self._transition(FlowStage.REDEEMED, code, f"token issued to client {record.client_id}")

        return TokenResponse(
            access_token=record.access_token,
            expires_in=record.expires_in,
            refresh_token=refresh_token,
            scope=record.scope,
        ).model_dump(exclude_none=True)

    async def _refresh(self, params: Dict[str, str]) -> Dict[str, Any]:
        refresh_token = params.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        if not self.config.oauth_configured:
            logger.error("Upstream OAuth credentials missing - cannot refresh")
            raise ServerError("OAuth not configured")

        rotation = self.config.oauth_refresh_token_rotation
        client_id = params.get("client_id") or "unknown"

        if rotation:
            record = await self.store.get_and_delete_refresh_token(refresh_token)
            if record is None:
                # Unknown, expired, or already used (possible token theft)
                logger.warning(f"Refresh token not found or already used: {_short(refresh_token)}")
                raise InvalidGrantError("Invalid or expired refresh token. Please re-authenticate.")
            if params.get("client_id") and record.client_id not in ("unknown", params["client_id"]):
                logger.warning(f"Refresh token {_short(refresh_token)} presented by a different client")
                raise InvalidGrantError("Refresh token was not issued to this client")
            client_id = record.client_id
            upstream_refresh_token = record.upstream_refresh_token
        else:
            upstream_refresh_token = refresh_token

        try:
            tokens = await self._upstream_token_request({
                "client_id": self.config.oauth_client_id,
                "client_secret": self.config.oauth_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": upstream_refresh_token,
            })
        except UpstreamError as e:
            # Only timeouts and network failures carry no status
            if e.status_code is not None:
                raise InvalidGrantError("Failed to refresh token with upstream provider")
            raise ServerError("Failed to refresh token")

        if rotation:
            client_refresh_token = await self._mint_refresh_token(
                tokens.refresh_token or upstream_refresh_token, client_id
            )
        else:
            client_refresh_token = tokens.refresh_token or refresh_token

        await self._track_token(tokens.access_token, client_refresh_token, tokens.expires_in, tokens.scope)
        logger.info(f"Access token refreshed for client {client_id}")

        return TokenResponse(
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            refresh_token=client_refresh_token,
            scope=tokens.scope,
        ).model_dump(exclude_none=True)

    async def _mint_refresh_token(self, upstream_refresh_token: str, client_id: str) -> str:
        proxy_token = secrets.token_urlsafe(32)
        record = RefreshTokenRecord(
            upstream_refresh_token=upstream_refresh_token,
            client_id=client_id,
            issued_at=self.clock(),
        )
        await self.store.put_refresh_token(proxy_token, record, self.config.oauth_refresh_token_ttl)
        return proxy_token

    async def _track_token(self, access_token: str, refresh_token: Optional[str],
                           expires_in: int, scope: Optional[str]) -> None:
        lifetime = max(1, expires_in)
        info = TokenInfo(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self.clock() + lifetime,
            scopes=scope.split() if scope else [self.config.oauth_scope],
        )
        await self.store.put_token(token_key(access_token), info, lifetime)

    async def _upstream_post(self, url: str, purpose: str, **kwargs) -> httpx.Response:
        """POST to an upstream endpoint; timeouts and network failures raise UpstreamError without a status"""
        try:
            async with httpx.AsyncClient(timeout=self.config.upstream_timeout, transport=self.transport) as client:
                return await client.post(url, headers={"Accept": "application/json"}, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"Upstream {purpose} endpoint timed out")
            raise UpstreamError(f"Upstream {purpose} endpoint timed out")
        except httpx.TransportError as e:
            logger.error(f"Network error calling upstream {purpose} endpoint: {e}")
            raise UpstreamError(f"Network error: {e}")

    async def _upstream_token_request(self, payload: Dict[str, Any]) -> UpstreamTokenResponse:
        """POST to the upstream token endpoint; any unusable outcome raises UpstreamError"""
        response = await self._upstream_post(
            self.config.upstream_token_url, f"token ({payload['grant_type']})", json=payload
        )

        if response.is_error:
            logger.error(f"Upstream token request failed: {response.status_code} - {response.text}")
            raise UpstreamError("Upstream token request failed", response.status_code, response.text)

        try:
            return UpstreamTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid upstream token response: {response.status_code} - {response.text}")
            raise UpstreamError(f"Invalid token response: {e}", response.status_code, response.text)

    # Device Authorization (RFC 8628)
    async def device_authorization(self, params: Dict[str, str]) -> Dict[str, Any]:
        """Start a device code flow upstream on behalf of the calling client"""
        if not self.config.oauth_configured:
            logger.error("Upstream OAuth credentials missing - cannot start device authorization")
            raise ServerError("OAuth not configured on server")

        # The caller's client_id is informational; upstream only knows the proxy's client
        logger.info(f"Device authorization requested by client {params.get('client_id') or 'unknown'}")

        try:
            response = await self._upstream_post(
                self.config.upstream_device_authorization_url,
                "device authorization",
                data={"client_id": self.config.oauth_client_id, "scope": self.config.oauth_scope},
            )
        except UpstreamError as e:
            raise ServerError(str(e))

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            logger.error(f"Upstream device authorization failed: {response.status_code} - {response.text}")
            if isinstance(data, dict) and data.get("error"):
                raise OAuthError(
                    data.get("error_description") or data["error"],
                    error=data["error"],
                    status_code=response.status_code,
                )
            raise ServerError(f"TiDB Cloud error: {response.text}", status_code=response.status_code)

        try:
            device = DeviceAuthorizationResponse.model_validate(data)
        except ValidationError:
            logger.error(f"Invalid upstream device authorization response: {response.status_code} - {response.text}")
            raise ServerError("Invalid device authorization response from upstream", status_code=502)

        logger.info(f"Device code issued upstream, expires in {device.expires_in}s")
        return device.model_dump(exclude_none=True)

    # Dynamic Client Registration (RFC 7591)
    async def register_client(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Stateless registration: public clients, nothing is persisted"""
        try:
            request = ClientRegistrationRequest.model_validate(metadata)
        except ValidationError as e:
            raise InvalidClientMetadataError(e.errors()[0]["msg"])

        client_id = "mcp_" + "".join(secrets.choice(CLIENT_ID_ALPHABET) for _ in range(16))
        logger.info(f"Registered client {client_id} ({request.client_name})")

        return ClientRegistrationResponse(
            client_id=client_id,
            client_id_issued_at=int(self.clock()),
            client_name=request.client_name,
            redirect_uris=request.redirect_uris,
        ).model_dump()

    # Tracked sessions
    async def verify_access_token(self, token: str) -> Optional[TokenInfo]:
        """Return the session for a bearer token this proxy issued, if still valid"""
        if not token:
            return None
        return await self.store.get_token(token_key(token))

    async def introspect_token(self, token: str) -> Dict[str, Any]:
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        info = await self.verify_access_token(token)
        if not info:
            return {"active": False}

        return TokenIntrospectionResponse(
            active=True,
            scope=" ".join(info.scopes) or None,
            token_type=info.token_type,
            exp=int(info.expires_at),
        ).model_dump(exclude_none=True)

    async def revoke_token(self, token: str) -> None:
        """OAuth 2.0 Token Revocation (RFC 7009); unknown tokens are not an error"""
        await self.store.delete_token(token_key(token))
        if self.config.oauth_refresh_token_rotation:
            await self.store.get_and_delete_refresh_token(token)
        logger.info(f"Token revoked: {_short(token)}")

    # Discovery metadata
    def get_authorization_server_metadata(self, base_url: str) -> Dict[str, Any]:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "introspection_endpoint": f"{base_url}/introspect",
            "revocation_endpoint": f"{base_url}/revoke",
            "device_authorization_endpoint": f"{base_url}/device/code",
            "scopes_supported": [self.config.oauth_scope],
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": ["S256", "plain"],
            "service_documentation": self.config.service_documentation,
        }

    def get_protected_resource_metadata(self, base_url: str) -> Dict[str, Any]:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        return {
            "resource": base_url,
            "authorization_servers": [base_url],
            "scopes_supported": [self.config.oauth_scope],
            "bearer_methods_supported": ["header"],
            "resource_documentation": self.config.service_documentation,
        }
