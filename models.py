import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# OAuth flow entities (persisted through the store)
class PKCEChallenge(BaseModel):
    """PKCE verifier/challenge pair"""
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


class AuthorizationState(BaseModel):
    """Pending proxy-initiated authorization request"""
    redirect_uri: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    client_id: str = "unknown"
    client_state: Optional[str] = None
    upstream_code_verifier: str
    created_at: float = Field(default_factory=time.time)


class AuthorizationCode(BaseModel):
    """Proxy-minted one-time code standing in for the upstream tokens"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    redirect_uri: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    client_id: str = "unknown"
    scope: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class RefreshTokenRecord(BaseModel):
    """Rotation-eligible proxy refresh token mapped to the upstream one"""
    upstream_refresh_token: str
    client_id: str = "unknown"
    issued_at: float = Field(default_factory=time.time)


class TokenInfo(BaseModel):
    """Bearer session tracked by this proxy"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: float
    token_type: str = "Bearer"
    scopes: List[str] = Field(default_factory=list)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class FlowStage(str, Enum):
    """Authorization flow states, logged on every transition"""
    START = "START"
    AWAITING_UPSTREAM_CALLBACK = "AWAITING_UPSTREAM_CALLBACK"
    EXCHANGED = "EXCHANGED"
    FAILED = "FAILED"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"


# OAuth wire models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    client_name: str = Field("MCP Client", description="Human-readable client name")
    redirect_uris: List[str] = Field(default_factory=list, description="Array of redirection URI strings")

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        for uri in v:
            if uri.startswith("https://"):
                continue
            if uri.startswith("http://localhost") or uri.startswith("http://127.0.0.1"):
                continue
            # Custom schemes are allowed for native apps
            if "://" in uri and not uri.startswith("http://"):
                continue
            raise ValueError(f"Invalid redirect URI: {uri}")
        return v


class ClientRegistrationResponse(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Response"""
    client_id: str
    client_id_issued_at: int
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str] = ["authorization_code", "refresh_token"]
    response_types: List[str] = ["code"]
    token_endpoint_auth_method: str = "none"


class UpstreamTokenResponse(BaseModel):
    """Token response from the upstream authorization server"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class DeviceAuthorizationResponse(BaseModel):
    """RFC 8628 device authorization response, relayed from upstream"""
    model_config = ConfigDict(extra="allow")

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_in: int
    interval: Optional[int] = None


class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenIntrospectionResponse(BaseModel):
    """OAuth 2.0 Token Introspection Response"""
    active: bool
    scope: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None


# Error Models
class RateLimitErrorResponse(BaseModel):
    """Rate Limit Error"""
    error: str = "too_many_requests"
    error_description: str
    retry_after: int


# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str


# TiDB Cloud API Models
class Region(BaseModel):
    """TiDB Cloud Serverless region"""
    name: str
    displayName: Optional[str] = None
    provider: Optional[str] = None


class Cluster(BaseModel):
    """TiDB Cloud Serverless cluster"""
    clusterId: str
    displayName: str
    region: Optional[Region] = None
    state: Optional[str] = None
    createdAt: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    endpoints: Optional[Dict[str, Any]] = None


class ListClustersResponse(BaseModel):
    """Paginated cluster listing"""
    clusters: List[Cluster] = Field(default_factory=list)
    nextPageToken: Optional[str] = None
    totalSize: Optional[int] = None


class Branch(BaseModel):
    """TiDB Cloud Serverless branch"""
    branchId: str
    displayName: str
    clusterId: Optional[str] = None
    parentId: Optional[str] = None
    state: Optional[str] = None
    createdAt: Optional[str] = None


class ListBranchesResponse(BaseModel):
    """Branch listing for a cluster"""
    branches: List[Branch] = Field(default_factory=list)
    nextPageToken: Optional[str] = None
