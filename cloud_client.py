import os
import logging
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from digest_auth import DigestAuth, DigestAuthenticationError
from models import ListBranchesResponse, ListClustersResponse

logger = logging.getLogger(__name__)

USER_AGENT = "TiDBCloud-Remote-MCP/0.1.0"


class CloudConfig:
    """Configuration for the TiDB Cloud Serverless API client"""

    def __init__(self):
        self.public_key = os.getenv("TIDB_CLOUD_PUBLIC_KEY")
        self.private_key = os.getenv("TIDB_CLOUD_PRIVATE_KEY")
        self.api_url = os.getenv("TIDB_CLOUD_API_URL", "https://serverless.tidbapi.com").rstrip("/")
        self.timeout = float(os.getenv("TIDB_CLOUD_TIMEOUT", 30))

        if not self.configured:
            logger.warning("TIDB_CLOUD_PUBLIC_KEY/TIDB_CLOUD_PRIVATE_KEY not found - API calls will fail")
        else:
            logger.info("TiDB Cloud API configuration loaded successfully")

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.private_key)


class CloudApiError(Exception):
    """TiDB Cloud API call failed"""

    def __init__(self, message: str, status_code: int, api_error: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.api_error = api_error


class CloudAuthenticationError(CloudApiError):
    """Digest authentication was rejected or could not be attempted"""

    def __init__(self, message: str, api_error: Optional[Dict[str, Any]] = None):
        super().__init__(message, 401, api_error)


class ResolutionFailure(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS = "AMBIGUOUS"


class Resolution(NamedTuple):
    """Outcome of resolving an ID-or-display-name to an ID"""
    resource_type: str
    identifier: str
    value: Optional[str] = None
    failure: Optional[ResolutionFailure] = None
    suggestions: Optional[List[str]] = None
    matches: Optional[List[Dict[str, str]]] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def message(self) -> str:
        if self.ok:
            return f"{self.resource_type.capitalize()} resolved to {self.value}"
        if self.failure == ResolutionFailure.AMBIGUOUS:
            match_list = ", ".join(f'"{m["displayName"]}" (ID: {m["id"]})' for m in self.matches)
            return (
                f'Multiple {self.resource_type}s match "{self.identifier}": {match_list}. '
                f"Please use the {self.resource_type} ID or provide a more specific name."
            )
        suggestion_text = ""
        if self.suggestions:
            suggestion_text = f" Available {self.resource_type}s: {', '.join(self.suggestions)}"
        return f'{self.resource_type.capitalize()} "{self.identifier}" not found.{suggestion_text}'


def format_api_error(error: Exception) -> str:
    """User-facing message for a failed API call"""
    if isinstance(error, CloudApiError):
        status = error.status_code
        if status == 400:
            return f"Error: Invalid request. {error.message}"
        if status == 401:
            return "Error: Authentication failed. Please check your public key and private key."
        if status == 403:
            return "Error: Permission denied. You don't have access to this resource."
        if status == 404:
            return "Error: Resource not found. Please check the cluster ID and branch ID."
        if status == 408:
            return "Error: Request timed out. Please try again."
        if status == 409:
            return f"Error: Conflict. {error.message}"
        if status == 429:
            return "Error: Rate limit exceeded. Please wait before making more requests."
        if status >= 500:
            return f"Error: TiDB Cloud service error ({status}). Please try again later."
        return f"Error: {error.message}"

    return f"Error: {error}"


class CloudApiClient:
    """TiDB Cloud Serverless API client authenticated with HTTP Digest"""

    def __init__(self, config: CloudConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = httpx.AsyncClient(
            base_url=config.api_url,
            auth=DigestAuth(config.public_key or "", config.private_key or ""),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=config.timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Make a digest-authenticated request and decode the JSON body"""
        if not self.config.configured:
            raise CloudApiError(
                "TiDB Cloud API keys not configured. Please set TIDB_CLOUD_PUBLIC_KEY and TIDB_CLOUD_PRIVATE_KEY.",
                401,
            )

        try:
            response = await self.client.request(method, path, **kwargs)
        except DigestAuthenticationError as e:
            logger.error(f"TiDB Cloud digest challenge rejected: {e}")
            raise CloudAuthenticationError(str(e))
        except httpx.TimeoutException:
            logger.error(f"TiDB Cloud API timeout: {method} {path}")
            raise CloudApiError("Request timed out. Please try again.", 408)
        except httpx.NetworkError as e:
            logger.error(f"Network error: {e}")
            raise CloudApiError(f"Network error: {e}", 0)

        text = response.text
        data: Any = {}
        if text:
            try:
                data = response.json()
            except ValueError:
                # Error pages from gateways are often plain text or HTML
                data = None
        api_error = data if isinstance(data, dict) else None

        if response.status_code == 401:
            logger.error(f"TiDB Cloud API rejected digest credentials: {method} {path}")
            raise CloudAuthenticationError("Authentication failed after digest challenge", api_error)

        if response.is_error:
            message = (api_error or {}).get("message") or f"API request failed with status {response.status_code}"
            logger.error(f"TiDB Cloud API error: {response.status_code} - {text}")
            raise CloudApiError(message, response.status_code, api_error)

        if data is None:
            raise CloudApiError(f"Failed to parse API response: {text}", response.status_code)

        return data

    # Cluster Operations
    async def list_clusters(self, page_size: Optional[int] = None, page_token: Optional[str] = None) -> Dict[str, Any]:
        """List clusters, one page at a time"""
        params = {}
        if page_size:
            params["pageSize"] = str(page_size)
        if page_token:
            params["pageToken"] = page_token
        return await self._request("GET", "/v1beta1/clusters", params=params)

    async def get_cluster(self, cluster_id: str) -> Dict[str, Any]:
        """Get a specific cluster by ID"""
        return await self._request("GET", f"/v1beta1/clusters/{cluster_id}")

    async def create_cluster(
        self,
        display_name: str,
        region: str,
        spending_limit: Optional[Dict[str, Any]] = None,
        root_password: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create a new cluster (returned in CREATING state)"""
        data: Dict[str, Any] = {
            "displayName": display_name,
            "region": {"name": region},
        }
        if spending_limit:
            data["spendingLimit"] = spending_limit
        if root_password:
            data["rootPassword"] = root_password
        if labels:
            data["labels"] = labels
        return await self._request("POST", "/v1beta1/clusters", json=data)

    async def update_cluster(
        self,
        cluster_id: str,
        display_name: Optional[str] = None,
        spending_limit: Optional[Dict[str, Any]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Update cluster name, spending limit or labels"""
        data: Dict[str, Any] = {}
        if display_name:
            data["displayName"] = display_name
        if spending_limit:
            data["spendingLimit"] = spending_limit
        if labels:
            data["labels"] = labels

        if not data:
            raise ValueError("At least one of display_name, spending_limit or labels must be provided")

        return await self._request("PATCH", f"/v1beta1/clusters/{cluster_id}", json=data)

    async def delete_cluster(self, cluster_id: str) -> Dict[str, Any]:
        """Delete a cluster"""
        return await self._request("DELETE", f"/v1beta1/clusters/{cluster_id}")

    # Branch Operations
    async def list_branches(self, cluster_id: str) -> Dict[str, Any]:
        """List all branches of a cluster"""
        return await self._request("GET", f"/v1beta1/clusters/{cluster_id}/branches")

    async def get_branch(self, cluster_id: str, branch_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1beta1/clusters/{cluster_id}/branches/{branch_id}")

    async def create_branch(
        self,
        cluster_id: str,
        display_name: str,
        parent_id: Optional[str] = None,
        parent_timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a branch, optionally from a parent branch or point in time"""
        data: Dict[str, Any] = {"displayName": display_name}
        if parent_id:
            data["parentId"] = parent_id
        if parent_timestamp:
            data["parentTimestamp"] = parent_timestamp
        return await self._request("POST", f"/v1beta1/clusters/{cluster_id}/branches", json=data)

    async def delete_branch(self, cluster_id: str, branch_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/v1beta1/clusters/{cluster_id}/branches/{branch_id}")

    # Region Operations
    async def list_regions(self) -> Dict[str, Any]:
        """List regions available to Serverless clusters"""
        return await self._request("GET", "/v1beta1/regions")

    # Name Resolution
    async def resolve_cluster_id(self, identifier: str) -> Resolution:
        """Resolve a cluster ID or display name (case-insensitive) to a cluster ID"""
        try:
            cluster = await self.get_cluster(identifier)
            return Resolution("cluster", identifier, value=cluster["clusterId"])
        except CloudApiError as e:
            if e.status_code != 404:
                raise

        clusters = ListClustersResponse.model_validate(await self.list_clusters(page_size=100)).clusters
        needle = identifier.lower()
        matches = [c for c in clusters if c.displayName.lower() == needle]

        if not matches:
            partial = [c.displayName for c in clusters if needle in c.displayName.lower()]
            return Resolution(
                "cluster",
                identifier,
                failure=ResolutionFailure.NOT_FOUND,
                suggestions=partial or [c.displayName for c in clusters],
            )

        if len(matches) > 1:
            return Resolution(
                "cluster",
                identifier,
                failure=ResolutionFailure.AMBIGUOUS,
                matches=[{"id": c.clusterId, "displayName": c.displayName} for c in matches],
            )

        return Resolution("cluster", identifier, value=matches[0].clusterId)

    async def resolve_branch_id(self, cluster_id: str, identifier: str) -> Resolution:
        """Resolve a branch ID or display name within an already-resolved cluster"""
        try:
            branch = await self.get_branch(cluster_id, identifier)
            return Resolution("branch", identifier, value=branch["branchId"])
        except CloudApiError as e:
            if e.status_code != 404:
                raise

        branches = ListBranchesResponse.model_validate(await self.list_branches(cluster_id)).branches
        needle = identifier.lower()
        matches = [b for b in branches if b.displayName.lower() == needle]

        if not matches:
            return Resolution(
                "branch",
                identifier,
                failure=ResolutionFailure.NOT_FOUND,
                suggestions=[b.displayName for b in branches],
            )

        if len(matches) > 1:
            return Resolution(
                "branch",
                identifier,
                failure=ResolutionFailure.AMBIGUOUS,
                matches=[{"id": b.branchId, "displayName": b.displayName} for b in matches],
            )

        return Resolution("branch", identifier, value=matches[0].branchId)
