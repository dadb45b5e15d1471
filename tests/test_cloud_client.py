"""
Tests for the TiDB Cloud API client against a mock Digest-protected API.
"""

import json
from typing import Any, Dict, Tuple

import httpx
import pytest

from cloud_client import (
    CloudApiClient,
    CloudApiError,
    CloudAuthenticationError,
    CloudConfig,
    Resolution,
    ResolutionFailure,
    format_api_error,
)
from digest_auth import compute_digest_response, parse_digest_challenge
from test_digest_auth import authorization_params

CHALLENGE = 'Digest realm="tidb", nonce="abc123", qop="auth", opaque="op"'


class FakeCloudApi:
    """Digest-protected API serving canned JSON per (method, path)"""

    def __init__(self, public_key="pub", private_key="priv"):
        self.public_key = public_key
        self.private_key = private_key
        self.routes: Dict[Tuple[str, str], Tuple[int, Any]] = {}
        self.calls = []

    def route(self, method: str, path: str, status: int = 200, body=None):
        self.routes[(method, path)] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        header = request.headers.get("Authorization")
        if header is None:
            return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

        params = authorization_params(header)
        expected = compute_digest_response(
            self.public_key, self.private_key, request.method, params["uri"],
            parse_digest_challenge(CHALLENGE), cnonce=params["cnonce"], nc=params["nc"],
        )
        if params["response"] != expected:
            return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE}, json={"message": "bad digest"})

        status, body = self.routes.get((request.method, request.url.path), (404, {"message": "not found"}))
        if isinstance(body, bytes):
            return httpx.Response(status, content=body)
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)


@pytest.fixture
def cloud_env(monkeypatch):
    monkeypatch.setenv("TIDB_CLOUD_PUBLIC_KEY", "pub")
    monkeypatch.setenv("TIDB_CLOUD_PRIVATE_KEY", "priv")
    monkeypatch.setenv("TIDB_CLOUD_API_URL", "https://api.tidb.test/")
    return monkeypatch


@pytest.fixture
def api():
    return FakeCloudApi()


@pytest.fixture
def client(cloud_env, api):
    return CloudApiClient(CloudConfig(), transport=httpx.MockTransport(api.handler))


class TestCloudConfig:
    def test_reads_environment(self, cloud_env):
        config = CloudConfig()
        assert config.configured
        assert config.api_url == "https://api.tidb.test"
        assert config.timeout == 30.0

    def test_missing_keys(self, monkeypatch):
        monkeypatch.delenv("TIDB_CLOUD_API_URL", raising=False)
        monkeypatch.delenv("TIDB_CLOUD_PUBLIC_KEY", raising=False)
        monkeypatch.delenv("TIDB_CLOUD_PRIVATE_KEY", raising=False)
        config = CloudConfig()
        assert not config.configured
        assert config.api_url == "https://serverless.tidbapi.com"


class TestRequests:
    @pytest.mark.asyncio
    async def test_list_clusters_signs_query_string(self, client, api):
        api.route("GET", "/v1beta1/clusters", body={"clusters": [], "totalSize": 0})

        result = await client.list_clusters(page_size=10, page_token="next")

        assert result == {"clusters": [], "totalSize": 0}
        assert len(api.calls) == 2
        params = authorization_params(api.calls[1].headers["Authorization"])
        assert params["uri"] == "/v1beta1/clusters?pageSize=10&pageToken=next"
        assert params["username"] == "pub"
        assert params["opaque"] == "op"

    @pytest.mark.asyncio
    async def test_create_cluster_body(self, client, api):
        api.route("POST", "/v1beta1/clusters", body={"clusterId": "c1", "displayName": "demo", "state": "CREATING"})

        result = await client.create_cluster("demo", "regions/aws-us-east-1", labels={"team": "db"})

        assert result["state"] == "CREATING"
        assert json.loads(api.calls[1].content) == {
            "displayName": "demo",
            "region": {"name": "regions/aws-us-east-1"},
            "labels": {"team": "db"},
        }

    @pytest.mark.asyncio
    async def test_update_cluster_requires_a_field(self, client, api):
        with pytest.raises(ValueError):
            await client.update_cluster("c1")
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self, client, api):
        api.route("DELETE", "/v1beta1/clusters/c1/branches/b1", status=200, body=None)
        assert await client.delete_branch("c1", "b1") == {}

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, cloud_env, api):
        api.private_key = "something-else"
        client = CloudApiClient(CloudConfig(), transport=httpx.MockTransport(api.handler))

        with pytest.raises(CloudAuthenticationError) as exc_info:
            await client.list_regions()
        await client.close()

        assert exc_info.value.status_code == 401
        assert exc_info.value.api_error == {"message": "bad digest"}
        assert len(api.calls) == 2

    @pytest.mark.asyncio
    async def test_second_401_with_plain_text_body(self, cloud_env):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, headers={"WWW-Authenticate": 'Digest realm="x", nonce="n1", qop="auth"'},
                                  text="Unauthorized")

        client = CloudApiClient(CloudConfig(), transport=httpx.MockTransport(handler))
        with pytest.raises(CloudAuthenticationError) as exc_info:
            await client.list_regions()
        await client.close()

        assert exc_info.value.api_error is None
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_html_error_page_keeps_status(self, client, api):
        api.route("GET", "/v1beta1/regions", status=502, body=b"<html>Bad Gateway</html>")

        with pytest.raises(CloudApiError) as exc_info:
            await client.list_regions()

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "API request failed with status 502"
        assert format_api_error(exc_info.value) == "Error: TiDB Cloud service error (502). Please try again later."

    @pytest.mark.asyncio
    async def test_not_found_uses_api_message(self, client, api):
        with pytest.raises(CloudApiError) as exc_info:
            await client.get_cluster("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "not found"

    @pytest.mark.asyncio
    async def test_unparseable_body(self, client, api):
        api.route("GET", "/v1beta1/regions", body=b"<html>oops</html>")

        with pytest.raises(CloudApiError) as exc_info:
            await client.list_regions()

        assert "Failed to parse API response" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout(self, cloud_env):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = CloudApiClient(CloudConfig(), transport=httpx.MockTransport(handler))
        with pytest.raises(CloudApiError) as exc_info:
            await client.list_regions()
        await client.close()

        assert exc_info.value.status_code == 408

    @pytest.mark.asyncio
    async def test_network_error(self, cloud_env):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CloudApiClient(CloudConfig(), transport=httpx.MockTransport(handler))
        with pytest.raises(CloudApiError) as exc_info:
            await client.list_regions()
        await client.close()

        assert exc_info.value.status_code == 0

    @pytest.mark.asyncio
    async def test_unconfigured_keys_fail_before_any_request(self, monkeypatch, api):
        monkeypatch.delenv("TIDB_CLOUD_PUBLIC_KEY", raising=False)
        monkeypatch.delenv("TIDB_CLOUD_PRIVATE_KEY", raising=False)
        client = CloudApiClient(CloudConfig(), transport=httpx.MockTransport(api.handler))

        with pytest.raises(CloudApiError) as exc_info:
            await client.list_clusters()
        await client.close()

        assert exc_info.value.status_code == 401
        assert api.calls == []


class TestFormatApiError:
    @pytest.mark.parametrize("status,expected", [
        (400, "Error: Invalid request. boom"),
        (401, "Error: Authentication failed. Please check your public key and private key."),
        (403, "Error: Permission denied. You don't have access to this resource."),
        (404, "Error: Resource not found. Please check the cluster ID and branch ID."),
        (408, "Error: Request timed out. Please try again."),
        (409, "Error: Conflict. boom"),
        (429, "Error: Rate limit exceeded. Please wait before making more requests."),
        (503, "Error: TiDB Cloud service error (503). Please try again later."),
        (418, "Error: boom"),
    ])
    def test_status_messages(self, status, expected):
        assert format_api_error(CloudApiError("boom", status)) == expected

    def test_other_exceptions(self):
        assert format_api_error(RuntimeError("kaput")) == "Error: kaput"


class TestResolution:
    CLUSTERS = [
        {"clusterId": "100", "displayName": "Prod-Main"},
        {"clusterId": "200", "displayName": "prod-replica"},
        {"clusterId": "300", "displayName": "Staging"},
        {"clusterId": "301", "displayName": "staging"},
    ]

    @pytest.mark.asyncio
    async def test_direct_id_hit(self, client, api):
        api.route("GET", "/v1beta1/clusters/100", body={"clusterId": "100", "displayName": "Prod-Main"})

        resolution = await client.resolve_cluster_id("100")

        assert resolution.ok
        assert resolution.value == "100"

    @pytest.mark.asyncio
    async def test_case_insensitive_name_match(self, client, api):
        api.route("GET", "/v1beta1/clusters", body={"clusters": self.CLUSTERS})

        resolution = await client.resolve_cluster_id("prod-main")

        assert resolution.ok
        assert resolution.value == "100"
        assert api.calls[-1].url.params["pageSize"] == "100"

    @pytest.mark.asyncio
    async def test_not_found_suggests_partial_matches(self, client, api):
        api.route("GET", "/v1beta1/clusters", body={"clusters": self.CLUSTERS})

        resolution = await client.resolve_cluster_id("prod")

        assert resolution.failure == ResolutionFailure.NOT_FOUND
        assert resolution.suggestions == ["Prod-Main", "prod-replica"]
        assert resolution.message == 'Cluster "prod" not found. Available clusters: Prod-Main, prod-replica'

    @pytest.mark.asyncio
    async def test_not_found_lists_everything_without_partial_matches(self, client, api):
        api.route("GET", "/v1beta1/clusters", body={"clusters": self.CLUSTERS[:1]})

        resolution = await client.resolve_cluster_id("dev")

        assert resolution.suggestions == ["Prod-Main"]

    def test_results_do_not_share_lists(self):
        first = Resolution("cluster", "a", failure=ResolutionFailure.NOT_FOUND, suggestions=["x"])
        second = Resolution("cluster", "b", failure=ResolutionFailure.NOT_FOUND)

        assert second.suggestions is None
        assert second.matches is None
        assert second.message == 'Cluster "b" not found.'
        assert first.suggestions == ["x"]

    @pytest.mark.asyncio
    async def test_ambiguous_name(self, client, api):
        api.route("GET", "/v1beta1/clusters", body={"clusters": self.CLUSTERS})

        resolution = await client.resolve_cluster_id("STAGING")

        assert resolution.failure == ResolutionFailure.AMBIGUOUS
        assert [m["id"] for m in resolution.matches] == ["300", "301"]
        assert "Multiple clusters match" in resolution.message

    @pytest.mark.asyncio
    async def test_non_404_errors_propagate(self, client, api):
        api.route("GET", "/v1beta1/clusters/100", status=500, body={"message": "internal"})

        with pytest.raises(CloudApiError) as exc_info:
            await client.resolve_cluster_id("100")

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_branch_by_name(self, client, api):
        api.route("GET", "/v1beta1/clusters/100/branches", body={"branches": [
            {"branchId": "b-1", "displayName": "feature"},
            {"branchId": "b-2", "displayName": "main"},
        ]})

        resolution = await client.resolve_branch_id("100", "Feature")

        assert resolution.ok
        assert resolution.value == "b-1"

    @pytest.mark.asyncio
    async def test_branch_not_found_lists_all(self, client, api):
        api.route("GET", "/v1beta1/clusters/100/branches", body={"branches": [
            {"branchId": "b-1", "displayName": "feature"},
        ]})

        resolution = await client.resolve_branch_id("100", "hotfix")

        assert resolution.failure == ResolutionFailure.NOT_FOUND
        assert resolution.suggestions == ["feature"]
