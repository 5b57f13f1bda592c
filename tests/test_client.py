"""Tests for the HTTP client and the REST collection services."""

from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    DecodeError,
    HttpResponseError,
    ResourceNotFoundError,
)

from provisioner.client import MgcApiClient
from provisioner.config import Config, ConfigurationError
from provisioner.models import ResourceKind
from provisioner.services import (
    COLLECTION_PATHS,
    DEFAULT_LIST_LIMIT,
    LIMIT_PARAM,
    OFFSET_PARAM,
    ResourceService,
    build_services,
)


def fake_response(status_code: int, body: Any = None, reason: str = "OK") -> MagicMock:
    """A stand-in for azure.core.rest.HttpResponse."""
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.content = b"" if body is None else b"{}"
    response.json.return_value = body
    response.text.return_value = ""
    response.headers = {}
    return response


@pytest.fixture
def api_client() -> MgcApiClient:
    return MgcApiClient("https://api.example.test/br-se1", "secret", request_timeout=30)


class TestMgcApiClient:
    """Tests for MgcApiClient."""

    def test_decodes_json(self, api_client: MgcApiClient) -> None:
        """Test that a 2xx JSON body is decoded."""
        send = MagicMock(return_value=fake_response(200, {"id": "db-1", "status": "ACTIVE"}))
        api_client._client.send_request = send  # type: ignore[method-assign]

        body = api_client.request("GET", "/database/v2/clusters/db-1")

        assert body == {"id": "db-1", "status": "ACTIVE"}
        request = send.call_args.args[0]
        assert request.method == "GET"
        assert request.url == "/database/v2/clusters/db-1"
        assert send.call_args.kwargs["read_timeout"] == 30

    def test_sends_json_body_and_params(self, api_client: MgcApiClient) -> None:
        """Test that body and query parameters reach the request."""
        send = MagicMock(return_value=fake_response(202, {"id": "db-1"}))
        api_client._client.send_request = send  # type: ignore[method-assign]

        api_client.request("POST", "/database/v2/clusters", json={"name": "db"}, params={"a": 1})

        request = send.call_args.args[0]
        assert request.method == "POST"
        assert request.url.startswith("/database/v2/clusters")
        assert "a=1" in request.url
        assert '"name"' in str(request.content)

    def test_empty_response(self, api_client: MgcApiClient) -> None:
        """Test that 204 and empty bodies decode to None."""
        api_client._client.send_request = MagicMock(  # type: ignore[method-assign]
            return_value=fake_response(204)
        )

        assert api_client.request("DELETE", "/network/v0/vpcs/vpc-1") is None

    def test_non_json_body_raises_decode_error(self, api_client: MgcApiClient) -> None:
        """Test that a 2xx body which is not JSON raises DecodeError."""
        response = fake_response(200, {})
        response.content = b"<html>maintenance</html>"
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        api_client._client.send_request = MagicMock(  # type: ignore[method-assign]
            return_value=response
        )

        with pytest.raises(DecodeError) as exc_info:
            api_client.request("GET", "/network/v0/vpcs/vpc-1")

        assert "not JSON" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_not_found_maps_to_resource_not_found(self, api_client: MgcApiClient) -> None:
        """Test that 404 raises ResourceNotFoundError."""
        api_client._client.send_request = MagicMock(  # type: ignore[method-assign]
            return_value=fake_response(404, reason="Not Found")
        )

        with pytest.raises(ResourceNotFoundError) as exc_info:
            api_client.request("GET", "/network/v0/vpcs/vpc-1")

        assert exc_info.value.status_code == 404

    def test_forbidden_maps_to_authentication_error(self, api_client: MgcApiClient) -> None:
        """Test that 403 raises ClientAuthenticationError."""
        api_client._client.send_request = MagicMock(  # type: ignore[method-assign]
            return_value=fake_response(403, reason="Forbidden")
        )

        with pytest.raises(ClientAuthenticationError):
            api_client.request("GET", "/network/v0/vpcs")

    def test_server_error_raises_http_response_error(self, api_client: MgcApiClient) -> None:
        """Test that an unmapped status raises HttpResponseError."""
        api_client._client.send_request = MagicMock(  # type: ignore[method-assign]
            return_value=fake_response(500, reason="Internal Server Error")
        )

        with pytest.raises(HttpResponseError) as exc_info:
            api_client.request("GET", "/network/v0/vpcs")

        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, ResourceNotFoundError)

    def test_from_config_requires_api_key(self) -> None:
        """Test that building a client without a key raises error."""
        with pytest.raises(ConfigurationError):
            MgcApiClient.from_config(Config())

    def test_from_config(self) -> None:
        """Test that the base URL comes from the configuration."""
        client = MgcApiClient.from_config(Config(api_key="secret", region="br-ne1"))

        assert client.base_url == "https://api.magalu.cloud/br-ne1"


class TestResourceService:
    """Tests for ResourceService path building and response handling."""

    @pytest.fixture
    def client(self) -> MagicMock:
        return MagicMock(spec=MgcApiClient)

    @pytest.mark.asyncio
    async def test_get_path(self, client: MagicMock) -> None:
        """Test that get addresses the resource inside its collection."""
        client.request.return_value = {"id": "db-1"}
        service = ResourceService(client, "/database/v2/clusters")

        result = await service.get("db-1")

        assert result == {"id": "db-1"}
        client.request.assert_called_once_with("GET", "/database/v2/clusters/db-1")

    @pytest.mark.asyncio
    async def test_nested_collection(self, client: MagicMock) -> None:
        """Test that nested collections are formatted with the parent id."""
        service = ResourceService(client, COLLECTION_PATHS[ResourceKind.NODE_POOL])

        await service.patch("np-1", {"replicas": 3}, parent_id="k8s-1")

        client.request.assert_called_once_with(
            "PATCH", "/kubernetes/v0/clusters/k8s-1/node_pools/np-1", json={"replicas": 3}
        )

    @pytest.mark.asyncio
    async def test_nested_collection_requires_parent(self, client: MagicMock) -> None:
        """Test that a nested call without a parent id raises error."""
        service = ResourceService(client, COLLECTION_PATHS[ResourceKind.ROUTE])

        with pytest.raises(ValueError) as exc_info:
            await service.get("route-1")

        assert "requires a parent id" in str(exc_info.value)
        client.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_action_path(self, client: MagicMock) -> None:
        """Test that actions post to a sub-resource of the item."""
        service = ResourceService(client, "/database/v2/clusters")

        await service.action("db-1", "resize", {"instance_type_id": "it-2"})

        client.request.assert_called_once_with(
            "POST", "/database/v2/clusters/db-1/resize", json={"instance_type_id": "it-2"}
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            (None, []),
            ([{"id": "a"}], [{"id": "a"}]),
            ({"results": [{"id": "b"}]}, [{"id": "b"}]),
            ({"items": [{"id": "c"}]}, [{"id": "c"}]),
        ],
    )
    async def test_list_page_shapes(self, client: MagicMock, body: Any, expected: list) -> None:
        """Test that list accepts bare lists and paged bodies."""
        client.request.return_value = body
        service = ResourceService(client, "/database/v2/engines")

        assert await service.list(params={"status": "ACTIVE"}) == expected

    @pytest.mark.asyncio
    async def test_list_reads_every_page(self, client: MagicMock) -> None:
        """Test that list follows offset pages until a short page."""
        first = [{"id": f"eng-{i}"} for i in range(DEFAULT_LIST_LIMIT)]
        client.request.side_effect = [{"results": first}, {"results": [{"id": "eng-last"}]}]
        service = ResourceService(client, "/database/v2/engines")

        items = await service.list(params={"status": "ACTIVE"})

        assert len(items) == DEFAULT_LIST_LIMIT + 1
        assert items[-1] == {"id": "eng-last"}
        queries = [call.kwargs["params"] for call in client.request.call_args_list]
        assert queries == [
            {"status": "ACTIVE", LIMIT_PARAM: DEFAULT_LIST_LIMIT, OFFSET_PARAM: 0},
            {"status": "ACTIVE", LIMIT_PARAM: DEFAULT_LIST_LIMIT, OFFSET_PARAM: DEFAULT_LIST_LIMIT},
        ]

    @pytest.mark.asyncio
    async def test_list_stops_when_offset_is_ignored(self, client: MagicMock) -> None:
        """Test that a backend repeating the same full page does not loop forever."""
        page = [{"id": f"vpc-{i}"} for i in range(3)]
        client.request.return_value = page
        service = ResourceService(client, "/network/v0/vpcs")

        items = await service.list(page_size=3)

        assert items == page
        assert client.request.call_count == 2

    @pytest.mark.asyncio
    async def test_errors_propagate(self, client: MagicMock) -> None:
        """Test that client errors reach the caller unchanged."""
        error = ResourceNotFoundError(message="gone")
        client.request.side_effect = error
        service = ResourceService(client, "/network/v0/vpcs")

        with pytest.raises(ResourceNotFoundError):
            await service.delete("vpc-1")

    def test_build_services(self, client: MagicMock) -> None:
        """Test that every kind gets a service."""
        services = build_services(client)

        assert set(services) == set(ResourceKind)
        assert services[ResourceKind.ROUTE].nested is True
        assert services[ResourceKind.VPC].nested is False
