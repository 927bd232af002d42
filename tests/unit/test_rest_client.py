"""Unit tests for the REST provider binding using respx to mock httpx."""

from __future__ import annotations

import json

import httpx
import pytest
import respx
from pydantic import SecretStr

from cloud_provisioner.config.models import RestProviderConfig
from cloud_provisioner.errors import NotFoundError, TransportError
from cloud_provisioner.providers.base import (
    InstanceSpec,
    InstanceStatus,
    ProvisioningState,
    ResourceHandle,
    ResourceKind,
)
from cloud_provisioner.providers.rest.client import ProviderAPIError, RestTransport
from cloud_provisioner.providers.rest.resources import create_rest_clients

API_URL = "http://cloud:8700"

INSTANCE = {
    "id": "i-1",
    "region": "eu-west",
    "name": "web-abc",
    "status": "running",
    "network_interface_ids": ["nic-1"],
    "security_group_ids": ["sg-1"],
    "public_ip": "203.0.113.7",
    "tags": {"owner": "cloud-provisioner"},
}


@pytest.fixture
def config() -> RestProviderConfig:
    return RestProviderConfig(
        endpoint=API_URL, retry_max_attempts=3, retry_wait_seconds=0.001
    )


@pytest.mark.asyncio
class TestRestTransport:
    @respx.mock
    async def test_get_returns_json(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/things/1").mock(
            return_value=httpx.Response(200, json={"id": "1"})
        )
        async with RestTransport(config) as transport:
            assert await transport.get("/things/1") == {"id": "1"}

    @respx.mock
    async def test_get_404_is_none(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/things/1").mock(return_value=httpx.Response(404))
        async with RestTransport(config) as transport:
            assert await transport.get("/things/1") is None

    @respx.mock
    async def test_get_retries_server_errors(self, config: RestProviderConfig):
        route = respx.get(f"{API_URL}/things").mock(
            side_effect=[
                httpx.Response(503, text="busy"),
                httpx.Response(502),
                httpx.Response(200, json=[]),
            ]
        )
        async with RestTransport(config) as transport:
            assert await transport.get("/things") == []
        assert route.call_count == 3

    @respx.mock
    async def test_get_gives_up_after_max_attempts(self, config: RestProviderConfig):
        route = respx.get(f"{API_URL}/things").mock(
            side_effect=httpx.ConnectError("connection refused")
        )
        async with RestTransport(config) as transport:
            with pytest.raises(TransportError, match="connection refused"):
                await transport.get("/things")
        assert route.call_count == 3

    @respx.mock
    async def test_post_is_not_retried(self, config: RestProviderConfig):
        route = respx.post(f"{API_URL}/things").mock(
            return_value=httpx.Response(500, text="boom")
        )
        async with RestTransport(config) as transport:
            with pytest.raises(TransportError, match="500"):
                await transport.post("/things", {"name": "a"})
        assert route.call_count == 1

    @respx.mock
    async def test_client_error_raises_api_error(self, config: RestProviderConfig):
        respx.post(f"{API_URL}/things").mock(
            return_value=httpx.Response(400, text="bad name")
        )
        async with RestTransport(config) as transport:
            with pytest.raises(ProviderAPIError, match="400 bad name") as exc_info:
                await transport.post("/things", {"name": "!"})
        assert exc_info.value.status_code == 400
        assert exc_info.value.method == "POST"

    @respx.mock
    async def test_malformed_body_is_transport_error(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/things/1").mock(
            return_value=httpx.Response(200, text="<html>oops</html>")
        )
        async with RestTransport(config) as transport:
            with pytest.raises(TransportError, match="malformed body"):
                await transport.get("/things/1")

    @respx.mock
    async def test_delete_404_is_not_found(self, config: RestProviderConfig):
        respx.delete(f"{API_URL}/things/1").mock(return_value=httpx.Response(404))
        async with RestTransport(config) as transport:
            with pytest.raises(NotFoundError, match="thing '1'"):
                await transport.delete("/things/1", kind="thing", name="1")

    @respx.mock
    async def test_delete_204(self, config: RestProviderConfig):
        route = respx.delete(f"{API_URL}/things/1").mock(
            return_value=httpx.Response(204)
        )
        async with RestTransport(config) as transport:
            await transport.delete("/things/1", kind="thing", name="1")
        assert route.called

    @respx.mock
    async def test_bearer_token_is_sent(self):
        route = respx.get(f"{API_URL}/things").mock(
            return_value=httpx.Response(200, json=[])
        )
        config = RestProviderConfig(endpoint=API_URL, api_token=SecretStr("s3cret"))
        async with RestTransport(config) as transport:
            await transport.get("/things")
        assert route.calls.last.request.headers["Authorization"] == "Bearer s3cret"

    @respx.mock
    async def test_empty_token_sends_no_header(self):
        route = respx.get(f"{API_URL}/things").mock(
            return_value=httpx.Response(200, json=[])
        )
        config = RestProviderConfig(endpoint=API_URL, api_token=SecretStr(""))
        async with RestTransport(config) as transport:
            await transport.get("/things")
        assert "Authorization" not in route.calls.last.request.headers


@pytest.mark.asyncio
class TestRestResourceClients:
    @respx.mock
    async def test_instance_get_parses_record(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/regions/eu-west/instances/i-1").mock(
            return_value=httpx.Response(200, json=INSTANCE)
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            record = await clients.instances.get("eu-west", "i-1")
        assert record is not None
        assert record.status == InstanceStatus.RUNNING
        assert record.network_interface_ids == ("nic-1",)
        assert record.public_ip == "203.0.113.7"
        assert record.storage_account_id is None

    @respx.mock
    async def test_instance_get_missing(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/regions/eu-west/instances/i-9").mock(
            return_value=httpx.Response(404)
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            assert await clients.instances.get("eu-west", "i-9") is None

    @respx.mock
    async def test_unknown_status_is_transport_error(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/regions/eu-west/instances/i-1").mock(
            return_value=httpx.Response(200, json={**INSTANCE, "status": "exploded"})
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            with pytest.raises(TransportError, match="Malformed instance"):
                await clients.instances.get("eu-west", "i-1")

    @respx.mock
    async def test_list_requires_a_json_array(self, config: RestProviderConfig):
        respx.get(f"{API_URL}/regions/eu-west/instances").mock(
            return_value=httpx.Response(200, json={"items": []})
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            with pytest.raises(TransportError, match="Expected a list"):
                await clients.instances.list("eu-west")

    @respx.mock
    async def test_instance_create_posts_spec(self, config: RestProviderConfig):
        route = respx.post(f"{API_URL}/regions/eu-west/instances").mock(
            return_value=httpx.Response(201, json={**INSTANCE, "status": "pending"})
        )
        spec = InstanceSpec(
            name="web-abc",
            image_id="img-1",
            hardware_id="small",
            network_interface_ids=("nic-1",),
            tags={"owner": "cloud-provisioner"},
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            record = await clients.instances.create("eu-west", spec)
        assert record.status == InstanceStatus.PENDING
        body = json.loads(route.calls.last.request.content)
        assert body["network_interface_ids"] == ["nic-1"]
        assert body["tags"] == {"owner": "cloud-provisioner"}

    @respx.mock
    async def test_generated_key_pair_carries_private_key(
        self, config: RestProviderConfig
    ):
        respx.post(f"{API_URL}/regions/eu-west/key-pairs").mock(
            return_value=httpx.Response(
                201,
                json={
                    "name": "web-key",
                    "region": "eu-west",
                    "fingerprint": "ab:cd",
                    "private_key": "-----BEGIN KEY-----",
                },
            )
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            generated = await clients.key_pairs.create("eu-west", "web-key")
        assert generated.record.fingerprint == "ab:cd"
        assert generated.private_key == "-----BEGIN KEY-----"
        assert "BEGIN" not in repr(generated)

    @respx.mock
    async def test_resource_group_filter_is_a_query_param(
        self, config: RestProviderConfig
    ):
        route = respx.get(f"{API_URL}/regions/eu-west/network-interfaces").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {
                        "id": "nic-1",
                        "region": "eu-west",
                        "name": "web-nic",
                        "state": "succeeded",
                        "resource_group": "rg-web",
                    }
                ],
            )
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            (nic,) = await clients.interfaces.list("eu-west", "rg-web")
        assert nic.state == ProvisioningState.SUCCEEDED
        assert route.calls.last.request.url.params["resource_group"] == "rg-web"

    @respx.mock
    async def test_tags_use_kind_and_id_path(self, config: RestProviderConfig):
        route = respx.get(f"{API_URL}/regions/eu-west/tags/security_group/sg-1").mock(
            return_value=httpx.Response(200, json={"owner": "cloud-provisioner"})
        )
        transport, clients = create_rest_clients(config)
        handle = ResourceHandle(ResourceKind.SECURITY_GROUP, "sg-1", "eu-west")
        async with transport:
            assert await clients.tags.list(handle) == {"owner": "cloud-provisioner"}
        assert route.called

    @respx.mock
    async def test_delete_missing_resource_group(self, config: RestProviderConfig):
        respx.delete(f"{API_URL}/resource-groups/rg-gone").mock(
            return_value=httpx.Response(404)
        )
        transport, clients = create_rest_clients(config)
        async with transport:
            with pytest.raises(NotFoundError) as exc_info:
                await clients.resource_groups.delete("rg-gone")
        assert exc_info.value.kind == ResourceKind.RESOURCE_GROUP
