"""Orchestrator tests against the simulated provider with simulated time."""

from __future__ import annotations

import asyncio

import pytest

from cloud_provisioner.config.models import (
    MemoryProviderConfig,
    PlatformConfig,
    ProvisioningRequest,
    TimeoutsConfig,
)
from cloud_provisioner.errors import (
    NotFoundError,
    ProvisioningCancelledError,
    ProvisioningError,
    TransportError,
    WaitTimeoutError,
)
from cloud_provisioner.providers.base import (
    InstanceStatus,
    ResourceHandle,
    ResourceKind,
    decode_node_id,
)
from cloud_provisioner.providers.memory import MemoryCloud
from cloud_provisioner.provisioning.keys import parse_public_key
from cloud_provisioner.provisioning.orchestrator import ProvisioningOrchestrator
from cloud_provisioner.provisioning.predicates import PredicateFactory


def _request(**overrides) -> ProvisioningRequest:
    fields = {
        "group": "web",
        "region": "eu-west",
        "image_id": "img-ubuntu",
        "hardware_id": "small",
    }
    fields.update(overrides)
    return ProvisioningRequest(**fields)


def _orchestrator(cloud: MemoryCloud, platform: PlatformConfig, clock, suffix="n1"):
    clients = cloud.clients()
    return ProvisioningOrchestrator(
        clients,
        platform,
        predicates=PredicateFactory(clients, platform, clock=clock, sleep=clock.sleep),
        name_generator=lambda: suffix,
    )


@pytest.fixture
def orchestrator(cloud, platform, clock) -> ProvisioningOrchestrator:
    return _orchestrator(cloud, platform, clock)


@pytest.mark.asyncio
class TestCreateEndToEnd:
    async def test_fresh_request_with_ports(self, orchestrator, cloud: MemoryCloud):
        result = await orchestrator.create(_request(inbound_ports=[22, 80]))

        assert cloud.calls["addresses.create"] == 1
        assert cloud.calls["interfaces.create"] == 1
        assert cloud.calls["security_groups.create"] == 1
        assert cloud.calls["security_groups.add_ingress_rule"] == 2
        assert cloud.calls["key_pairs.create"] == 1
        assert cloud.calls["instances.create"] == 1

        region, instance_id = decode_node_id(result.node_id)
        assert region == "eu-west"
        assert cloud.instances[instance_id].status == InstanceStatus.RUNNING
        assert result.public_ip == cloud.instances[instance_id].public_ip
        assert result.public_ip is not None

    async def test_created_is_ordered_and_excludes_ephemeral_key(
        self, orchestrator, cloud: MemoryCloud
    ):
        result = await orchestrator.create(_request(inbound_ports=[22]))
        assert [h.kind for h in result.created] == [
            ResourceKind.PUBLIC_ADDRESS,
            ResourceKind.NETWORK_INTERFACE,
            ResourceKind.SECURITY_GROUP,
            ResourceKind.INSTANCE,
        ]
        assert result.created[-1] == result.instance

    async def test_ephemeral_key_deleted_after_success(
        self, orchestrator, cloud: MemoryCloud
    ):
        result = await orchestrator.create(_request())
        assert cloud.calls["key_pairs.delete"] == 1
        assert cloud.key_pairs == {}
        assert result.login_private_key is not None
        assert "PRIVATE KEY" in result.login_private_key
        assert "PRIVATE KEY" not in repr(result)

    async def test_creation_tags_carry_ownership(self, orchestrator, cloud: MemoryCloud):
        result = await orchestrator.create(_request(tags={"team": "platform"}))
        expected = {"team": "platform", "owner": "cloud-provisioner"}
        for handle in result.created:
            assert cloud.tags[handle] == expected

    async def test_resource_group_is_created_and_awaited(
        self, orchestrator, cloud: MemoryCloud
    ):
        result = await orchestrator.create(_request(resource_group="rg-web"))
        assert result.created[0] == ResourceHandle(
            ResourceKind.RESOURCE_GROUP, "rg-web", "eu-west"
        )
        assert cloud.resource_groups["rg-web"].state == "succeeded"
        instance = cloud.instances[result.instance.id]
        assert instance.resource_group == "rg-web"
        assert instance.storage_account_id is not None

    async def test_existing_resource_group_is_not_recorded(
        self, orchestrator, cloud: MemoryCloud, clients
    ):
        await clients.resource_groups.create("eu-west", "rg-web")
        result = await orchestrator.create(_request(resource_group="rg-web"))
        assert cloud.calls["resource_groups.create"] == 1
        assert ResourceKind.RESOURCE_GROUP not in {h.kind for h in result.created}

    async def test_polling_waits_for_eventual_consistency(self, platform, clock):
        cloud = MemoryCloud(MemoryProviderConfig(settle_polls=3))
        result = await _orchestrator(cloud, platform, clock).create(_request())
        assert cloud.instances[result.instance.id].status == InstanceStatus.RUNNING
        assert clock.sleeps
        assert clock.now > 0


@pytest.mark.asyncio
class TestSecurityGroups:
    async def test_created_group_has_rules_then_tag(
        self, orchestrator, cloud: MemoryCloud
    ):
        result = await orchestrator.create(_request(inbound_ports=[22, 80, 81]))
        (group,) = cloud.security_groups.values()
        assert group.name == "web-sg"
        assert [(r.from_port, r.to_port) for r in group.rules] == [(22, 22), (80, 81)]
        assert {r.cidr for r in group.rules} == {"0.0.0.0/0"}
        assert {r.protocol for r in group.rules} == {"tcp"}
        handle = ResourceHandle(ResourceKind.SECURITY_GROUP, group.id, "eu-west")
        assert cloud.tags[handle] == {"owner": "cloud-provisioner"}
        assert cloud.calls["tags.add"] == 1
        assert cloud.instances[result.instance.id].security_group_ids == (group.id,)

    async def test_named_group_is_reused(self, orchestrator, cloud: MemoryCloud):
        shared = cloud.add_security_group("eu-west", "shared")
        result = await orchestrator.create(
            _request(security_groups=["shared"], inbound_ports=[22])
        )
        assert cloud.calls["security_groups.create"] == 0
        assert cloud.calls["tags.add"] == 0
        assert ResourceKind.SECURITY_GROUP not in {h.kind for h in result.created}
        assert cloud.instances[result.instance.id].security_group_ids == (shared.id,)

    async def test_missing_named_group_fails_before_any_mutation(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.add_security_group("eu-west", "alpha")
        cloud.add_security_group("eu-west", "beta")
        before = cloud.resource_count()

        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.create(_request(security_groups=["gamma"]))

        assert exc_info.value.available == ["alpha", "beta"]
        assert set(cloud.calls) == {"security_groups.list"}
        assert cloud.resource_count() == before


@pytest.mark.asyncio
class TestKeyPairs:
    async def test_named_key_pair_is_used_as_is(self, orchestrator, cloud: MemoryCloud):
        cloud.add_key_pair("eu-west", "ops", "aa:bb")
        result = await orchestrator.create(_request(key_pair_name="ops"))
        assert cloud.calls["key_pairs.create"] == 0
        assert cloud.calls["key_pairs.delete"] == 0
        assert cloud.instances[result.instance.id].key_pair_name == "ops"
        assert result.login_private_key is None

    async def test_missing_named_key_pair_fails_before_any_mutation(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.add_key_pair("eu-west", "ops", "aa:bb")
        before = cloud.resource_count()

        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.create(_request(key_pair_name="dev", inbound_ports=[22]))

        assert exc_info.value.kind == ResourceKind.KEY_PAIR
        assert exc_info.value.available == ["ops"]
        assert set(cloud.calls) == {"key_pairs.list"}
        assert cloud.calls["addresses.create"] == 0
        assert cloud.resource_count() == before

    async def test_missing_image_fails_before_any_mutation(self, platform, clock):
        cloud = MemoryCloud(MemoryProviderConfig(settle_polls=1, images=[]))
        before = cloud.resource_count()

        with pytest.raises(NotFoundError) as exc_info:
            await _orchestrator(cloud, platform, clock).create(_request())

        assert exc_info.value.kind == ResourceKind.IMAGE
        assert set(cloud.calls) == {"images.get"}
        assert cloud.resource_count() == before

    async def test_public_key_imported_once_and_reused(
        self, cloud: MemoryCloud, platform, clock, make_key
    ):
        key = make_key(11)
        first = await _orchestrator(cloud, platform, clock, "a").create(
            _request(public_key=key)
        )
        second = await _orchestrator(cloud, platform, clock, "b").create(
            _request(group="api", public_key=key)
        )
        assert cloud.calls["key_pairs.import_key"] == 1
        names = {
            cloud.instances[r.instance.id].key_pair_name for r in (first, second)
        }
        assert len(names) == 1
        assert ResourceKind.KEY_PAIR in {h.kind for h in first.created}
        assert ResourceKind.KEY_PAIR not in {h.kind for h in second.created}

    async def test_existing_key_matches_without_colons(
        self, orchestrator, cloud: MemoryCloud, make_key
    ):
        key = make_key(12)
        fingerprint = parse_public_key(key).fingerprint.replace(":", "").upper()
        cloud.add_key_pair("eu-west", "legacy", fingerprint)
        result = await orchestrator.create(_request(public_key=key))
        assert cloud.calls["key_pairs.import_key"] == 0
        assert cloud.instances[result.instance.id].key_pair_name == "legacy"

    async def test_concurrent_creates_import_once(
        self, cloud: MemoryCloud, platform, clock, make_key
    ):
        key = make_key(13)
        orchestrator = _orchestrator(cloud, platform, clock)
        await asyncio.gather(
            orchestrator.create(_request(group="web", public_key=key)),
            orchestrator.create(_request(group="api", public_key=key)),
        )
        assert cloud.calls["key_pairs.import_key"] == 1
        assert cloud.calls["instances.create"] == 2
        assert orchestrator._key_locks == {}


@pytest.mark.asyncio
class TestFailures:
    async def test_failure_carries_partial_result(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.fail("instances.create", TransportError("backend unavailable"))
        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_request(inbound_ports=[22]))

        err = exc_info.value
        assert err.stage == "instance"
        assert isinstance(err.cause, TransportError)
        assert isinstance(err.__cause__, TransportError)
        assert "backend unavailable" in str(err)
        assert err.result is not None
        assert err.result.instance is None
        assert [h.kind for h in err.result.created] == [
            ResourceKind.PUBLIC_ADDRESS,
            ResourceKind.NETWORK_INTERFACE,
            ResourceKind.SECURITY_GROUP,
        ]
        # no inline cleanup
        assert len(cloud.interfaces) == 1
        assert len(cloud.security_groups) == 1

    async def test_ephemeral_key_deleted_on_failure(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.fail("instances.create", TransportError("boom"))
        with pytest.raises(ProvisioningError):
            await orchestrator.create(_request())
        assert cloud.calls["key_pairs.create"] == 1
        assert cloud.calls["key_pairs.delete"] == 1
        assert cloud.key_pairs == {}

    async def test_failed_ephemeral_delete_keeps_handle(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.fail("key_pairs.delete", TransportError("flaky"))
        result = await orchestrator.create(_request())
        assert ResourceKind.KEY_PAIR in {h.kind for h in result.created}

    async def test_instance_boot_timeout_is_reported(self, clock):
        cloud = MemoryCloud(MemoryProviderConfig(settle_polls=1))
        cloud.held.add(ResourceKind.INSTANCE)
        platform = PlatformConfig(timeouts=TimeoutsConfig(node_running=30))

        with pytest.raises(ProvisioningError) as exc_info:
            await _orchestrator(cloud, platform, clock).create(_request())

        err = exc_info.value
        assert err.stage == "instance_boot"
        assert isinstance(err.cause, WaitTimeoutError)
        assert err.cause.wait == "instance-stable"
        assert err.result.instance is not None
        assert clock.now == pytest.approx(30)
        # the ephemeral key is still released
        assert cloud.key_pairs == {}

    async def test_failed_instance_fails_fast(self, cloud: MemoryCloud, orchestrator, clock):
        cloud.boot_status = InstanceStatus.FAILED
        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_request())
        assert exc_info.value.stage == "instance_boot"
        assert "failed" in str(exc_info.value)
        assert clock.now == 0

    async def test_preflight_transport_error_is_plan_stage(
        self, orchestrator, cloud: MemoryCloud
    ):
        cloud.fail("security_groups.list", TransportError("down"))
        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_request(security_groups=["shared"]))
        assert exc_info.value.stage == "plan"
        assert exc_info.value.result.created == []

    async def test_cancellation_surfaces_as_stage_failure(self, orchestrator):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(ProvisioningError) as exc_info:
            await orchestrator.create(_request(), cancel=cancel)
        assert exc_info.value.stage == "public_address"
        assert isinstance(exc_info.value.cause, ProvisioningCancelledError)


@pytest.mark.asyncio
class TestPostBoot:
    async def test_stopped_instance_takes_the_created_address(self, platform, clock):
        cloud = MemoryCloud(MemoryProviderConfig(settle_polls=1, create_stopped=True))
        result = await _orchestrator(cloud, platform, clock).create(_request())
        instance = cloud.instances[result.instance.id]
        (address,) = cloud.addresses.values()
        assert cloud.calls["addresses.create"] == 1
        assert cloud.calls["instances.allocate_public_ip"] == 0
        assert cloud.calls["instances.start"] == 1
        assert instance.status == InstanceStatus.RUNNING
        assert result.public_ip == instance.public_ip == address.ip_address

    async def test_supplied_interface_without_address_gets_an_ip(
        self, cloud: MemoryCloud, orchestrator
    ):
        clients = cloud.clients()
        nic = await clients.interfaces.create("eu-west", "bare-nic")
        await clients.interfaces.get("eu-west", nic.id)

        result = await orchestrator.create(_request(network_interface_id=nic.id))

        assert cloud.calls["addresses.create"] == 0
        assert cloud.calls["instances.allocate_public_ip"] == 1
        assert result.public_ip is not None
        assert result.public_ip == cloud.instances[result.instance.id].public_ip
        assert ResourceKind.NETWORK_INTERFACE not in {h.kind for h in result.created}

    async def test_stopped_instance_without_public_ip_request(self, platform, clock):
        cloud = MemoryCloud(MemoryProviderConfig(settle_polls=1, create_stopped=True))
        result = await _orchestrator(cloud, platform, clock).create(
            _request(allocate_public_ip=False)
        )
        assert cloud.calls["instances.allocate_public_ip"] == 0
        assert cloud.calls["instances.start"] == 1
        assert result.public_ip is None

    async def test_running_instance_with_ip_is_left_alone(
        self, orchestrator, cloud: MemoryCloud
    ):
        await orchestrator.create(_request())
        assert cloud.calls["instances.start"] == 0
        assert cloud.calls["instances.allocate_public_ip"] == 0
