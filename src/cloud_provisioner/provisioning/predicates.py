"""Check functions for every wait-for-state operation, bound to their budgets.

Each check wraps exactly one ``get`` call and a status comparison. A resource
reported in a terminal failure state raises ``ProvisioningError`` instead of
returning false, so the wait fails fast rather than running out its budget.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from cloud_provisioner.config.models import PlatformConfig
from cloud_provisioner.errors import NotFoundError, ProvisioningError
from cloud_provisioner.providers.base import (
    InstanceRecord,
    InstanceStatus,
    ProviderClients,
    ProvisioningState,
    ResourceHandle,
    ResourceKind,
    decode_node_id,
)
from cloud_provisioner.provisioning.waiter import (
    AsyncPredicate,
    CheckFn,
    Clock,
    PollSchedule,
    Sleeper,
)

INSTANCE_RUNNING = "instance-running"
INSTANCE_STABLE = "instance-stable"
INSTANCE_STOPPED = "instance-stopped"
INSTANCE_TERMINATED = "instance-terminated"
INSTANCE_PUBLIC_IP = "instance-public-ip-available"
PUBLIC_IP_AVAILABLE = "public-ip-available"
INTERFACE_PROVISIONED = "network-interface-provisioned"
RESOURCE_GROUP_PROVISIONED = "resource-group-provisioned"
IMAGE_AVAILABLE = "image-available"
RESOURCE_DELETED = "resource-deleted"


class PredicateFactory:
    """Builds the AsyncPredicates used by the orchestrator and cleanup."""

    def __init__(
        self,
        clients: ProviderClients,
        platform: PlatformConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._clients = clients
        self._timeouts = platform.timeouts
        self._schedule = PollSchedule.from_config(platform.poll)
        self._clock = clock
        self._sleep = sleep

    def _build(
        self, check: CheckFn[Any], name: str, timeout: float
    ) -> AsyncPredicate[Any]:
        return AsyncPredicate(
            check,
            name=name,
            schedule=self._schedule,
            timeout=timeout,
            clock=self._clock,
            sleep=self._sleep,
        )

    # -- Instances (token: slash-encoded node id) ----------------------------------

    async def _instance(self, node_id: str) -> InstanceRecord | None:
        region, instance_id = decode_node_id(node_id)
        return await self._clients.instances.get(region, instance_id)

    @staticmethod
    def _raise_if_failed(record: InstanceRecord, wait: str) -> None:
        if record.status == InstanceStatus.FAILED:
            raise ProvisioningError(
                wait,
                f"instance {record.region}/{record.id} entered state "
                f"{record.status}",
            )

    async def _check_running(self, node_id: str) -> bool:
        record = await self._instance(node_id)
        if record is None:
            return False
        self._raise_if_failed(record, INSTANCE_RUNNING)
        return record.status == InstanceStatus.RUNNING

    async def _check_stable(self, node_id: str) -> bool:
        record = await self._instance(node_id)
        if record is None:
            return False
        self._raise_if_failed(record, INSTANCE_STABLE)
        return not record.status.transient

    async def _check_stopped(self, node_id: str) -> bool:
        record = await self._instance(node_id)
        return record is None or record.status in (
            InstanceStatus.STOPPED,
            InstanceStatus.FAILED,
        )

    async def _check_terminated(self, node_id: str) -> bool:
        return await self._instance(node_id) is None

    async def _check_instance_public_ip(self, node_id: str) -> bool:
        record = await self._instance(node_id)
        return record is not None and bool(record.public_ip)

    def instance_running(self) -> AsyncPredicate[str]:
        return self._build(self._check_running, INSTANCE_RUNNING, self._timeouts.node_running)

    def instance_stable(self) -> AsyncPredicate[str]:
        return self._build(self._check_stable, INSTANCE_STABLE, self._timeouts.node_running)

    def instance_stopped(self) -> AsyncPredicate[str]:
        return self._build(
            self._check_stopped, INSTANCE_STOPPED, self._timeouts.node_suspended
        )

    def instance_terminated(self) -> AsyncPredicate[str]:
        return self._build(
            self._check_terminated, INSTANCE_TERMINATED, self._timeouts.node_terminated
        )

    def instance_public_ip_available(self) -> AsyncPredicate[str]:
        return self._build(
            self._check_instance_public_ip,
            INSTANCE_PUBLIC_IP,
            self._timeouts.public_ip_available,
        )

    # -- Other resources (token: ResourceHandle) -----------------------------------

    @staticmethod
    def _settled(state: ProvisioningState, handle: ResourceHandle, wait: str) -> bool:
        if state == ProvisioningState.FAILED:
            raise ProvisioningError(wait, f"{handle} entered state {state}")
        return state == ProvisioningState.SUCCEEDED

    async def _check_address(self, handle: ResourceHandle) -> bool:
        record = await self._clients.addresses.get(handle.region, handle.id)
        if record is None:
            return False
        return self._settled(record.state, handle, PUBLIC_IP_AVAILABLE) and bool(
            record.ip_address
        )

    async def _check_interface(self, handle: ResourceHandle) -> bool:
        record = await self._clients.interfaces.get(handle.region, handle.id)
        if record is None:
            return False
        return self._settled(record.state, handle, INTERFACE_PROVISIONED)

    async def _check_resource_group(self, handle: ResourceHandle) -> bool:
        record = await self._clients.resource_groups.get(handle.id)
        if record is None:
            return False
        return self._settled(record.state, handle, RESOURCE_GROUP_PROVISIONED)

    async def _check_image(self, handle: ResourceHandle) -> bool:
        record = await self._clients.images.get(handle.region, handle.id)
        if record is None:
            raise NotFoundError(ResourceKind.IMAGE, handle.id)
        return self._settled(record.state, handle, IMAGE_AVAILABLE)

    async def _check_deleted(self, handle: ResourceHandle) -> bool:
        clients = self._clients
        getters = {
            ResourceKind.INSTANCE: clients.instances.get,
            ResourceKind.NETWORK_INTERFACE: clients.interfaces.get,
            ResourceKind.PUBLIC_ADDRESS: clients.addresses.get,
            ResourceKind.SECURITY_GROUP: clients.security_groups.get,
            ResourceKind.STORAGE_ACCOUNT: clients.storage.get,
        }
        if handle.kind == ResourceKind.RESOURCE_GROUP:
            return await clients.resource_groups.get(handle.id) is None
        getter = getters.get(handle.kind)
        if getter is None:
            msg = f"No deletion check for resource kind {handle.kind}"
            raise ValueError(msg)
        return await getter(handle.region, handle.id) is None

    def public_address_available(self) -> AsyncPredicate[ResourceHandle]:
        return self._build(
            self._check_address, PUBLIC_IP_AVAILABLE, self._timeouts.public_ip_available
        )

    def network_interface_provisioned(self) -> AsyncPredicate[ResourceHandle]:
        return self._build(
            self._check_interface,
            INTERFACE_PROVISIONED,
            self._timeouts.resource_provisioned,
        )

    def resource_group_provisioned(self) -> AsyncPredicate[ResourceHandle]:
        return self._build(
            self._check_resource_group,
            RESOURCE_GROUP_PROVISIONED,
            self._timeouts.resource_provisioned,
        )

    def image_available(self) -> AsyncPredicate[ResourceHandle]:
        return self._build(
            self._check_image, IMAGE_AVAILABLE, self._timeouts.image_available
        )

    def resource_deleted(self) -> AsyncPredicate[ResourceHandle]:
        return self._build(
            self._check_deleted, RESOURCE_DELETED, self._timeouts.resource_deleted
        )
