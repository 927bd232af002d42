"""Provider-agnostic resource model and per-kind client protocols.

The orchestrator, planner and cleanup coordinator are written once against
these protocols. Each provider binding (simulated, REST, ...) supplies one
implementation per resource kind; none of them subclasses a shared base.

Every client raises ``TransportError`` when the provider cannot be reached and
returns ``None`` from ``get`` when a resource does not exist.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable


class ResourceKind(StrEnum):
    INSTANCE = "instance"
    NETWORK_INTERFACE = "network_interface"
    PUBLIC_ADDRESS = "public_address"
    SECURITY_GROUP = "security_group"
    KEY_PAIR = "key_pair"
    STORAGE_ACCOUNT = "storage_account"
    RESOURCE_GROUP = "resource_group"
    IMAGE = "image"


class InstanceStatus(StrEnum):
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DELETING = "deleting"
    FAILED = "failed"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT_INSTANCE_STATES


_TRANSIENT_INSTANCE_STATES = frozenset(
    {
        InstanceStatus.PENDING,
        InstanceStatus.STARTING,
        InstanceStatus.STOPPING,
        InstanceStatus.DELETING,
    }
)


class ProvisioningState(StrEnum):
    """Provisioning state of non-instance resources (addresses, NICs, images...)."""

    CREATING = "creating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DELETING = "deleting"


@dataclass(frozen=True)
class ResourceHandle:
    """Identifies any provider resource. Compared by (kind, id) only."""

    kind: ResourceKind
    id: str
    region: str = field(compare=False)

    def __str__(self) -> str:
        return f"{self.kind}:{self.region}/{self.id}"


def encode_node_id(region: str, instance_id: str) -> str:
    """Build a slash-encoded ``<region>/<instance-id>`` node identifier."""
    return f"{region}/{instance_id}"


def decode_node_id(node_id: str) -> tuple[str, str]:
    """Split a ``<region>/<instance-id>`` node identifier."""
    region, sep, instance_id = node_id.partition("/")
    if not sep or not region or not instance_id:
        msg = f"Node id '{node_id}' must be of the form '<region>/<instance-id>'"
        raise ValueError(msg)
    return region, instance_id


# -- Records -------------------------------------------------------------------


@dataclass(frozen=True)
class IngressRule:
    protocol: str
    from_port: int
    to_port: int
    cidr: str

    @property
    def port_range(self) -> str:
        return f"{self.from_port}/{self.to_port}"


@dataclass(frozen=True)
class InstanceSpec:
    """Arguments of the primary create call."""

    name: str
    image_id: str
    hardware_id: str
    zone: str | None = None
    resource_group: str | None = None
    network_interface_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    key_pair_name: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceRecord:
    id: str
    region: str
    name: str
    status: InstanceStatus
    network_interface_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    storage_account_id: str | None = None
    resource_group: str | None = None
    public_ip: str | None = None
    key_pair_name: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PublicAddressRecord:
    id: str
    region: str
    name: str
    state: ProvisioningState
    ip_address: str | None = None
    resource_group: str | None = None


@dataclass(frozen=True)
class NetworkInterfaceRecord:
    id: str
    region: str
    name: str
    state: ProvisioningState
    public_address_id: str | None = None
    network_id: str | None = None
    resource_group: str | None = None


@dataclass(frozen=True)
class SecurityGroupRecord:
    id: str
    region: str
    name: str
    rules: tuple[IngressRule, ...] = ()
    resource_group: str | None = None


@dataclass(frozen=True)
class KeyPairRecord:
    name: str
    region: str
    fingerprint: str


@dataclass(frozen=True)
class GeneratedKeyPair:
    record: KeyPairRecord
    private_key: str = field(repr=False)


@dataclass(frozen=True)
class StorageAccountRecord:
    id: str
    region: str
    resource_group: str | None = None


@dataclass(frozen=True)
class ResourceGroupRecord:
    name: str
    region: str
    state: ProvisioningState = ProvisioningState.SUCCEEDED


@dataclass(frozen=True)
class ImageRecord:
    id: str
    region: str
    state: ProvisioningState


# -- Client protocols ------------------------------------------------------------


@runtime_checkable
class InstanceClient(Protocol):
    async def create(self, region: str, spec: InstanceSpec) -> InstanceRecord: ...

    async def get(self, region: str, instance_id: str) -> InstanceRecord | None: ...

    async def list(self, region: str) -> list[InstanceRecord]: ...

    async def delete(self, region: str, instance_id: str) -> None: ...

    async def stop(self, region: str, instance_id: str) -> None: ...

    async def start(self, region: str, instance_id: str) -> None: ...

    async def allocate_public_ip(self, region: str, instance_id: str) -> None: ...


@runtime_checkable
class PublicAddressClient(Protocol):
    async def create(
        self,
        region: str,
        name: str,
        *,
        resource_group: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> PublicAddressRecord: ...

    async def get(self, region: str, address_id: str) -> PublicAddressRecord | None: ...

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[PublicAddressRecord]: ...

    async def delete(self, region: str, address_id: str) -> None: ...


@runtime_checkable
class NetworkInterfaceClient(Protocol):
    async def create(
        self,
        region: str,
        name: str,
        *,
        network_id: str | None = None,
        public_address_id: str | None = None,
        resource_group: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> NetworkInterfaceRecord: ...

    async def get(
        self, region: str, interface_id: str
    ) -> NetworkInterfaceRecord | None: ...

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[NetworkInterfaceRecord]: ...

    async def delete(self, region: str, interface_id: str) -> None: ...


@runtime_checkable
class SecurityGroupClient(Protocol):
    async def create(
        self,
        region: str,
        name: str,
        *,
        network_id: str | None = None,
        resource_group: str | None = None,
    ) -> SecurityGroupRecord: ...

    async def get(self, region: str, group_id: str) -> SecurityGroupRecord | None: ...

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[SecurityGroupRecord]: ...

    async def delete(self, region: str, group_id: str) -> None: ...

    async def add_ingress_rule(
        self, region: str, group_id: str, rule: IngressRule
    ) -> None: ...


@runtime_checkable
class KeyPairClient(Protocol):
    async def list(self, region: str) -> list[KeyPairRecord]: ...

    async def import_key(
        self, region: str, name: str, public_key: str
    ) -> KeyPairRecord: ...

    async def create(self, region: str, name: str) -> GeneratedKeyPair: ...

    async def delete(self, region: str, name: str) -> None: ...


@runtime_checkable
class TagClient(Protocol):
    async def add(self, resource: ResourceHandle, tags: Mapping[str, str]) -> None: ...

    async def list(self, resource: ResourceHandle) -> dict[str, str]: ...


@runtime_checkable
class StorageClient(Protocol):
    async def get(self, region: str, account_id: str) -> StorageAccountRecord | None: ...

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[StorageAccountRecord]: ...

    async def delete(self, region: str, account_id: str) -> None: ...


@runtime_checkable
class ResourceGroupClient(Protocol):
    async def create(self, region: str, name: str) -> ResourceGroupRecord: ...

    async def get(self, name: str) -> ResourceGroupRecord | None: ...

    async def list(self) -> list[ResourceGroupRecord]: ...

    async def delete(self, name: str) -> None: ...


@runtime_checkable
class ImageClient(Protocol):
    async def get(self, region: str, image_id: str) -> ImageRecord | None: ...


@dataclass(frozen=True)
class ProviderClients:
    """The per-kind clients a provider binding hands to the orchestrator."""

    instances: InstanceClient
    addresses: PublicAddressClient
    interfaces: NetworkInterfaceClient
    security_groups: SecurityGroupClient
    key_pairs: KeyPairClient
    tags: TagClient
    storage: StorageClient
    resource_groups: ResourceGroupClient
    images: ImageClient
