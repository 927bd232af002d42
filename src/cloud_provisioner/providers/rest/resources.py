"""Per-kind REST clients mapping the provider's JSON resources to records.

Wire layout (all bodies JSON, ids opaque strings)::

    /resource-groups[/{name}]
    /regions/{region}/instances[/{id}[/stop|/start|/public-ip]]
    /regions/{region}/public-addresses[/{id}]
    /regions/{region}/network-interfaces[/{id}]
    /regions/{region}/security-groups[/{id}[/ingress-rules]]
    /regions/{region}/key-pairs[/import|/{name}]
    /regions/{region}/storage-accounts[/{id}]
    /regions/{region}/images/{id}
    /regions/{region}/tags/{kind}/{id}
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from cloud_provisioner.config.models import RestProviderConfig
from cloud_provisioner.errors import TransportError
from cloud_provisioner.providers.base import (
    GeneratedKeyPair,
    ImageRecord,
    IngressRule,
    InstanceRecord,
    InstanceSpec,
    InstanceStatus,
    KeyPairRecord,
    NetworkInterfaceRecord,
    ProviderClients,
    ProvisioningState,
    PublicAddressRecord,
    ResourceGroupRecord,
    ResourceHandle,
    ResourceKind,
    SecurityGroupRecord,
    StorageAccountRecord,
)
from cloud_provisioner.providers.rest.client import RestTransport

R = TypeVar("R")


def _parse(parser: Callable[[Any], R], data: Any, what: str) -> R:
    try:
        return parser(data)
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"Malformed {what} payload: {exc!r}"
        raise TransportError(msg) from exc


def _parse_many(parser: Callable[[Any], R], data: Any, what: str) -> list[R]:
    if not isinstance(data, list):
        msg = f"Expected a list of {what}, got {type(data).__name__}"
        raise TransportError(msg)
    return [_parse(parser, item, what) for item in data]


def _group_params(resource_group: str | None) -> dict[str, str] | None:
    return {"resource_group": resource_group} if resource_group else None


# -- Payload parsers -------------------------------------------------------------


def _instance(data: Mapping[str, Any]) -> InstanceRecord:
    return InstanceRecord(
        id=data["id"],
        region=data["region"],
        name=data["name"],
        status=InstanceStatus(data["status"]),
        network_interface_ids=tuple(data.get("network_interface_ids", ())),
        security_group_ids=tuple(data.get("security_group_ids", ())),
        storage_account_id=data.get("storage_account_id"),
        resource_group=data.get("resource_group"),
        public_ip=data.get("public_ip"),
        key_pair_name=data.get("key_pair_name"),
        tags=dict(data.get("tags") or {}),
    )


def _address(data: Mapping[str, Any]) -> PublicAddressRecord:
    return PublicAddressRecord(
        id=data["id"],
        region=data["region"],
        name=data["name"],
        state=ProvisioningState(data["state"]),
        ip_address=data.get("ip_address"),
        resource_group=data.get("resource_group"),
    )


def _interface(data: Mapping[str, Any]) -> NetworkInterfaceRecord:
    return NetworkInterfaceRecord(
        id=data["id"],
        region=data["region"],
        name=data["name"],
        state=ProvisioningState(data["state"]),
        public_address_id=data.get("public_address_id"),
        network_id=data.get("network_id"),
        resource_group=data.get("resource_group"),
    )


def _rule(data: Mapping[str, Any]) -> IngressRule:
    return IngressRule(
        protocol=data["protocol"],
        from_port=int(data["from_port"]),
        to_port=int(data["to_port"]),
        cidr=data["cidr"],
    )


def _security_group(data: Mapping[str, Any]) -> SecurityGroupRecord:
    return SecurityGroupRecord(
        id=data["id"],
        region=data["region"],
        name=data["name"],
        rules=tuple(_rule(r) for r in data.get("rules", ())),
        resource_group=data.get("resource_group"),
    )


def _key_pair(data: Mapping[str, Any]) -> KeyPairRecord:
    return KeyPairRecord(
        name=data["name"], region=data["region"], fingerprint=data["fingerprint"]
    )


def _storage(data: Mapping[str, Any]) -> StorageAccountRecord:
    return StorageAccountRecord(
        id=data["id"], region=data["region"], resource_group=data.get("resource_group")
    )


def _resource_group(data: Mapping[str, Any]) -> ResourceGroupRecord:
    return ResourceGroupRecord(
        name=data["name"],
        region=data["region"],
        state=ProvisioningState(data.get("state", ProvisioningState.SUCCEEDED)),
    )


def _image(data: Mapping[str, Any]) -> ImageRecord:
    return ImageRecord(
        id=data["id"], region=data["region"], state=ProvisioningState(data["state"])
    )


# -- Clients ---------------------------------------------------------------------


class _RestClient:
    def __init__(self, transport: RestTransport) -> None:
        self._t = transport


class RestInstanceClient(_RestClient):
    async def create(self, region: str, spec: InstanceSpec) -> InstanceRecord:
        body = {
            "name": spec.name,
            "image_id": spec.image_id,
            "hardware_id": spec.hardware_id,
            "zone": spec.zone,
            "resource_group": spec.resource_group,
            "network_interface_ids": list(spec.network_interface_ids),
            "security_group_ids": list(spec.security_group_ids),
            "key_pair_name": spec.key_pair_name,
            "tags": dict(spec.tags),
        }
        data = await self._t.post(f"/regions/{region}/instances", body)
        return _parse(_instance, data, "instance")

    async def get(self, region: str, instance_id: str) -> InstanceRecord | None:
        data = await self._t.get(f"/regions/{region}/instances/{instance_id}")
        return None if data is None else _parse(_instance, data, "instance")

    async def list(self, region: str) -> list[InstanceRecord]:
        data = await self._t.get(f"/regions/{region}/instances")
        return _parse_many(_instance, data or [], "instances")

    async def delete(self, region: str, instance_id: str) -> None:
        await self._t.delete(
            f"/regions/{region}/instances/{instance_id}",
            kind=ResourceKind.INSTANCE,
            name=instance_id,
        )

    async def stop(self, region: str, instance_id: str) -> None:
        await self._t.post(f"/regions/{region}/instances/{instance_id}/stop")

    async def start(self, region: str, instance_id: str) -> None:
        await self._t.post(f"/regions/{region}/instances/{instance_id}/start")

    async def allocate_public_ip(self, region: str, instance_id: str) -> None:
        await self._t.post(f"/regions/{region}/instances/{instance_id}/public-ip")


class RestPublicAddressClient(_RestClient):
    async def create(
        self,
        region: str,
        name: str,
        *,
        resource_group: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> PublicAddressRecord:
        data = await self._t.post(
            f"/regions/{region}/public-addresses",
            {"name": name, "resource_group": resource_group, "tags": dict(tags or {})},
        )
        return _parse(_address, data, "public address")

    async def get(self, region: str, address_id: str) -> PublicAddressRecord | None:
        data = await self._t.get(f"/regions/{region}/public-addresses/{address_id}")
        return None if data is None else _parse(_address, data, "public address")

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[PublicAddressRecord]:
        data = await self._t.get(
            f"/regions/{region}/public-addresses", params=_group_params(resource_group)
        )
        return _parse_many(_address, data or [], "public addresses")

    async def delete(self, region: str, address_id: str) -> None:
        await self._t.delete(
            f"/regions/{region}/public-addresses/{address_id}",
            kind=ResourceKind.PUBLIC_ADDRESS,
            name=address_id,
        )


class RestNetworkInterfaceClient(_RestClient):
    async def create(
        self,
        region: str,
        name: str,
        *,
        network_id: str | None = None,
        public_address_id: str | None = None,
        resource_group: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> NetworkInterfaceRecord:
        data = await self._t.post(
            f"/regions/{region}/network-interfaces",
            {
                "name": name,
                "network_id": network_id,
                "public_address_id": public_address_id,
                "resource_group": resource_group,
                "tags": dict(tags or {}),
            },
        )
        return _parse(_interface, data, "network interface")

    async def get(self, region: str, interface_id: str) -> NetworkInterfaceRecord | None:
        data = await self._t.get(f"/regions/{region}/network-interfaces/{interface_id}")
        return None if data is None else _parse(_interface, data, "network interface")

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[NetworkInterfaceRecord]:
        data = await self._t.get(
            f"/regions/{region}/network-interfaces",
            params=_group_params(resource_group),
        )
        return _parse_many(_interface, data or [], "network interfaces")

    async def delete(self, region: str, interface_id: str) -> None:
        await self._t.delete(
            f"/regions/{region}/network-interfaces/{interface_id}",
            kind=ResourceKind.NETWORK_INTERFACE,
            name=interface_id,
        )


class RestSecurityGroupClient(_RestClient):
    async def create(
        self,
        region: str,
        name: str,
        *,
        network_id: str | None = None,
        resource_group: str | None = None,
    ) -> SecurityGroupRecord:
        data = await self._t.post(
            f"/regions/{region}/security-groups",
            {"name": name, "network_id": network_id, "resource_group": resource_group},
        )
        return _parse(_security_group, data, "security group")

    async def get(self, region: str, group_id: str) -> SecurityGroupRecord | None:
        data = await self._t.get(f"/regions/{region}/security-groups/{group_id}")
        return None if data is None else _parse(_security_group, data, "security group")

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[SecurityGroupRecord]:
        data = await self._t.get(
            f"/regions/{region}/security-groups", params=_group_params(resource_group)
        )
        return _parse_many(_security_group, data or [], "security groups")

    async def delete(self, region: str, group_id: str) -> None:
        await self._t.delete(
            f"/regions/{region}/security-groups/{group_id}",
            kind=ResourceKind.SECURITY_GROUP,
            name=group_id,
        )

    async def add_ingress_rule(self, region: str, group_id: str, rule: IngressRule) -> None:
        await self._t.post(
            f"/regions/{region}/security-groups/{group_id}/ingress-rules",
            {
                "protocol": rule.protocol,
                "from_port": rule.from_port,
                "to_port": rule.to_port,
                "cidr": rule.cidr,
            },
        )


class RestKeyPairClient(_RestClient):
    async def list(self, region: str) -> list[KeyPairRecord]:
        data = await self._t.get(f"/regions/{region}/key-pairs")
        return _parse_many(_key_pair, data or [], "key pairs")

    async def import_key(self, region: str, name: str, public_key: str) -> KeyPairRecord:
        data = await self._t.post(
            f"/regions/{region}/key-pairs/import",
            {"name": name, "public_key": public_key},
        )
        return _parse(_key_pair, data, "key pair")

    async def create(self, region: str, name: str) -> GeneratedKeyPair:
        data = await self._t.post(f"/regions/{region}/key-pairs", {"name": name})
        record = _parse(_key_pair, data, "key pair")
        private_key = _parse(lambda d: str(d["private_key"]), data, "key pair")
        return GeneratedKeyPair(record, private_key)

    async def delete(self, region: str, name: str) -> None:
        await self._t.delete(
            f"/regions/{region}/key-pairs/{name}", kind=ResourceKind.KEY_PAIR, name=name
        )


class RestTagClient(_RestClient):
    @staticmethod
    def _path(resource: ResourceHandle) -> str:
        return f"/regions/{resource.region}/tags/{resource.kind}/{resource.id}"

    async def add(self, resource: ResourceHandle, tags: Mapping[str, str]) -> None:
        await self._t.post(self._path(resource), {"tags": dict(tags)})

    async def list(self, resource: ResourceHandle) -> dict[str, str]:
        data = await self._t.get(self._path(resource))
        if data is None:
            return {}
        return _parse(lambda d: {str(k): str(v) for k, v in d.items()}, data, "tags")


class RestStorageClient(_RestClient):
    async def get(self, region: str, account_id: str) -> StorageAccountRecord | None:
        data = await self._t.get(f"/regions/{region}/storage-accounts/{account_id}")
        return None if data is None else _parse(_storage, data, "storage account")

    async def list(
        self, region: str, resource_group: str | None = None
    ) -> list[StorageAccountRecord]:
        data = await self._t.get(
            f"/regions/{region}/storage-accounts", params=_group_params(resource_group)
        )
        return _parse_many(_storage, data or [], "storage accounts")

    async def delete(self, region: str, account_id: str) -> None:
        await self._t.delete(
            f"/regions/{region}/storage-accounts/{account_id}",
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=account_id,
        )


class RestResourceGroupClient(_RestClient):
    async def create(self, region: str, name: str) -> ResourceGroupRecord:
        data = await self._t.post("/resource-groups", {"name": name, "region": region})
        return _parse(_resource_group, data, "resource group")

    async def get(self, name: str) -> ResourceGroupRecord | None:
        data = await self._t.get(f"/resource-groups/{name}")
        return None if data is None else _parse(_resource_group, data, "resource group")

    async def list(self) -> list[ResourceGroupRecord]:
        data = await self._t.get("/resource-groups")
        return _parse_many(_resource_group, data or [], "resource groups")

    async def delete(self, name: str) -> None:
        await self._t.delete(
            f"/resource-groups/{name}", kind=ResourceKind.RESOURCE_GROUP, name=name
        )


class RestImageClient(_RestClient):
    async def get(self, region: str, image_id: str) -> ImageRecord | None:
        data = await self._t.get(f"/regions/{region}/images/{image_id}")
        return None if data is None else _parse(_image, data, "image")


def create_rest_clients(
    config: RestProviderConfig,
) -> tuple[RestTransport, ProviderClients]:
    """Build every per-kind client over one shared transport."""
    transport = RestTransport(config)
    return transport, ProviderClients(
        instances=RestInstanceClient(transport),
        addresses=RestPublicAddressClient(transport),
        interfaces=RestNetworkInterfaceClient(transport),
        security_groups=RestSecurityGroupClient(transport),
        key_pairs=RestKeyPairClient(transport),
        tags=RestTagClient(transport),
        storage=RestStorageClient(transport),
        resource_groups=RestResourceGroupClient(transport),
        images=RestImageClient(transport),
    )
