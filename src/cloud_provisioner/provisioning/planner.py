"""Dependency planning: which resources must exist before the node is created.

The builder never talks to the provider. It turns a ProvisioningRequest into
an ordered list of ResourceSpecs, each saying whether a resource is created,
reused, looked up, or just validated. Execution lives in the orchestrator.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Collection, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from cloud_provisioner.config.models import NetworkConfig, ProvisioningRequest
from cloud_provisioner.errors import NotFoundError
from cloud_provisioner.providers.base import IngressRule, ResourceKind
from cloud_provisioner.provisioning.keys import parse_public_key


class SpecAction(StrEnum):
    CREATE = "create"
    ENSURE = "ensure"
    REUSE = "reuse"
    IMPORT_OR_REUSE = "import_or_reuse"
    GENERATE = "generate"
    VALIDATE = "validate"


@dataclass(frozen=True)
class ResourceSpec:
    kind: ResourceKind
    action: SpecAction
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    # Orchestrator-owned and deleted as soon as the node no longer needs it.
    ephemeral: bool = False

    def __str__(self) -> str:
        return f"{self.action} {self.kind} {self.name}"


def port_ranges(ports: Iterable[int]) -> list[tuple[int, int]]:
    """Fold ports into sorted, contiguous, inclusive ``(from, to)`` ranges.

    >>> port_ranges([80, 22, 8080, 8081, 23])
    [(22, 23), (80, 80), (8080, 8081)]
    """
    ranges: list[tuple[int, int]] = []
    for port in sorted(set(ports)):
        if ranges and port == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], port)
        else:
            ranges.append((port, port))
    return ranges


def _default_suffix() -> str:
    return secrets.token_hex(3)


class DependencyGraphBuilder:
    """Plans the ordered prerequisite resources for one node.

    Args:
        network: Ingress defaults for created security groups.
        name_generator: Returns the unique suffix of per-node names. Fix it to
            make retried plans produce identical names.
    """

    def __init__(
        self,
        network: NetworkConfig | None = None,
        *,
        name_generator: Callable[[], str] | None = None,
    ) -> None:
        self._network = network or NetworkConfig()
        self._name_generator = name_generator or _default_suffix

    def plan(
        self,
        request: ProvisioningRequest,
        *,
        existing_security_groups: Collection[str] | None = None,
        existing_key_pairs: Collection[str] | None = None,
    ) -> list[ResourceSpec]:
        """Return the ordered resource specs for *request*.

        When *existing_security_groups* or *existing_key_pairs* is given, a
        requested security group or key pair that is not among them fails the
        plan with ``NotFoundError``.
        """
        group = request.group
        suffix = self._name_generator()
        specs: list[ResourceSpec] = []

        if request.resource_group:
            specs.append(
                ResourceSpec(
                    ResourceKind.RESOURCE_GROUP,
                    SpecAction.ENSURE,
                    request.resource_group,
                )
            )

        specs.extend(self._plan_network(request))

        security_group = self._plan_security_group(request, existing_security_groups)
        if security_group is not None:
            specs.append(security_group)

        specs.append(self._plan_key_pair(request, suffix, existing_key_pairs))

        specs.append(
            ResourceSpec(ResourceKind.IMAGE, SpecAction.VALIDATE, request.image_id)
        )
        specs.append(
            ResourceSpec(
                ResourceKind.INSTANCE,
                SpecAction.CREATE,
                f"{group}-{suffix}",
                {
                    "image_id": request.image_id,
                    "hardware_id": request.hardware_id,
                    "zone": request.zone,
                },
            )
        )
        return specs

    # -- Per-kind rules ----------------------------------------------------------

    def _plan_network(self, request: ProvisioningRequest) -> list[ResourceSpec]:
        group = request.group
        specs: list[ResourceSpec] = []

        if request.network_interface_id:
            # A supplied interface already carries its own addressing.
            specs.append(
                ResourceSpec(
                    ResourceKind.NETWORK_INTERFACE,
                    SpecAction.REUSE,
                    request.network_interface_id,
                )
            )
            return specs

        address_id: str | None = None
        if request.public_address_id:
            address_id = request.public_address_id
            specs.append(
                ResourceSpec(
                    ResourceKind.PUBLIC_ADDRESS, SpecAction.REUSE, address_id
                )
            )
        elif request.allocate_public_ip:
            specs.append(
                ResourceSpec(
                    ResourceKind.PUBLIC_ADDRESS, SpecAction.CREATE, f"{group}-ip"
                )
            )

        specs.append(
            ResourceSpec(
                ResourceKind.NETWORK_INTERFACE,
                SpecAction.CREATE,
                f"{group}-nic",
                {"network_id": request.network_id, "public_address_id": address_id},
            )
        )
        return specs

    def _plan_security_group(
        self,
        request: ProvisioningRequest,
        existing: Collection[str] | None,
    ) -> ResourceSpec | None:
        if len(request.security_groups) > 1:
            msg = "Only one security group can be configured per node"
            raise ValueError(msg)

        if request.security_groups:
            name = request.security_groups[0]
            if existing is not None and name not in existing:
                raise NotFoundError(
                    ResourceKind.SECURITY_GROUP, name, sorted(existing)
                )
            return ResourceSpec(
                ResourceKind.SECURITY_GROUP, SpecAction.VALIDATE, name
            )

        if request.inbound_ports:
            rules = tuple(
                IngressRule(
                    protocol=self._network.ingress_protocol,
                    from_port=start,
                    to_port=end,
                    cidr=self._network.default_ingress_cidr,
                )
                for start, end in port_ranges(request.inbound_ports)
            )
            return ResourceSpec(
                ResourceKind.SECURITY_GROUP,
                SpecAction.CREATE,
                f"{request.group}-sg",
                {"network_id": request.network_id, "rules": rules},
            )
        return None

    def _plan_key_pair(
        self,
        request: ProvisioningRequest,
        suffix: str,
        existing: Collection[str] | None,
    ) -> ResourceSpec:
        group = request.group
        if request.public_key:
            key = parse_public_key(request.public_key)
            fingerprint = key.fingerprint
            return ResourceSpec(
                ResourceKind.KEY_PAIR,
                SpecAction.IMPORT_OR_REUSE,
                f"{group}-imported-{fingerprint.replace(':', '')[:8]}",
                {"fingerprint": fingerprint, "public_key": request.public_key},
            )
        if request.key_pair_name:
            if existing is not None and request.key_pair_name not in existing:
                raise NotFoundError(
                    ResourceKind.KEY_PAIR, request.key_pair_name, sorted(existing)
                )
            return ResourceSpec(
                ResourceKind.KEY_PAIR, SpecAction.REUSE, request.key_pair_name
            )
        return ResourceSpec(
            ResourceKind.KEY_PAIR,
            SpecAction.GENERATE,
            f"{group}-key-{suffix}",
            ephemeral=True,
        )
