"""ProvisioningOrchestrator: ordered creation of a node and its prerequisites.

Each step that starts an asynchronous provider-side operation is followed by
an AsyncPredicate wait before the next step begins; a 2xx answer alone is
never taken as completion.

The orchestrator does not clean up after itself. On failure it raises
``ProvisioningError`` carrying the partial result (every resource it created
so far) and leaves the decision to retry or to unwind to the caller.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog

from cloud_provisioner.config.models import PlatformConfig, ProvisioningRequest
from cloud_provisioner.errors import NotFoundError, ProvisionerError, ProvisioningError
from cloud_provisioner.providers.base import (
    InstanceSpec,
    InstanceStatus,
    ProviderClients,
    ResourceHandle,
    ResourceKind,
    encode_node_id,
)
from cloud_provisioner.provisioning.keys import fingerprints_match, normalize_fingerprint
from cloud_provisioner.provisioning.ownership import OwnershipTag
from cloud_provisioner.provisioning.planner import (
    DependencyGraphBuilder,
    ResourceSpec,
    SpecAction,
)
from cloud_provisioner.provisioning.predicates import PredicateFactory

logger = structlog.get_logger()

_STAGES: dict[ResourceKind, str] = {
    ResourceKind.RESOURCE_GROUP: "resource_group",
    ResourceKind.PUBLIC_ADDRESS: "public_address",
    ResourceKind.NETWORK_INTERFACE: "network_interface",
    ResourceKind.SECURITY_GROUP: "security_group",
    ResourceKind.KEY_PAIR: "key_pair",
    ResourceKind.IMAGE: "image",
    ResourceKind.INSTANCE: "instance",
}


@dataclass
class ProvisioningResult:
    """The node handle plus every resource the orchestrator itself created.

    ``created`` is ordered by creation and excludes resources that were
    supplied or reused; it is the cleanup bookkeeping for this call.
    """

    instance: ResourceHandle | None = None
    created: list[ResourceHandle] = field(default_factory=list)
    public_ip: str | None = None
    login_private_key: str | None = field(default=None, repr=False)

    @property
    def node_id(self) -> str | None:
        if self.instance is None:
            return None
        return encode_node_id(self.instance.region, self.instance.id)


@dataclass
class _Run:
    """Mutable state threaded through the steps of one create() call."""

    request: ProvisioningRequest
    result: ProvisioningResult
    cancel: asyncio.Event | None
    security_group_index: dict[str, str] = field(default_factory=dict)
    resource_group: str | None = None
    public_address_id: str | None = None
    interface_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    key_pair_name: str | None = None
    ephemeral_key: ResourceHandle | None = None

    @property
    def region(self) -> str:
        return self.request.region

    def handle(self, kind: ResourceKind, resource_id: str) -> ResourceHandle:
        return ResourceHandle(kind, resource_id, self.region)

    def created(self, kind: ResourceKind, resource_id: str) -> ResourceHandle:
        handle = self.handle(kind, resource_id)
        self.result.created.append(handle)
        return handle


class ProvisioningOrchestrator:
    """Creates one node per ``create`` call against a set of provider clients."""

    def __init__(
        self,
        clients: ProviderClients,
        platform: PlatformConfig,
        *,
        predicates: PredicateFactory | None = None,
        name_generator: Callable[[], str] | None = None,
    ) -> None:
        self._clients = clients
        self._platform = platform
        self._predicates = predicates or PredicateFactory(clients, platform)
        self._planner = DependencyGraphBuilder(
            platform.network, name_generator=name_generator
        )
        self._ownership = OwnershipTag.from_config(platform.ownership)
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._key_waiters: Counter[str] = Counter()

    # -- Public API ----------------------------------------------------------------

    async def create(
        self,
        request: ProvisioningRequest,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ProvisioningResult:
        """Provision a node; raise ``ProvisioningError`` with the partial result."""
        run = _Run(request=request, result=ProvisioningResult(), cancel=cancel)
        specs = await self._plan(run)
        logger.info(
            "orchestrator.plan_ready",
            group=request.group,
            region=request.region,
            steps=[str(s) for s in specs],
        )

        stage = "plan"
        try:
            for spec in specs:
                stage = _STAGES[spec.kind]
                await self._execute(spec, run)
            stage = "instance_boot"
            await self._await_boot(run)
            stage = "post_boot"
            await self._post_boot(run)
        except Exception as exc:
            logger.error(
                "orchestrator.stage_failed",
                group=request.group,
                stage=stage,
                created=[str(h) for h in run.result.created],
                error=str(exc),
            )
            raise ProvisioningError(
                stage, str(exc), cause=exc, result=run.result
            ) from exc
        finally:
            if run.ephemeral_key is not None:
                await self._delete_ephemeral_key(run)

        logger.info(
            "orchestrator.node_created",
            node_id=run.result.node_id,
            public_ip=run.result.public_ip,
            created=len(run.result.created),
        )
        return run.result

    # -- Planning ------------------------------------------------------------------

    async def _plan(self, run: _Run) -> list[ResourceSpec]:
        request = run.request
        clients = self._clients
        existing_groups: list[str] | None = None
        existing_keys: list[str] | None = None
        try:
            if request.security_groups:
                groups = await clients.security_groups.list(
                    request.region, request.resource_group
                )
                run.security_group_index = {g.name: g.id for g in groups}
                existing_groups = list(run.security_group_index)
            if request.key_pair_name:
                existing_keys = [
                    k.name for k in await clients.key_pairs.list(request.region)
                ]
            specs = self._planner.plan(
                request,
                existing_security_groups=existing_groups,
                existing_key_pairs=existing_keys,
            )
            if await clients.images.get(request.region, request.image_id) is None:
                raise NotFoundError(ResourceKind.IMAGE, request.image_id)
            return specs
        except NotFoundError:
            raise
        except Exception as exc:
            raise ProvisioningError(
                "plan", str(exc), cause=exc, result=run.result
            ) from exc

    # -- Steps ---------------------------------------------------------------------

    async def _execute(self, spec: ResourceSpec, run: _Run) -> None:
        if spec.kind == ResourceKind.RESOURCE_GROUP:
            await self._ensure_resource_group(spec, run)
        elif spec.kind == ResourceKind.PUBLIC_ADDRESS:
            await self._public_address(spec, run)
        elif spec.kind == ResourceKind.NETWORK_INTERFACE:
            await self._network_interface(spec, run)
        elif spec.kind == ResourceKind.SECURITY_GROUP:
            await self._security_group(spec, run)
        elif spec.kind == ResourceKind.KEY_PAIR:
            await self._key_pair(spec, run)
        elif spec.kind == ResourceKind.IMAGE:
            await self._predicates.image_available().require(
                run.handle(ResourceKind.IMAGE, spec.name), cancel=run.cancel
            )
        elif spec.kind == ResourceKind.INSTANCE:
            await self._create_instance(spec, run)
        else:
            msg = f"Unsupported resource spec: {spec}"
            raise ValueError(msg)

    def _creation_tags(self, run: _Run) -> dict[str, str]:
        return {**run.request.tags, **self._ownership.as_tags()}

    async def _ensure_resource_group(self, spec: ResourceSpec, run: _Run) -> None:
        groups = self._clients.resource_groups
        run.resource_group = spec.name
        if await groups.get(spec.name) is not None:
            logger.info("orchestrator.resource_group_exists", name=spec.name)
            return
        record = await groups.create(run.region, spec.name)
        handle = run.created(ResourceKind.RESOURCE_GROUP, record.name)
        logger.info("orchestrator.resource_group_created", name=record.name)
        await self._predicates.resource_group_provisioned().require(
            handle, cancel=run.cancel
        )

    async def _public_address(self, spec: ResourceSpec, run: _Run) -> None:
        addresses = self._clients.addresses
        if spec.action == SpecAction.REUSE:
            record = await addresses.get(run.region, spec.name)
            if record is None:
                raise NotFoundError(ResourceKind.PUBLIC_ADDRESS, spec.name)
            run.public_address_id = record.id
            run.result.public_ip = record.ip_address
            logger.info("orchestrator.public_address_reused", address_id=record.id)
            return

        record = await addresses.create(
            run.region,
            spec.name,
            resource_group=run.resource_group,
            tags=self._creation_tags(run),
        )
        handle = run.created(ResourceKind.PUBLIC_ADDRESS, record.id)
        logger.info("orchestrator.public_address_created", address_id=record.id)
        await self._predicates.public_address_available().require(
            handle, cancel=run.cancel
        )
        run.public_address_id = record.id
        settled = await addresses.get(run.region, record.id)
        if settled is not None:
            run.result.public_ip = settled.ip_address

    async def _network_interface(self, spec: ResourceSpec, run: _Run) -> None:
        interfaces = self._clients.interfaces
        if spec.action == SpecAction.REUSE:
            record = await interfaces.get(run.region, spec.name)
            if record is None:
                raise NotFoundError(ResourceKind.NETWORK_INTERFACE, spec.name)
            run.interface_ids = (record.id,)
            run.public_address_id = record.public_address_id
            logger.info("orchestrator.network_interface_reused", interface_id=record.id)
            return

        record = await interfaces.create(
            run.region,
            spec.name,
            network_id=spec.attributes.get("network_id"),
            public_address_id=run.public_address_id,
            resource_group=run.resource_group,
            tags=self._creation_tags(run),
        )
        handle = run.created(ResourceKind.NETWORK_INTERFACE, record.id)
        logger.info("orchestrator.network_interface_created", interface_id=record.id)
        await self._predicates.network_interface_provisioned().require(
            handle, cancel=run.cancel
        )
        run.interface_ids = (record.id,)

    async def _security_group(self, spec: ResourceSpec, run: _Run) -> None:
        if spec.action == SpecAction.VALIDATE:
            run.security_group_ids = (run.security_group_index[spec.name],)
            logger.info(
                "orchestrator.security_group_reused",
                name=spec.name,
                group_id=run.security_group_ids[0],
            )
            return

        security_groups = self._clients.security_groups
        record = await security_groups.create(
            run.region,
            spec.name,
            network_id=spec.attributes.get("network_id"),
            resource_group=run.resource_group,
        )
        handle = run.created(ResourceKind.SECURITY_GROUP, record.id)
        logger.info(
            "orchestrator.security_group_created", name=spec.name, group_id=record.id
        )
        # The node must never be attached to a half-configured group.
        for rule in spec.attributes.get("rules", ()):
            await security_groups.add_ingress_rule(run.region, record.id, rule)
            logger.debug(
                "orchestrator.ingress_rule_added",
                group_id=record.id,
                protocol=rule.protocol,
                ports=rule.port_range,
                cidr=rule.cidr,
            )
        await self._clients.tags.add(handle, self._ownership.as_tags())
        logger.info(
            "orchestrator.security_group_tagged",
            group_id=record.id,
            tag=str(self._ownership),
        )
        run.security_group_ids = (record.id,)

    @asynccontextmanager
    async def _key_lock(self, fingerprint: str) -> AsyncIterator[None]:
        key = normalize_fingerprint(fingerprint)
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._key_waiters[key] -= 1
            if not self._key_waiters[key]:
                del self._key_waiters[key]
                del self._key_locks[key]

    async def _key_pair(self, spec: ResourceSpec, run: _Run) -> None:
        key_pairs = self._clients.key_pairs

        if spec.action == SpecAction.GENERATE:
            generated = await key_pairs.create(run.region, spec.name)
            handle = run.created(ResourceKind.KEY_PAIR, generated.record.name)
            run.ephemeral_key = handle
            run.key_pair_name = generated.record.name
            run.result.login_private_key = generated.private_key
            logger.info("orchestrator.key_pair_generated", name=generated.record.name)
            return

        if spec.action == SpecAction.REUSE:
            run.key_pair_name = spec.name
            return

        fingerprint: str = spec.attributes["fingerprint"]
        async with self._key_lock(fingerprint):
            existing = next(
                (
                    k
                    for k in await key_pairs.list(run.region)
                    if fingerprints_match(k.fingerprint, fingerprint)
                ),
                None,
            )
            if existing is not None:
                logger.info(
                    "orchestrator.key_pair_reused",
                    name=existing.name,
                    fingerprint=fingerprint,
                )
                run.key_pair_name = existing.name
                return
            record = await key_pairs.import_key(
                run.region, spec.name, spec.attributes["public_key"]
            )
            run.created(ResourceKind.KEY_PAIR, record.name)
            logger.info(
                "orchestrator.key_pair_imported",
                name=record.name,
                fingerprint=fingerprint,
            )
            run.key_pair_name = record.name

    async def _create_instance(self, spec: ResourceSpec, run: _Run) -> None:
        instance_spec = InstanceSpec(
            name=spec.name,
            image_id=spec.attributes["image_id"],
            hardware_id=spec.attributes["hardware_id"],
            zone=spec.attributes.get("zone"),
            resource_group=run.resource_group,
            network_interface_ids=run.interface_ids,
            security_group_ids=run.security_group_ids,
            key_pair_name=run.key_pair_name,
            tags=self._creation_tags(run),
        )
        record = await self._clients.instances.create(run.region, instance_spec)
        handle = run.created(ResourceKind.INSTANCE, record.id)
        run.result.instance = handle
        logger.info(
            "orchestrator.instance_created",
            node_id=run.result.node_id,
            name=spec.name,
        )

    async def _await_boot(self, run: _Run) -> None:
        node_id = run.result.node_id
        assert node_id is not None
        await self._predicates.instance_stable().require(node_id, cancel=run.cancel)

    async def _post_boot(self, run: _Run) -> None:
        instance = run.result.instance
        node_id = run.result.node_id
        assert instance is not None and node_id is not None
        instances = self._clients.instances

        record = await instances.get(instance.region, instance.id)
        if record is None:
            msg = f"instance {node_id} disappeared after boot"
            raise ProvisionerError(msg)

        # An address bound to the interface becomes the node IP on power-on.
        needs_ip = (
            run.request.allocate_public_ip
            and not record.public_ip
            and run.public_address_id is None
        )
        if record.status == InstanceStatus.STOPPED:
            if needs_ip:
                await instances.allocate_public_ip(instance.region, instance.id)
                logger.info("orchestrator.public_ip_allocated", node_id=node_id)
            await instances.start(instance.region, instance.id)
            logger.info("orchestrator.instance_powered_on", node_id=node_id)
            await self._predicates.instance_running().require(
                node_id, cancel=run.cancel
            )
            record = await instances.get(instance.region, instance.id)
        elif needs_ip:
            await instances.allocate_public_ip(instance.region, instance.id)
            logger.info("orchestrator.public_ip_allocated", node_id=node_id)

        if needs_ip:
            await self._predicates.instance_public_ip_available().require(
                node_id, cancel=run.cancel
            )
            record = await instances.get(instance.region, instance.id)
        if record is not None and record.public_ip:
            run.result.public_ip = record.public_ip

    async def _delete_ephemeral_key(self, run: _Run) -> None:
        handle = run.ephemeral_key
        assert handle is not None
        try:
            await self._clients.key_pairs.delete(handle.region, handle.id)
        except Exception as exc:
            logger.warning(
                "orchestrator.ephemeral_key_delete_failed",
                name=handle.id,
                error=str(exc),
            )
            return
        run.result.created.remove(handle)
        run.ephemeral_key = None
        logger.info("orchestrator.ephemeral_key_deleted", name=handle.id)
