"""CleanupCoordinator: teardown of a node and the resources it exclusively owns.

The provider is the source of truth: dependencies are rediscovered from the
instance record rather than from a ledger, so ``destroy`` works from a fresh
process with nothing but the node id. ``release`` unwinds the partial result
of a failed ``create`` from its list of created handles.

Dependencies are only touched once the instance is confirmed gone. While it
still exists they are deferred, and a later ``destroy`` picks them up again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from cloud_provisioner.config.models import PlatformConfig
from cloud_provisioner.errors import (
    CleanupFailure,
    NotFoundError,
    PartialCleanupError,
    ProvisioningCancelledError,
)
from cloud_provisioner.providers.base import (
    InstanceRecord,
    InstanceStatus,
    ProviderClients,
    ResourceHandle,
    ResourceKind,
    decode_node_id,
    encode_node_id,
)
from cloud_provisioner.provisioning.orchestrator import ProvisioningResult
from cloud_provisioner.provisioning.ownership import OwnershipTag
from cloud_provisioner.provisioning.predicates import PredicateFactory
from cloud_provisioner.provisioning.waiter import Outcome

logger = structlog.get_logger()


@dataclass(frozen=True)
class _Dependencies:
    """Resources linked to the instance, captured before it is deleted."""

    interface_ids: tuple[str, ...] = ()
    address_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    storage_account_id: str | None = None
    resource_group: str | None = None

    def handles(self, region: str) -> set[ResourceHandle]:
        handles = {
            *(
                ResourceHandle(ResourceKind.NETWORK_INTERFACE, i, region)
                for i in self.interface_ids
            ),
            *(
                ResourceHandle(ResourceKind.PUBLIC_ADDRESS, a, region)
                for a in self.address_ids
            ),
            *(
                ResourceHandle(ResourceKind.SECURITY_GROUP, g, region)
                for g in self.security_group_ids
            ),
        }
        if self.storage_account_id:
            handles.add(
                ResourceHandle(
                    ResourceKind.STORAGE_ACCOUNT, self.storage_account_id, region
                )
            )
        if self.resource_group:
            handles.add(
                ResourceHandle(ResourceKind.RESOURCE_GROUP, self.resource_group, region)
            )
        return handles


@dataclass
class _Teardown:
    node_id: str
    region: str
    instance_id: str | None
    cancel: asyncio.Event | None
    failures: list[CleanupFailure] = field(default_factory=list)
    timed_out: bool = False
    instance_gone: bool = False


class CleanupCoordinator:
    """Deletes a node, then every dependency that is safe to delete."""

    def __init__(
        self,
        clients: ProviderClients,
        platform: PlatformConfig,
        *,
        predicates: PredicateFactory | None = None,
    ) -> None:
        self._clients = clients
        self._predicates = predicates or PredicateFactory(clients, platform)
        self._ownership = OwnershipTag.from_config(platform.ownership)

    async def destroy(
        self, node_id: str, *, cancel: asyncio.Event | None = None
    ) -> bool:
        """Tear down *node_id*.

        Returns ``True`` when the instance and every resource it exclusively
        owned were confirmed deleted, ``False`` when a deletion wait ran out of
        time. Raises ``PartialCleanupError`` after all steps were attempted if
        any of them failed.
        """
        region, instance_id = decode_node_id(node_id)
        record = await self._clients.instances.get(region, instance_id)
        if record is None:
            logger.info("cleanup.already_deleted", node_id=node_id)
            return True

        run = _Teardown(node_id, region, instance_id, cancel)
        await self._teardown_node(run, record)
        return self._finish(run)

    async def release(
        self, result: ProvisioningResult, *, cancel: asyncio.Event | None = None
    ) -> bool:
        """Delete what a failed ``create`` left behind.

        The instance, when one was created, is torn down like ``destroy``
        does. Every other handle in ``result.created`` is then deleted in
        reverse creation order. Same return and error contract as ``destroy``.
        """
        if not result.created:
            return True
        region = result.created[0].region
        instance = result.instance
        run = _Teardown(
            result.node_id or f"{region}/-",
            region,
            instance.id if instance is not None else None,
            cancel,
        )
        logger.info(
            "cleanup.release_started",
            node_id=run.node_id,
            created=[str(h) for h in result.created],
        )

        handled: set[ResourceHandle] = set()
        if instance is not None:
            handled.add(instance)
            record = await self._clients.instances.get(region, instance.id)
            if record is None:
                run.instance_gone = True
            else:
                handled |= await self._teardown_node(run, record)
                if not run.instance_gone:
                    return self._finish(run)

        for handle in reversed(result.created):
            if handle in handled:
                continue
            await self._step(
                run,
                handle.kind,
                handle.id,
                lambda h=handle: self._release_handle(run, h),
            )
        return self._finish(run)

    # -- Discovery -----------------------------------------------------------------

    async def _record_dependencies(self, record: InstanceRecord) -> _Dependencies:
        address_ids: list[str] = []
        for interface_id in record.network_interface_ids:
            interface = await self._clients.interfaces.get(record.region, interface_id)
            if interface is not None and interface.public_address_id:
                address_ids.append(interface.public_address_id)
        return _Dependencies(
            interface_ids=record.network_interface_ids,
            address_ids=tuple(address_ids),
            security_group_ids=record.security_group_ids,
            storage_account_id=record.storage_account_id,
            resource_group=record.resource_group,
        )

    # -- Steps ---------------------------------------------------------------------

    async def _teardown_node(
        self, run: _Teardown, record: InstanceRecord
    ) -> set[ResourceHandle]:
        """Remove the instance, then its dependencies once it is gone.

        Returns the dependency handles that were attempted.
        """
        deps = await self._record_dependencies(record)
        logger.info(
            "cleanup.started",
            node_id=run.node_id,
            status=str(record.status),
            interfaces=list(deps.interface_ids),
            security_groups=list(deps.security_group_ids),
        )
        await self._step(
            run,
            ResourceKind.INSTANCE,
            run.node_id,
            lambda: self._remove_instance(run, record),
        )
        if not run.instance_gone:
            logger.warning(
                "cleanup.dependencies_deferred",
                node_id=run.node_id,
                dependencies=sorted(str(h) for h in deps.handles(run.region)),
            )
            return set()

        for interface_id in deps.interface_ids:
            await self._step(
                run,
                ResourceKind.NETWORK_INTERFACE,
                interface_id,
                lambda i=interface_id: self._remove_interface(run, i),
            )
        for address_id in deps.address_ids:
            await self._step(
                run,
                ResourceKind.PUBLIC_ADDRESS,
                address_id,
                lambda a=address_id: self._remove_address(run, a),
            )
        for group_id in deps.security_group_ids:
            await self._step(
                run,
                ResourceKind.SECURITY_GROUP,
                group_id,
                lambda g=group_id: self._remove_security_group(run, g),
            )
        if deps.storage_account_id:
            account_id = deps.storage_account_id
            await self._step(
                run,
                ResourceKind.STORAGE_ACCOUNT,
                account_id,
                lambda: self._remove_storage(run, account_id),
            )
        if deps.resource_group:
            group_name = deps.resource_group
            await self._step(
                run,
                ResourceKind.RESOURCE_GROUP,
                group_name,
                lambda: self._remove_resource_group(run, group_name),
            )
        return deps.handles(run.region)

    def _finish(self, run: _Teardown) -> bool:
        if run.failures:
            logger.error(
                "cleanup.partial_failure",
                node_id=run.node_id,
                failures=[str(f) for f in run.failures],
            )
            raise PartialCleanupError(run.node_id, run.failures)

        logger.info("cleanup.finished", node_id=run.node_id, confirmed=not run.timed_out)
        return not run.timed_out

    async def _step(
        self,
        run: _Teardown,
        kind: ResourceKind,
        resource_id: str,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await action()
        except ProvisioningCancelledError:
            raise
        except NotFoundError:
            logger.info(
                "cleanup.already_gone",
                node_id=run.node_id,
                kind=str(kind),
                resource_id=resource_id,
            )
        except Exception as exc:
            logger.warning(
                "cleanup.step_failed",
                node_id=run.node_id,
                kind=str(kind),
                resource_id=resource_id,
                error=str(exc),
            )
            run.failures.append(CleanupFailure(str(kind), resource_id, str(exc)))

    async def _confirm(
        self, run: _Teardown, outcome: Outcome, kind: ResourceKind, resource_id: str
    ) -> None:
        if outcome is Outcome.TIMED_OUT:
            run.timed_out = True
            logger.warning(
                "cleanup.deletion_unconfirmed",
                node_id=run.node_id,
                kind=str(kind),
                resource_id=resource_id,
            )
            return
        logger.info(
            "cleanup.resource_deleted",
            node_id=run.node_id,
            kind=str(kind),
            resource_id=resource_id,
        )

    async def _delete_and_wait(
        self,
        run: _Teardown,
        handle: ResourceHandle,
        delete: Callable[[], Awaitable[None]],
    ) -> None:
        await delete()
        outcome = await self._predicates.resource_deleted().wait(
            handle, cancel=run.cancel
        )
        await self._confirm(run, outcome, handle.kind, handle.id)

    async def _remove_instance(self, run: _Teardown, record: InstanceRecord) -> None:
        instances = self._clients.instances
        node_id = encode_node_id(record.region, record.id)
        try:
            if record.status == InstanceStatus.DELETING:
                logger.info("cleanup.instance_already_deleting", node_id=node_id)
            elif await self._stop_instance(run, record, node_id):
                await instances.delete(record.region, record.id)
            else:
                return
        except NotFoundError:
            logger.info(
                "cleanup.already_gone",
                node_id=node_id,
                kind=str(ResourceKind.INSTANCE),
                resource_id=record.id,
            )
            run.instance_gone = True
            return

        outcome = await self._predicates.instance_terminated().wait(
            node_id, cancel=run.cancel
        )
        await self._confirm(run, outcome, ResourceKind.INSTANCE, node_id)
        run.instance_gone = outcome is Outcome.SUCCESS

    async def _stop_instance(
        self, run: _Teardown, record: InstanceRecord, node_id: str
    ) -> bool:
        """Bring the instance to rest; ``False`` when the stop was not confirmed."""
        if record.status not in (
            InstanceStatus.STOPPED,
            InstanceStatus.STOPPING,
            InstanceStatus.FAILED,
        ):
            await self._clients.instances.stop(record.region, record.id)
            logger.info("cleanup.instance_stopping", node_id=node_id)
        if record.status in (InstanceStatus.STOPPED, InstanceStatus.FAILED):
            return True
        stopped = await self._predicates.instance_stopped().wait(
            node_id, cancel=run.cancel
        )
        if stopped is Outcome.TIMED_OUT:
            # Deleting a running instance is rejected by some providers.
            run.timed_out = True
            logger.warning("cleanup.instance_stop_unconfirmed", node_id=node_id)
            return False
        return True

    async def _remove_interface(self, run: _Teardown, interface_id: str) -> None:
        await self._delete_and_wait(
            run,
            ResourceHandle(ResourceKind.NETWORK_INTERFACE, interface_id, run.region),
            lambda: self._clients.interfaces.delete(run.region, interface_id),
        )

    async def _owned(self, run: _Teardown, handle: ResourceHandle) -> bool:
        tags = await self._clients.tags.list(handle)
        if self._ownership.is_owned(tags):
            return True
        logger.info(
            "cleanup.skipped_unowned",
            node_id=run.node_id,
            kind=str(handle.kind),
            resource_id=handle.id,
            tag=str(self._ownership),
        )
        return False

    async def _remove_address(
        self, run: _Teardown, address_id: str, *, verify_owner: bool = True
    ) -> None:
        handle = ResourceHandle(ResourceKind.PUBLIC_ADDRESS, address_id, run.region)
        if verify_owner and not await self._owned(run, handle):
            return
        await self._delete_and_wait(
            run, handle, lambda: self._clients.addresses.delete(run.region, address_id)
        )

    async def _other_instances(self, run: _Teardown) -> list[InstanceRecord]:
        return [
            i
            for i in await self._clients.instances.list(run.region)
            if i.id != run.instance_id
        ]

    async def _remove_security_group(
        self, run: _Teardown, group_id: str, *, verify_owner: bool = True
    ) -> None:
        handle = ResourceHandle(ResourceKind.SECURITY_GROUP, group_id, run.region)
        if verify_owner and not await self._owned(run, handle):
            return
        users = [
            i.id
            for i in await self._other_instances(run)
            if group_id in i.security_group_ids
        ]
        if users:
            logger.info(
                "cleanup.security_group_shared",
                node_id=run.node_id,
                group_id=group_id,
                used_by=users,
            )
            return
        await self._delete_and_wait(
            run,
            handle,
            lambda: self._clients.security_groups.delete(run.region, group_id),
        )

    async def _remove_storage(self, run: _Teardown, account_id: str) -> None:
        if any(
            i.storage_account_id == account_id for i in await self._other_instances(run)
        ):
            logger.info(
                "cleanup.storage_in_use", node_id=run.node_id, account_id=account_id
            )
            return
        await self._delete_and_wait(
            run,
            ResourceHandle(ResourceKind.STORAGE_ACCOUNT, account_id, run.region),
            lambda: self._clients.storage.delete(run.region, account_id),
        )

    async def _remove_resource_group(self, run: _Teardown, name: str) -> None:
        clients = self._clients
        region = run.region
        occupied = (
            any(i.resource_group == name for i in await clients.instances.list(region))
            or bool(await clients.interfaces.list(region, name))
            or bool(await clients.addresses.list(region, name))
            or bool(await clients.security_groups.list(region, name))
            or bool(await clients.storage.list(region, name))
        )
        if occupied:
            logger.info(
                "cleanup.resource_group_not_empty", node_id=run.node_id, name=name
            )
            return
        await self._delete_and_wait(
            run,
            ResourceHandle(ResourceKind.RESOURCE_GROUP, name, region),
            lambda: clients.resource_groups.delete(name),
        )

    async def _remove_key_pair(self, run: _Teardown, name: str) -> None:
        users = [
            i.id
            for i in await self._clients.instances.list(run.region)
            if i.key_pair_name == name
        ]
        if users:
            logger.info(
                "cleanup.key_pair_in_use", node_id=run.node_id, name=name, used_by=users
            )
            return
        await self._clients.key_pairs.delete(run.region, name)
        logger.info(
            "cleanup.resource_deleted",
            node_id=run.node_id,
            kind=str(ResourceKind.KEY_PAIR),
            resource_id=name,
        )

    async def _release_handle(self, run: _Teardown, handle: ResourceHandle) -> None:
        # A create result lists only resources that call made.
        if handle.kind == ResourceKind.NETWORK_INTERFACE:
            await self._remove_interface(run, handle.id)
        elif handle.kind == ResourceKind.PUBLIC_ADDRESS:
            await self._remove_address(run, handle.id, verify_owner=False)
        elif handle.kind == ResourceKind.SECURITY_GROUP:
            await self._remove_security_group(run, handle.id, verify_owner=False)
        elif handle.kind == ResourceKind.STORAGE_ACCOUNT:
            await self._remove_storage(run, handle.id)
        elif handle.kind == ResourceKind.RESOURCE_GROUP:
            await self._remove_resource_group(run, handle.id)
        elif handle.kind == ResourceKind.KEY_PAIR:
            await self._remove_key_pair(run, handle.id)
        else:
            msg = f"Cannot release resource kind {handle.kind}"
            raise ValueError(msg)
