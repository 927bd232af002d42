"""Error taxonomy for provisioning and cleanup.

Every error raised out of the orchestrator or the cleanup coordinator is one of
these types and carries enough context (stage, resource kind, id) to tell the
caller exactly what to retry or clean up.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cloud_provisioner.provisioning.orchestrator import ProvisioningResult


class ProvisionerError(Exception):
    """Base class for all provisioner errors."""


class TransportError(ProvisionerError):
    """The provider could not be reached or returned a malformed response.

    Always fatal; never interpreted as "not ready yet".
    """


class NotFoundError(ProvisionerError):
    """A referenced resource does not exist."""

    def __init__(
        self,
        kind: str,
        name: str,
        available: Sequence[str] | None = None,
    ) -> None:
        self.kind = kind
        self.name = name
        self.available = list(available) if available is not None else None
        msg = f"Cannot find {kind} '{name}'"
        if self.available is not None:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class ProvisioningError(ProvisionerError):
    """A creation stage failed or the provider reported a terminal failure.

    ``result`` holds the partial ProvisioningResult with the resources created
    before the failure, so the caller can hand them to cleanup.
    """

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        cause: BaseException | None = None,
        result: ProvisioningResult | None = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.result = result
        super().__init__(f"[{stage}] {message}")


class WaitTimeoutError(ProvisionerError, TimeoutError):
    """An AsyncPredicate exceeded its time budget."""

    def __init__(self, wait: str, token: Any, elapsed: float) -> None:
        self.wait = wait
        self.token = token
        self.elapsed = elapsed
        super().__init__(
            f"Timed out after {elapsed:.1f}s waiting for {wait} ({token})"
        )


class ProvisioningCancelledError(ProvisionerError):
    """The cancellation token was set while an operation was waiting."""


@dataclass(frozen=True)
class CleanupFailure:
    kind: str
    resource_id: str
    error: str

    def __str__(self) -> str:
        return f"{self.kind} {self.resource_id}: {self.error}"


class PartialCleanupError(ProvisionerError):
    """One or more deletions failed during destroy().

    Raised only after every deletable resource was attempted.
    """

    def __init__(self, node_id: str, failures: Sequence[CleanupFailure]) -> None:
        self.node_id = node_id
        self.failures = list(failures)
        detail = "; ".join(str(f) for f in self.failures)
        super().__init__(
            f"Failed to clean up {len(self.failures)} resource(s) of {node_id}: "
            f"{detail}"
        )
