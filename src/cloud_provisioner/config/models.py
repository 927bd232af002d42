"""Pydantic configuration models for the provisioner."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Annotated, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


class ProviderMode(StrEnum):
    """Supported provider bindings."""

    MEMORY = "memory"
    REST = "rest"


class PollConfig(BaseModel):
    """Initial and maximum poll period for every wait-for-state operation."""

    initial_period_seconds: float = Field(default=1.0, gt=0)
    max_period_seconds: float = Field(default=15.0, gt=0)

    @model_validator(mode="after")
    def check_period_order(self) -> Self:
        if self.max_period_seconds < self.initial_period_seconds:
            msg = "max_period_seconds must be >= initial_period_seconds"
            raise ValueError(msg)
        return self


class TimeoutsConfig(BaseModel):
    """Per-wait time budgets (seconds). Each wait has its own budget."""

    node_running: float = Field(default=1200.0, ge=0)
    node_suspended: float = Field(default=120.0, ge=0)
    node_terminated: float = Field(default=300.0, ge=0)
    public_ip_available: float = Field(default=300.0, ge=0)
    image_available: float = Field(default=3600.0, ge=0)
    resource_provisioned: float = Field(default=300.0, ge=0)
    resource_deleted: float = Field(default=300.0, ge=0)


class OwnershipConfig(BaseModel):
    """Identity stamped on shared resources so cleanup knows it may delete them."""

    tag_key: str = Field(default="owner", min_length=1)
    tag_value: str = Field(default="cloud-provisioner", min_length=1)
    case_sensitive: bool = False


class NetworkConfig(BaseModel):
    """Defaults applied to ingress rules of created security groups."""

    default_ingress_cidr: str = "0.0.0.0/0"
    ingress_protocol: str = "tcp"

    @field_validator("default_ingress_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        import ipaddress

        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as exc:
            msg = f"default_ingress_cidr '{v}' is not a valid CIDR block"
            raise ValueError(msg) from exc
        return v


class RestProviderConfig(BaseModel):
    """REST provider API settings."""

    endpoint: str = "http://localhost:8700"
    api_token: SecretStr | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_wait_seconds: float = Field(default=1.0, gt=0)


class MemoryProviderConfig(BaseModel):
    """Simulated provider settings."""

    # Number of status reads before a transient state settles.
    settle_polls: int = Field(default=1, ge=0)
    # Simulate providers that create instances powered off.
    create_stopped: bool = False
    # Image ids the simulator knows about; None accepts any id.
    images: list[str] | None = None


class PlatformConfig(BaseModel):
    """Provisioner infrastructure configuration."""

    provider_mode: ProviderMode = ProviderMode.MEMORY
    rest: RestProviderConfig | None = None
    memory: MemoryProviderConfig | None = MemoryProviderConfig()
    poll: PollConfig = PollConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    ownership: OwnershipConfig = OwnershipConfig()
    network: NetworkConfig = NetworkConfig()

    @model_validator(mode="after")
    def check_provider_requirements(self) -> Self:
        """Ensure provider-specific config is present."""
        if self.provider_mode == ProviderMode.REST and self.rest is None:
            msg = "rest config is required when provider_mode is 'rest'"
            raise ValueError(msg)
        if self.provider_mode == ProviderMode.MEMORY and self.memory is None:
            msg = "memory config is required when provider_mode is 'memory'"
            raise ValueError(msg)
        return self


GroupName = Annotated[str, Field(pattern=r"^[a-z][a-z0-9-]{0,39}$")]
Port = Annotated[int, Field(ge=1, le=65535)]


class ProvisioningRequest(BaseModel):
    """A single node provisioning call. Immutable once submitted.

    Optional references (``network_id``, ``public_address_id``,
    ``network_interface_id``, ``security_groups``, ``key_pair_name``) point at
    pre-existing resources that are reused instead of created.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    group: GroupName
    region: str = Field(min_length=1)
    zone: str | None = None
    image_id: str = Field(min_length=1)
    hardware_id: str = Field(min_length=1)
    resource_group: str | None = None
    network_id: str | None = None
    public_address_id: str | None = None
    network_interface_id: str | None = None
    security_groups: tuple[str, ...] = ()
    key_pair_name: str | None = None
    public_key: str | None = None
    inbound_ports: tuple[Port, ...] = ()
    tags: dict[str, str] = Field(default_factory=dict)
    allocate_public_ip: bool = True

    @field_validator("security_groups")
    @classmethod
    def validate_single_security_group(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if len(v) > 1:
            msg = (
                "Only one security group can be configured per node, "
                f"got {len(v)}: {list(v)}"
            )
            raise ValueError(msg)
        return v

    @field_validator("public_key")
    @classmethod
    def validate_public_key_shape(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not re.match(r"^[a-z0-9@.-]+ [A-Za-z0-9+/=]+( .*)?$", v):
            msg = "public_key has a bad format, expected e.g. 'ssh-rsa AAAAB3... comment'"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_key_material(self) -> Self:
        if self.key_pair_name and self.public_key:
            msg = "key_pair_name and public_key are mutually exclusive"
            raise ValueError(msg)
        return self
