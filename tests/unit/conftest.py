"""Shared fixtures: simulated time and a simulated provider."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from cloud_provisioner.config.models import MemoryProviderConfig, PlatformConfig
from cloud_provisioner.providers.base import ProviderClients
from cloud_provisioner.providers.memory import MemoryCloud
from cloud_provisioner.provisioning.predicates import PredicateFactory


class FakeClock:
    """Monotonic clock that only advances when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def make_public_key(seed: int = 0, key_type: str = "ssh-ed25519") -> str:
    """Return an OpenSSH public key line; ed25519 keys are derived from *seed*."""
    if key_type == "ssh-rsa":
        private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public = private.public_key()
    else:
        seed_bytes = bytes((seed + i) % 256 for i in range(32))
        public = ed25519.Ed25519PrivateKey.from_private_bytes(seed_bytes).public_key()
    line = public.public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode()
    return f"{line} test@host"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def platform() -> PlatformConfig:
    return PlatformConfig()


@pytest.fixture
def cloud() -> MemoryCloud:
    return MemoryCloud(MemoryProviderConfig(settle_polls=1))


@pytest.fixture
def clients(cloud: MemoryCloud) -> ProviderClients:
    return cloud.clients()


@pytest.fixture
def predicates(
    clients: ProviderClients, platform: PlatformConfig, clock: FakeClock
) -> PredicateFactory:
    return PredicateFactory(clients, platform, clock=clock, sleep=clock.sleep)


@pytest.fixture
def make_key():
    return make_public_key
