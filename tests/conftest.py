"""Shared fixtures: a controllable clock and services wired to it."""

import pytest

from zkgps.commitments import CommitmentService
from zkgps.proofs import ProofService
from zkgps.signing import EcdsaP256SignatureProvider


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return CommitmentService(clock=clock)


@pytest.fixture
def proofs(service):
    return ProofService(service)


@pytest.fixture(scope="session")
def keys():
    return EcdsaP256SignatureProvider().generate_keypair()
