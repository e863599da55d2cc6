from __future__ import annotations

import json
import logging
import os
from typing import Any, Iterable, Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes

from zkgps.errors import InsecureEnvironment

logger = logging.getLogger(__name__)

EMPTY_LEAF = "empty"


class HashProvider(Protocol):
    """Digest capability used by commitments and proofs."""

    def digest(self, message: str) -> str:
        """Hex digest of a UTF-8 message."""
        ...


class Sha256HashProvider:
    """
    Production hash provider (SHA-256 from the `cryptography` backend).

    Raises InsecureEnvironment at construction if the backend cannot
    provide SHA-256.
    """

    name = "sha256"

    def __init__(self) -> None:
        try:
            hashes.Hash(hashes.SHA256())
        except UnsupportedAlgorithm as e:
            raise InsecureEnvironment("SHA-256 unavailable from crypto backend") from e

    def digest(self, message: str) -> str:
        h = hashes.Hash(hashes.SHA256())
        h.update(message.encode("utf-8"))
        return h.finalize().hex()


class InsecureTestHashProvider:
    """
    Non-cryptographic 32-bit rolling hash, padded to 64 hex chars.

    TEST ONLY. Trivially reversible for low-entropy inputs such as
    geohashes. Never returned unless a caller opts in explicitly.
    """

    name = "insecure-test"

    def digest(self, message: str) -> str:
        h = 0
        for ch in message:
            h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
        return f"{h:08x}" * 8


def load_hash_provider(allow_insecure: bool = False) -> HashProvider:
    """
    Return the production hash provider.

    Raises:
        InsecureEnvironment: If SHA-256 is unavailable and allow_insecure is False
    """
    try:
        return Sha256HashProvider()
    except InsecureEnvironment:
        if not allow_insecure:
            raise
        logger.warning("Secure hash unavailable; using InsecureTestHashProvider (allow_insecure=True)")
        return InsecureTestHashProvider()


def canonical(obj: Any) -> str:
    """Canonical JSON serialization for deterministic hashing."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))

def generate_salt(length: int = 32) -> str:
    """Hex salt of ``length`` random bytes from the OS CSPRNG."""
    return os.urandom(length).hex()

def merkle_root(leaves: Iterable[str], hasher: HashProvider) -> str:
    """
    Order-independent Merkle root of a set of strings.

    Leaves are sorted, hashed, then paired level by level with
    H(left|right), duplicating the last node on odd levels. This commits to
    a derivable set so a verifier can compare roots; it carries no
    inclusion proofs.
    """
    ordered = sorted(leaves)
    if not ordered:
        return hasher.digest(EMPTY_LEAF)
    level = [hasher.digest(leaf) for leaf in ordered]
    while len(level) > 1:
        nxt = []
        it = iter(level)
        for a in it:
            b = next(it, a)  # duplicate last if odd
            nxt.append(hasher.digest(f"{a}|{b}"))
        level = nxt
    return level[0]
