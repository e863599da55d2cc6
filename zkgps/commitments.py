"""
Location commitment scheme for zkGPS.

A commitment binds a hidden full-precision location and a random salt:

    commitment = H(geohash(coord, 12) || "|" || salt)

Only a coarser prefix (``revealedPrefix``) is published. Holding the salt
lets the creator later open the commitment to a verifier.

Lifecycle:
- Commitments are immutable once created.
- After ``expiresAt`` they are dead: verification returns False.
- Stores prune lazily; there is no background timer.
"""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from zkgps.errors import InvalidArgument
from zkgps.geohash import MAX_PRECISION, check_precision, encode
from zkgps.hashing import HashProvider, generate_salt, load_hash_provider
from zkgps.metrics import Metrics
from zkgps.models import (
    Coordinate,
    HistoryEntry,
    KeyPair,
    LocationCommitment,
    SignedCommitment,
    now_ms,
)
from zkgps.settings import Settings
from zkgps.signing import SignatureProvider, load_signature_provider

logger = logging.getLogger(__name__)

Clock = Callable[[], int]

COMMITMENT_GEOHASH_PRECISION = MAX_PRECISION


class CommitmentService:
    """
    Creates, opens and signs location commitments.

    Crypto is injected through ``HashProvider``/``SignatureProvider``. When
    none are given the production providers are loaded, failing with
    InsecureEnvironment unless ``settings.allow_insecure_crypto`` is set.

    Usage:
        service = CommitmentService()
        salt = service.generate_salt()
        c = service.create_commitment(coord, precision=6, salt=salt)
        assert service.verify_commitment(c, coord, salt)
    """

    def __init__(
        self,
        hasher: Optional[HashProvider] = None,
        signer: Optional[SignatureProvider] = None,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
        metrics: Optional[Metrics] = None,
    ):
        self.settings = settings or Settings()
        allow_insecure = self.settings.allow_insecure_crypto
        self.hasher = hasher or load_hash_provider(allow_insecure=allow_insecure)
        self.signer = signer or load_signature_provider(allow_insecure=allow_insecure)
        self.clock = clock
        self.metrics = metrics or Metrics()

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def hash(self, message: str) -> str:
        return self.hasher.digest(message)

    def generate_salt(self, length: int = 32) -> str:
        return generate_salt(length)

    def generate_keypair(self) -> KeyPair:
        return self.signer.generate_keypair()

    def now(self) -> int:
        return self.clock()

    # ------------------------------------------------------------------
    # Commitments
    # ------------------------------------------------------------------

    def _commitment_hash(self, coordinate: Coordinate, salt: str) -> Tuple[str, str]:
        full_geohash = encode(coordinate.lat, coordinate.lng, COMMITMENT_GEOHASH_PRECISION)
        return full_geohash, self.hash(f"{full_geohash}|{salt}")

    def create_commitment(
        self,
        coordinate: Coordinate,
        precision: int,
        salt: str,
        expiration_ms: Optional[int] = None,
    ) -> LocationCommitment:
        """
        Create a commitment revealing only a ``precision``-length prefix.

        Args:
            coordinate: The location to commit to (kept secret)
            precision: Revealed geohash precision (1-12)
            salt: Random salt, kept by the creator
            expiration_ms: Lifetime; defaults to location.max_commitment_age_ms

        Raises:
            InvalidArgument: On bad precision, empty salt or non-positive lifetime
        """
        check_precision(precision)
        if not salt:
            raise InvalidArgument("Salt must be non-empty")
        if expiration_ms is None:
            expiration_ms = self.settings.location.max_commitment_age_ms
        if expiration_ms <= 0:
            raise InvalidArgument("expiration_ms must be positive")

        full_geohash, commitment_hash = self._commitment_hash(coordinate, salt)
        now = self.now()
        self.metrics.inc("commitments_created_total")
        logger.debug(f"Created commitment at precision {precision}, ttl {expiration_ms}ms")

        return LocationCommitment(
            commitment=commitment_hash,
            precision=precision,
            timestamp=now,
            expires_at=now + expiration_ms,
            revealed_prefix=full_geohash[:precision],
        )

    def verify_commitment(
        self,
        commitment: LocationCommitment,
        coordinate: Coordinate,
        salt: str,
    ) -> bool:
        """
        Open a commitment against a claimed (coordinate, salt).

        Returns False if expired, if the recomputed hash differs, or if the
        revealed prefix is inconsistent with the coordinate.
        """
        if self.now() > commitment.expires_at:
            return self.metrics.outcome("commitments", False, "expired")

        full_geohash, recomputed = self._commitment_hash(coordinate, salt)
        if not hmac.compare_digest(recomputed.encode("utf-8"), commitment.commitment.encode("utf-8")):
            return self.metrics.outcome("commitments", False, "mismatch")

        expected_prefix = full_geohash[: commitment.precision]
        if commitment.revealed_prefix and commitment.revealed_prefix != expected_prefix:
            return self.metrics.outcome("commitments", False, "prefix")

        return self.metrics.outcome("commitments", True)

    @staticmethod
    def commitment_matches_prefix(commitment: LocationCommitment, claimed_prefix: str) -> bool:
        """
        Check a claimed area against the revealed prefix.

        True when the shorter of the two prefixes agrees with the other,
        i.e. one cell contains the other.
        """
        if not commitment.revealed_prefix:
            return False
        shorter = min(len(commitment.revealed_prefix), len(claimed_prefix))
        return commitment.revealed_prefix[:shorter] == claimed_prefix[:shorter]

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    @staticmethod
    def _signing_message(commitment: LocationCommitment) -> str:
        return f"{commitment.commitment}|{commitment.timestamp}|{commitment.expires_at}"

    def sign_commitment(
        self,
        commitment: LocationCommitment,
        private_key: str,
        public_key: str,
    ) -> SignedCommitment:
        """Sign ``commitment|timestamp|expiresAt`` with the signer's private key."""
        signature = self.signer.sign(self._signing_message(commitment), private_key)
        return SignedCommitment(
            **commitment.model_dump(exclude={"signature", "signer_public_key"}),
            signature=signature,
            signer_public_key=public_key,
        )

    def verify_signed_commitment(self, signed: SignedCommitment) -> bool:
        """Check expiry, then the signature against the embedded public key."""
        if self.now() > signed.expires_at:
            return self.metrics.outcome("signatures", False, "expired")
        ok = self.signer.verify(self._signing_message(signed), signed.signature, signed.signer_public_key)
        return self.metrics.outcome("signatures", ok, "" if ok else "invalid")


class CommitmentStore:
    """
    Keyed collection of commitments created by this party.

    Maps commitment hash -> (commitment, salt). Salts stay inside the store
    and are only handed back to the creator via ``get_salt``. Constructed
    explicitly and passed around; independent stores never share state.
    """

    def __init__(self, service: CommitmentService):
        self.service = service
        self._commitments: Dict[str, LocationCommitment] = {}
        self._salts: Dict[str, str] = {}
        self._lock = threading.RLock()

    def create_and_store(
        self,
        coordinate: Coordinate,
        precision: int,
        expiration_ms: Optional[int] = None,
    ) -> Tuple[LocationCommitment, str]:
        """Create a commitment with a fresh salt and keep both."""
        salt = self.service.generate_salt()
        commitment = self.service.create_commitment(
            coordinate, precision=precision, salt=salt, expiration_ms=expiration_ms
        )
        with self._lock:
            self._commitments[commitment.commitment] = commitment
            self._salts[commitment.commitment] = salt
        return commitment, salt

    def get(self, commitment_hash: str) -> Optional[LocationCommitment]:
        with self._lock:
            return self._commitments.get(commitment_hash)

    def get_salt(self, commitment_hash: str) -> Optional[str]:
        with self._lock:
            return self._salts.get(commitment_hash)

    def prune_expired(self) -> int:
        """Drop expired commitments and their salts. Returns the number removed."""
        now = self.service.now()
        with self._lock:
            dead = [h for h, c in self._commitments.items() if c.expires_at < now]
            for h in dead:
                del self._commitments[h]
                del self._salts[h]
            remaining = len(self._commitments)
        if dead:
            logger.info(f"Pruned {len(dead)} expired commitments")
        self.service.metrics.observe("store_active_commitments", remaining)
        return len(dead)

    def get_active(self) -> List[LocationCommitment]:
        now = self.service.now()
        with self._lock:
            return [c for c in self._commitments.values() if c.expires_at >= now]

    def clear(self) -> None:
        with self._lock:
            self._commitments.clear()
            self._salts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._commitments)

    def __contains__(self, commitment_hash: object) -> bool:
        with self._lock:
            return commitment_hash in self._commitments


class LocationHistory:
    """
    Local location history backing temporal proofs.

    Records nothing unless ``location.enable_history`` is set. Entries hold
    the raw coordinate and salt and must never leave the device.
    """

    def __init__(self, service: CommitmentService, settings: Optional[Settings] = None):
        self.service = service
        self.settings = settings or service.settings
        self._entries: List[HistoryEntry] = []
        self._lock = threading.RLock()

    @property
    def enabled(self) -> bool:
        return self.settings.location.enable_history

    def record(self, coordinate: Coordinate, precision: int) -> Optional[HistoryEntry]:
        """Commit to ``coordinate`` and append it. Returns None when history is off."""
        if not self.enabled:
            return None
        salt = self.service.generate_salt()
        commitment = self.service.create_commitment(coordinate, precision=precision, salt=salt)
        entry = HistoryEntry(commitment=commitment, coordinate=coordinate, salt=salt)
        with self._lock:
            self._entries.append(entry)
        return entry

    def prune(self, now: Optional[int] = None) -> int:
        """Drop entries older than the retention window. Returns the number removed."""
        now = self.service.now() if now is None else now
        cutoff = now - self.settings.location.history_retention_ms
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.commitment.timestamp >= cutoff]
            return before - len(self._entries)

    def entries(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
