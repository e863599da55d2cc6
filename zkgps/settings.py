"""
Protocol configuration with fail-closed defaults.

Environment variables (all optional):
- ZKGPS_MIN_UPDATE_INTERVAL_MS: Minimum time between location updates (default: 5000)
- ZKGPS_MAX_COMMITMENT_AGE_MS: Default commitment lifetime (default: 300000)
- ZKGPS_ENABLE_HISTORY: Keep local history for temporal proofs (default: false)
- ZKGPS_HISTORY_RETENTION_MS: How long history is kept (default: 86400000)
- ZKGPS_USE_ZK_PROOFS: Reserved for circuit-backed proofs (default: false)
- ZKGPS_MIN_PROOF_PRECISION: Lowest precision any proof may use (default: 4)
- ZKGPS_QUERY_RATE_LIMIT: Incoming proximity queries per minute (default: 10)
- ZKGPS_ALLOW_INSECURE_CRYPTO: Permit test-only crypto providers (default: false)

These are passive values: the core reads them, the transport enforces
rate limits and update cadence.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from zkgps.models import TRUST_LEVEL_INTERVAL_MS, TrustCircle

PROOF_MAX_AGE_MS = 5 * 60 * 1000
PROOF_MAX_CLOCK_SKEW_MS = 30 * 1000


def _opt_int(name: str, default: int) -> int:
    """Parse integer environment variable."""
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError as e:
        raise RuntimeError(f"Invalid integer env var: {name}={v!r}") from e


def _opt_bool(name: str, default: bool) -> bool:
    """Parse boolean environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class LocationSettings:
    """Location update and commitment lifetime settings."""

    min_update_interval_ms: int = 5_000
    max_commitment_age_ms: int = 300_000
    enable_history: bool = False
    history_retention_ms: int = 86_400_000


@dataclass(frozen=True)
class ProofSettings:
    """Proof generation settings."""

    use_zk_proofs: bool = False  # start with prefix/cell-set matching
    min_proof_precision: int = 4  # never reveal more than metro-level in proofs
    query_rate_limit: int = 10
    max_proof_age_ms: int = PROOF_MAX_AGE_MS
    max_clock_skew_ms: int = PROOF_MAX_CLOCK_SKEW_MS  # how far a proof timestamp may lead now


@dataclass(frozen=True)
class Settings:
    """Top-level protocol configuration."""

    location: LocationSettings = field(default_factory=LocationSettings)
    proofs: ProofSettings = field(default_factory=ProofSettings)

    # Fail-closed: insecure crypto providers must be opted into
    allow_insecure_crypto: bool = False

    @staticmethod
    def load() -> Settings:
        """Load settings from environment variables."""
        return Settings(
            location=LocationSettings(
                min_update_interval_ms=_opt_int("ZKGPS_MIN_UPDATE_INTERVAL_MS", 5_000),
                max_commitment_age_ms=_opt_int("ZKGPS_MAX_COMMITMENT_AGE_MS", 300_000),
                enable_history=_opt_bool("ZKGPS_ENABLE_HISTORY", False),
                history_retention_ms=_opt_int("ZKGPS_HISTORY_RETENTION_MS", 86_400_000),
            ),
            proofs=ProofSettings(
                use_zk_proofs=_opt_bool("ZKGPS_USE_ZK_PROOFS", False),
                min_proof_precision=_opt_int("ZKGPS_MIN_PROOF_PRECISION", 4),
                query_rate_limit=_opt_int("ZKGPS_QUERY_RATE_LIMIT", 10),
            ),
            allow_insecure_crypto=_opt_bool("ZKGPS_ALLOW_INSECURE_CRYPTO", False),
        )


def default_trust_circles() -> List[TrustCircle]:
    """Default circle set: intimate, close, friends, and network (off by default)."""
    return [
        TrustCircle(
            id="intimate",
            name="Intimate",
            level="intimate",
            update_interval=TRUST_LEVEL_INTERVAL_MS["intimate"],
            require_mutual=True,
        ),
        TrustCircle(
            id="close",
            name="Close Friends & Family",
            level="close",
            update_interval=TRUST_LEVEL_INTERVAL_MS["close"],
            require_mutual=True,
        ),
        TrustCircle(
            id="friends",
            name="Friends",
            level="friends",
            update_interval=TRUST_LEVEL_INTERVAL_MS["friends"],
        ),
        TrustCircle(
            id="network",
            name="Network",
            level="network",
            update_interval=TRUST_LEVEL_INTERVAL_MS["network"],
            enabled=False,
        ),
    ]
