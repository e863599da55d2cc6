"""
Test configuration loading and protocol metrics.

Test Coverage:
- Fail-closed defaults
- Environment overrides and bad values
- Metrics counters, gauges and outcomes
"""

from dataclasses import FrozenInstanceError

import pytest

from zkgps.metrics import Metrics
from zkgps.settings import PROOF_MAX_AGE_MS, PROOF_MAX_CLOCK_SKEW_MS, Settings, default_trust_circles


def _clear_env(monkeypatch):
    for name in (
        "ZKGPS_MIN_UPDATE_INTERVAL_MS",
        "ZKGPS_MAX_COMMITMENT_AGE_MS",
        "ZKGPS_ENABLE_HISTORY",
        "ZKGPS_HISTORY_RETENTION_MS",
        "ZKGPS_USE_ZK_PROOFS",
        "ZKGPS_MIN_PROOF_PRECISION",
        "ZKGPS_QUERY_RATE_LIMIT",
        "ZKGPS_ALLOW_INSECURE_CRYPTO",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    """Test Settings.load()."""

    def test_defaults(self, monkeypatch):
        """With no environment, defaults are fail-closed."""
        _clear_env(monkeypatch)
        s = Settings.load()
        assert s.location.min_update_interval_ms == 5000
        assert s.location.max_commitment_age_ms == 300_000
        assert s.location.enable_history is False
        assert s.location.history_retention_ms == 86_400_000
        assert s.proofs.use_zk_proofs is False
        assert s.proofs.min_proof_precision == 4
        assert s.proofs.query_rate_limit == 10
        assert s.proofs.max_proof_age_ms == PROOF_MAX_AGE_MS == 300_000
        assert s.proofs.max_clock_skew_ms == PROOF_MAX_CLOCK_SKEW_MS == 30_000
        assert s.allow_insecure_crypto is False
        assert s == Settings()

    def test_env_overrides(self, monkeypatch):
        """Environment variables override defaults."""
        _clear_env(monkeypatch)
        monkeypatch.setenv("ZKGPS_MAX_COMMITMENT_AGE_MS", "60000")
        monkeypatch.setenv("ZKGPS_ENABLE_HISTORY", "yes")
        monkeypatch.setenv("ZKGPS_ALLOW_INSECURE_CRYPTO", "1")
        s = Settings.load()
        assert s.location.max_commitment_age_ms == 60_000
        assert s.location.enable_history is True
        assert s.allow_insecure_crypto is True

    def test_bad_integer(self, monkeypatch):
        """Non-integer values fail loudly."""
        _clear_env(monkeypatch)
        monkeypatch.setenv("ZKGPS_QUERY_RATE_LIMIT", "lots")
        with pytest.raises(RuntimeError, match="ZKGPS_QUERY_RATE_LIMIT"):
            Settings.load()

    def test_settings_are_frozen(self):
        """Settings cannot be mutated after construction."""
        s = Settings()
        with pytest.raises(FrozenInstanceError):
            s.allow_insecure_crypto = True

    def test_default_trust_circles(self):
        """Network is off by default; intimate and close require mutuality."""
        circles = {c.id: c for c in default_trust_circles()}
        assert not circles["network"].enabled
        assert circles["intimate"].require_mutual
        assert circles["close"].require_mutual
        assert not circles["friends"].require_mutual
        assert circles["friends"].effective_precision == 6


class TestMetrics:
    """Test the metrics registry."""

    def test_counters_and_gauges(self):
        """inc accumulates, observe overwrites."""
        m = Metrics()
        m.inc("a")
        m.inc("a", 2)
        m.observe("g", 3)
        m.observe("g", 5)
        assert m.snapshot() == {"counters": {"a": 3}, "gauges": {"g": 5.0}}

    def test_outcome(self):
        """Outcomes pass the result through and count reasons."""
        m = Metrics()
        assert m.outcome("proofs", True) is True
        assert m.outcome("proofs", False, "stale") is False
        assert m.outcome("proofs", False) is False
        assert m.counters == {
            "proofs_verified_total": 1,
            "proofs_rejected_total": 2,
            "proofs_rejected_total:stale": 1,
        }

    def test_snapshot_is_a_copy(self):
        """Snapshots do not alias live counters."""
        m = Metrics()
        snap = m.snapshot()
        m.inc("a")
        assert snap["counters"] == {}
