"""
Test trusted-assertion location proofs.

Test Coverage:
- Proximity, region, group and temporal proof generation
- Shared verification contract: freshness, recomputation, signature
- Malformed payloads fail without raising
- Wire round trip through the discriminated Proof union
"""

import json

import pytest

from zkgps.commitments import CommitmentService, LocationHistory
from zkgps.errors import InvalidArgument
from zkgps.models import (
    Coordinate,
    GroupParticipant,
    LocationCommitment,
    ProximityProof,
    TimeRange,
    parse_proof,
    to_wire,
)
from zkgps.proofs import (
    ProofService,
    are_locations_proximate,
    get_distance,
    is_location_in_region,
    signing_message,
)
from zkgps.settings import LocationSettings, Settings

TARGET = Coordinate(lat=37.7749, lng=-122.4194)
NEAR_TARGET = Coordinate(lat=37.7750, lng=-122.4195)
NEW_YORK = Coordinate(lat=40.7128, lng=-74.0060)
MISSION = [(37.77, -122.42), (37.77, -122.41), (37.78, -122.41), (37.78, -122.42)]

SIX_MINUTES_MS = 6 * 60 * 1000


def _offset_north(coord: Coordinate, meters: float) -> Coordinate:
    return Coordinate(lat=coord.lat + meters / 111_195, lng=coord.lng)


class TestProximityProof:
    """Test proximity proofs."""

    def test_prover_at_target(self, proofs, keys):
        """A prover at the target asserts and verifies proximity."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        assert proof.result is True
        assert proof.type == "proximity"
        assert proofs.verify_proximity_proof(proof)

    def test_prover_far_away(self, proofs, keys):
        """A prover 10x the radius away asserts no proximity."""
        far = _offset_north(TARGET, 5000)
        proof = proofs.generate_proximity_proof(far, TARGET, 500, keys)
        assert proof.result is False
        assert proofs.verify_proximity_proof(proof)

    def test_payload_shape(self, proofs, keys):
        """Payload reveals precision and a root, never the prover's cell."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        payload = json.loads(proof.proof)
        assert set(payload) == {"precision", "validCellCount", "cellCommitment", "validCellsRoot"}
        assert payload["precision"] == 7
        assert payload["validCellCount"] > 1

    def test_stale_proof(self, proofs, keys):
        """A proof backdated by six minutes fails regardless of result."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        backdated = proof.model_copy(update={"timestamp": proof.timestamp - SIX_MINUTES_MS})
        assert not proofs.verify_proximity_proof(backdated)
        assert not proofs.verify_proximity_proof(backdated, check_signature=False)

    def test_age_boundary(self, proofs, clock, keys):
        """Proofs are valid for exactly five minutes."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        clock.advance(5 * 60 * 1000)
        assert proofs.verify_proximity_proof(proof)
        clock.advance(1)
        assert not proofs.verify_proximity_proof(proof)

    def test_future_timestamp(self, proofs, clock, keys):
        """A proof dated more than 30 seconds ahead of the verifier fails."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        clock.advance(-30_000)
        assert proofs.verify_proximity_proof(proof)
        clock.advance(-1)
        assert not proofs.verify_proximity_proof(proof)
        assert proofs.metrics.counters["proofs_rejected_total:stale"] == 1

    def test_flipped_result_breaks_signature(self, proofs, keys):
        """The signature covers the asserted result."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        flipped = proof.model_copy(update={"result": False})
        assert not proofs.verify_proximity_proof(flipped)
        assert proofs.verify_proximity_proof(flipped, check_signature=False)

    def test_moved_target_fails_recomputation(self, proofs, keys):
        """Changing the target changes the recomputed cell set."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        moved = proof.model_copy(update={"target_point": NEW_YORK})
        assert not proofs.verify_proximity_proof(moved, check_signature=False)

    def test_tampered_root(self, proofs, keys):
        """A payload root that does not match the recomputation fails."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        payload = json.loads(proof.proof)
        payload["validCellsRoot"] = "00" * 32
        tampered = proof.model_copy(update={"proof": json.dumps(payload)})
        assert not proofs.verify_proximity_proof(tampered, check_signature=False)
        assert proofs.metrics.counters["proofs_rejected_total:root"] == 1

    @pytest.mark.parametrize("payload", ["not json", "[]", '{"precision": "7"}', "{}"])
    def test_malformed_payload(self, proofs, keys, payload):
        """Malformed payloads return False without raising."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        assert not proofs.verify_proximity_proof(proof.model_copy(update={"proof": payload}))

    def test_wrong_prover_key(self, proofs, service, keys):
        """A proof re-attributed to another key fails."""
        other = service.generate_keypair()
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        stolen = proof.model_copy(update={"prover_public_key": other.public_key})
        assert not proofs.verify_proximity_proof(stolen)
        assert not proofs.verify_proof_signature(stolen)

    def test_wire_round_trip(self, proofs, keys):
        """A proof survives JSON transport and still verifies."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        wire = json.loads(json.dumps(to_wire(proof)))
        assert wire["type"] == "proximity"
        assert "targetPoint" in wire and "proverPublicKey" in wire
        parsed = parse_proof(wire)
        assert isinstance(parsed, ProximityProof)
        assert proofs.verify_proximity_proof(parsed)

    def test_signing_message_format(self, proofs, keys):
        """Signature covers proofId|timestamp|result|lat|lng|maxDistance."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        assert signing_message(proof) == (
            f"{proof.proof_id}|{proof.timestamp}|true|37.7749|-122.4194|500"
        )

    def test_non_positive_distance(self, proofs, keys):
        """A zero radius is a caller error."""
        with pytest.raises(InvalidArgument):
            proofs.generate_proximity_proof(TARGET, TARGET, 0, keys)

    def test_metrics(self, proofs, keys):
        """Generation and verification are counted."""
        proof = proofs.generate_proximity_proof(TARGET, TARGET, 500, keys)
        proofs.verify_proximity_proof(proof)
        counters = proofs.metrics.snapshot()["counters"]
        assert counters["proofs_generated_total"] == 1
        assert counters["proofs_verified_total"] == 1


class TestRegionProof:
    """Test region membership proofs."""

    def test_inside_region(self, proofs, keys):
        """A prover inside the polygon asserts membership."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, "Mission", keys)
        assert proof.result is True
        assert proof.region_name == "Mission"
        assert proof.region_id == proofs.region_id_for(MISSION)
        assert proofs.verify_region_proof(proof, MISSION)

    def test_outside_region(self, proofs, keys):
        """A prover outside the polygon asserts non-membership."""
        proof = proofs.generate_region_proof(NEW_YORK, MISSION, "mission", None, keys)
        assert proof.result is False
        assert proof.region_id == "mission"
        assert proofs.verify_region_proof(proof, MISSION)

    def test_other_polygon_fails(self, proofs, keys):
        """Verifying against a different polygon fails recomputation."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, None, keys)
        shifted = [(lat + 0.05, lng) for lat, lng in MISSION]
        assert not proofs.verify_region_proof(proof, shifted)

    def test_degenerate_polygon_returns_false(self, proofs, keys):
        """An unusable verifier polygon is a failed verification."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, None, keys)
        assert not proofs.verify_region_proof(proof, MISSION[:2])

    def test_stale_proof(self, proofs, keys):
        """A region proof backdated by six minutes fails."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, None, keys)
        backdated = proof.model_copy(update={"timestamp": proof.timestamp - SIX_MINUTES_MS})
        assert not proofs.verify_region_proof(backdated, MISSION, check_signature=False)
        assert proofs.metrics.counters["proofs_rejected_total:stale"] == 1

    def test_age_boundary(self, proofs, clock, keys):
        """Region proofs are valid for exactly five minutes."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, None, keys)
        clock.advance(5 * 60 * 1000)
        assert proofs.verify_region_proof(proof, MISSION)
        clock.advance(1)
        assert not proofs.verify_region_proof(proof, MISSION)

    def test_payload_shape(self, proofs, keys):
        """Region payload carries the precision, cell count and root."""
        proof = proofs.generate_region_proof(Coordinate(lat=37.775, lng=-122.415), MISSION, None, None, keys)
        payload = json.loads(proof.proof)
        assert set(payload) == {"precision", "regionCellCount", "regionCellsRoot", "cellCommitment"}
        assert payload["precision"] == 7

    def test_region_id_is_stable(self, proofs):
        """The derived region id depends only on the vertices."""
        assert proofs.region_id_for(MISSION) == proofs.region_id_for(list(MISSION))
        assert proofs.region_id_for(MISSION) != proofs.region_id_for(MISSION[::-1])


class TestGroupProximityProof:
    """Test group proximity proofs."""

    def _participant(self, service, coord, precision=6):
        kp = service.generate_keypair()
        c = service.create_commitment(coord, precision=precision, salt=service.generate_salt())
        return GroupParticipant(public_key=kp.public_key, commitment=c)

    def test_group_together(self, proofs, service, keys):
        """Participants sharing a cell are proximate."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        assert proof.result is True
        assert proof.participants == [p.public_key for p in group]
        assert proofs.verify_group_proximity_proof(proof, [p.commitment for p in group])

    def test_group_apart(self, proofs, service, keys):
        """A participant in another city breaks proximity."""
        group = [self._participant(service, TARGET), self._participant(service, NEW_YORK)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        assert proof.result is False

    def test_precision_degrades_to_shortest_prefix(self, proofs, service, keys):
        """One coarse sharer lowers the comparison precision for all."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET, precision=3)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        assert json.loads(proof.proof)["precision"] == 3
        assert proofs.verify_group_proximity_proof(proof, [p.commitment for p in group])

    def test_swapped_commitment_fails(self, proofs, service, keys):
        """Substituting a participant's commitment changes the root."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        other = self._participant(service, NEAR_TARGET).commitment
        assert not proofs.verify_group_proximity_proof(proof, [group[0].commitment, other])

    def test_missing_commitment_fails(self, proofs, service, keys):
        """A verifier holding fewer commitments rejects the proof."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        assert not proofs.verify_group_proximity_proof(proof, [group[0].commitment])

    def test_stale_proof(self, proofs, service, keys):
        """A group proof backdated by six minutes fails."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        backdated = proof.model_copy(update={"timestamp": proof.timestamp - SIX_MINUTES_MS})
        commitments = [p.commitment for p in group]
        assert not proofs.verify_group_proximity_proof(backdated, commitments, check_signature=False)
        assert proofs.metrics.counters["proofs_rejected_total:stale"] == 1

    def test_age_boundary(self, proofs, service, clock, keys):
        """Group proofs are valid for exactly five minutes."""
        group = [self._participant(service, TARGET), self._participant(service, NEAR_TARGET)]
        proof = proofs.generate_group_proximity_proof(group, 1000, keys)
        commitments = [p.commitment for p in group]
        clock.advance(5 * 60 * 1000)
        assert proofs.verify_group_proximity_proof(proof, commitments)
        clock.advance(1)
        assert not proofs.verify_group_proximity_proof(proof, commitments)

    def test_empty_group(self, proofs, keys):
        """An empty group is a caller error."""
        with pytest.raises(InvalidArgument):
            proofs.generate_group_proximity_proof([], 1000, keys)

    def test_participant_without_prefix(self, proofs, service, keys, clock):
        """Every participant must reveal a prefix."""
        hidden = LocationCommitment(
            commitment=service.hash("x"),
            precision=6,
            timestamp=clock.now,
            expires_at=clock.now + 1000,
        )
        group = [self._participant(service, TARGET), GroupParticipant(public_key="pk", commitment=hidden)]
        with pytest.raises(InvalidArgument, match="prefix"):
            proofs.generate_group_proximity_proof(group, 1000, keys)


class TestTemporalProof:
    """Test temporal presence proofs."""

    @pytest.fixture
    def history(self, clock):
        settings = Settings(location=LocationSettings(enable_history=True))
        service = CommitmentService(settings=settings, clock=clock)
        return LocationHistory(service)

    def test_present_in_window(self, proofs, history, clock, keys):
        """History inside the window near the target asserts presence."""
        start = clock.now
        history.record(NEW_YORK, 6)
        clock.advance(1000)
        history.record(TARGET, 6)
        window = TimeRange(start=start, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        assert proof.result is True
        assert json.loads(proof.proof)["historyCount"] == 2
        assert proofs.verify_temporal_proof(proof)
        commitments = [e.commitment for e in history.entries()]
        assert proofs.verify_temporal_proof(proof, commitments)

    def test_outside_window(self, proofs, history, clock, keys):
        """History outside the window is ignored."""
        history.record(TARGET, 6)
        clock.advance(1000)
        history.record(NEW_YORK, 6)
        window = TimeRange(start=clock.now, end=clock.now + 10)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        assert proof.result is False
        assert json.loads(proof.proof)["historyCount"] == 1

    def test_extra_commitment_fails(self, proofs, service, history, clock, keys):
        """A published history with an extra in-window commitment fails."""
        history.record(TARGET, 6)
        window = TimeRange(start=clock.now, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        extra = service.create_commitment(NEW_YORK, precision=6, salt="s")
        commitments = [e.commitment for e in history.entries()] + [extra]
        assert not proofs.verify_temporal_proof(proof, commitments)

    def test_changed_window_fails(self, proofs, history, clock, keys):
        """The time range is bound by both payload and signature."""
        history.record(TARGET, 6)
        window = TimeRange(start=clock.now, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        widened = proof.model_copy(update={"time_range": TimeRange(start=0, end=clock.now)})
        assert not proofs.verify_temporal_proof(widened, check_signature=False)

    def test_stale_proof(self, proofs, history, clock, keys):
        """A temporal proof backdated by six minutes fails."""
        history.record(TARGET, 6)
        window = TimeRange(start=clock.now, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        backdated = proof.model_copy(update={"timestamp": proof.timestamp - SIX_MINUTES_MS})
        assert not proofs.verify_temporal_proof(backdated, check_signature=False)
        assert proofs.metrics.counters["proofs_rejected_total:stale"] == 1

    def test_age_boundary(self, proofs, history, clock, keys):
        """Temporal proofs are valid for exactly five minutes after generation."""
        history.record(TARGET, 6)
        window = TimeRange(start=clock.now, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        clock.advance(5 * 60 * 1000)
        assert proofs.verify_temporal_proof(proof)
        clock.advance(1)
        assert not proofs.verify_temporal_proof(proof)

    def test_inverted_window(self, proofs, keys):
        """start after end is a caller error."""
        with pytest.raises(InvalidArgument):
            proofs.generate_temporal_proof([], TARGET, TimeRange(start=10, end=5), 500, keys)

    def test_region_location_unverifiable(self, proofs, history, clock, keys):
        """A temporal proof naming a region id cannot be recomputed."""
        history.record(TARGET, 6)
        window = TimeRange(start=clock.now, end=clock.now)
        proof = proofs.generate_temporal_proof(history.entries(), TARGET, window, 500, keys)
        assert not proofs.verify_temporal_proof(proof.model_copy(update={"location": "mission"}))


class TestQuickHelpers:
    """Test proof-free location helpers."""

    def test_distance_and_proximity(self):
        """Nearby points are proximate, distant ones are not."""
        assert get_distance(TARGET, TARGET) == 0
        assert are_locations_proximate(TARGET, NEAR_TARGET, 50)
        assert not are_locations_proximate(TARGET, NEW_YORK, 1000)

    def test_region_membership(self):
        """Point-in-polygon over coordinates."""
        assert is_location_in_region(Coordinate(lat=37.775, lng=-122.415), MISSION)
        assert not is_location_in_region(NEW_YORK, MISSION)


def test_service_shares_commitment_metrics(service):
    """ProofService reports into the commitment service's metrics."""
    assert ProofService(service).metrics is service.metrics
