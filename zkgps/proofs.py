"""
Location proofs for zkGPS.

Four proof kinds:
- Proximity: "I am within X meters of point P"
- Region membership: "I am inside region R"
- Group proximity: "All N participants are near each other"
- Temporal: "I was near P between T1 and T2"

Trusted-assertion semantics
---------------------------
These are NOT zero-knowledge proofs. Each proof is a signed assertion plus
a commitment to a cell set that anyone can recompute from the proof's
public parameters. A verifier checks:

1. Freshness: ``now - timestamp <= 5 minutes``, and the timestamp is no
   more than 30 seconds ahead of ``now``.
2. Consistency: the payload's precision, cell count and Merkle root match
   a recomputation from public parameters.
3. Signature: the prover's key signed the public fields.

The boolean ``result`` is asserted by the prover and is NOT re-derived: a
dishonest prover holding a valid key can claim ``result=True`` from
anywhere. Circuit-backed proofs (Bulletproofs, Groth16) would be needed to
remove that trust.
"""

from __future__ import annotations

import json
import logging
from itertools import combinations
from typing import Any, Dict, Optional, Sequence, Set, Union

from zkgps.commitments import CommitmentService
from zkgps.errors import InvalidArgument
from zkgps.geohash import (
    Polygon,
    cells_in_polygon,
    cells_in_radius,
    encode,
    haversine_distance,
    point_in_polygon,
    polygon_bounds,
    precision_for_radius,
    shares_prefix,
)
from zkgps.hashing import canonical, merkle_root
from zkgps.models import (
    Coordinate,
    GroupParticipant,
    GroupProximityProof,
    HistoryEntry,
    KeyPair,
    LocationCommitment,
    ProximityProof,
    RegionProof,
    TemporalProof,
    TimeRange,
)

logger = logging.getLogger(__name__)

# A signed, consistency-checked claim; see module docstring
TrustedAssertionProof = Union[ProximityProof, RegionProof, TemporalProof, GroupProximityProof]


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

def _message(*parts: Any) -> str:
    return "|".join(_fmt(p) for p in parts)

def signing_message(proof: TrustedAssertionProof) -> str:
    """The exact string a proof's signature covers."""
    head = (proof.proof_id, proof.timestamp, proof.result)
    if isinstance(proof, ProximityProof):
        return _message(*head, proof.target_point.lat, proof.target_point.lng, proof.max_distance)
    if isinstance(proof, RegionProof):
        return _message(*head, proof.region_id)
    if isinstance(proof, GroupProximityProof):
        return _message(*head, len(proof.participants), proof.max_distance)
    if isinstance(proof, TemporalProof):
        loc = proof.location
        where = (loc.lat, loc.lng) if isinstance(loc, Coordinate) else (loc,)
        return _message(*head, proof.time_range.start, proof.time_range.end, *where, proof.max_distance)
    raise InvalidArgument(f"Unknown proof type: {type(proof).__name__}")


def region_precision(polygon: Polygon) -> int:
    """Precision for a region: precision_for_radius(bounding-box diagonal / 4)."""
    b = polygon_bounds(polygon)
    diagonal = haversine_distance(b.min_lat, b.min_lng, b.max_lat, b.max_lng)
    return precision_for_radius(diagonal / 4)


def group_precision(prefixes: Sequence[str], max_distance: float) -> int:
    """
    Precision at which a group is compared.

    Degrades to the shortest revealed prefix, so one coarse sharer lowers
    the comparison precision for everyone.
    """
    return min(precision_for_radius(max_distance), min(len(p) for p in prefixes))


def _check_distance(max_distance: float) -> None:
    if not max_distance > 0:
        raise InvalidArgument("max_distance must be positive")


def _payload_int(data: Dict[str, Any], key: str) -> Optional[int]:
    v = data.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        return None
    return v


class ProofService:
    """
    Generates and verifies trusted-assertion location proofs.

    Uses the hash/sign primitives, clock and metrics of the injected
    CommitmentService. All ``verify_*`` methods return False on any failure
    and never raise, so they can be called in a loop without try/except.
    """

    def __init__(self, commitments: CommitmentService):
        self.commitments = commitments
        self.metrics = commitments.metrics
        self.max_age_ms = commitments.settings.proofs.max_proof_age_ms
        self.max_skew_ms = commitments.settings.proofs.max_clock_skew_ms

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _hash(self, message: str) -> str:
        return self.commitments.hash(message)

    def _root(self, leaves: Set[str]) -> str:
        return merkle_root(leaves, self.commitments.hasher)

    def _new_proof_id(self, kind: str, *scope: Any) -> str:
        salt = self.commitments.generate_salt(8)
        return self._hash(_message(kind, *scope, self.commitments.now(), salt))

    def _cell_commitment(self, geohash: str) -> str:
        return self._hash(f"{geohash}|{self.commitments.generate_salt(16)}")

    def _finish(self, proof: TrustedAssertionProof, keys: KeyPair, precision: int, cells: int) -> TrustedAssertionProof:
        signature = self.commitments.signer.sign(signing_message(proof), keys.private_key)
        self.metrics.inc("proofs_generated_total")
        logger.info(f"Generated {proof.type} proof at precision {precision} over {cells} cells")
        return proof.model_copy(update={"signature": signature})

    def _is_stale(self, proof: TrustedAssertionProof) -> bool:
        age = self.commitments.now() - proof.timestamp
        return age > self.max_age_ms or -age > self.max_skew_ms

    @staticmethod
    def _load_payload(proof: TrustedAssertionProof) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(proof.proof)
        except (TypeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _reject(self, proof: TrustedAssertionProof, reason: str) -> bool:
        logger.debug(f"Rejected {proof.type} proof: {reason}")
        return self.metrics.outcome("proofs", False, reason)

    def _accept(self, proof: TrustedAssertionProof, check_signature: bool) -> bool:
        if check_signature and not self.verify_proof_signature(proof):
            return self._reject(proof, "signature")
        return self.metrics.outcome("proofs", True)

    def verify_proof_signature(self, proof: TrustedAssertionProof) -> bool:
        """Check the prover's signature over the proof's public fields."""
        return self.commitments.signer.verify(
            signing_message(proof), proof.signature, proof.prover_public_key
        )

    def region_id_for(self, polygon: Polygon) -> str:
        """Stable identifier for an unnamed region: hash of its canonical vertex list."""
        return self._hash(canonical([[float(lat), float(lng)] for lat, lng in polygon]))

    # ------------------------------------------------------------------
    # Proximity
    # ------------------------------------------------------------------

    def generate_proximity_proof(
        self,
        my_location: Coordinate,
        target: Coordinate,
        max_distance: float,
        keys: KeyPair,
    ) -> ProximityProof:
        """
        Assert that ``my_location`` is within ``max_distance`` metres of ``target``.

        The payload reveals the precision and a Merkle root of the valid cell
        set, never the prover's own cell.
        """
        _check_distance(max_distance)
        precision = precision_for_radius(max_distance)
        valid_cells = cells_in_radius(target.lat, target.lng, max_distance, precision)
        my_geohash = encode(my_location.lat, my_location.lng, precision)

        payload = {
            "precision": precision,
            "validCellCount": len(valid_cells),
            "cellCommitment": self._cell_commitment(my_geohash),
            "validCellsRoot": self._root(valid_cells),
        }
        proof = ProximityProof(
            proof_id=self._new_proof_id("proximity"),
            timestamp=self.commitments.now(),
            prover_public_key=keys.public_key,
            proof=canonical(payload),
            signature="",
            result=my_geohash in valid_cells,
            target_point=target,
            max_distance=max_distance,
        )
        return self._finish(proof, keys, precision, len(valid_cells))

    def verify_proximity_proof(self, proof: ProximityProof, check_signature: bool = True) -> bool:
        if self._is_stale(proof):
            return self._reject(proof, "stale")
        data = self._load_payload(proof)
        if data is None:
            return self._reject(proof, "malformed")

        precision = _payload_int(data, "precision")
        count = _payload_int(data, "validCellCount")
        root = data.get("validCellsRoot")
        if precision is None or count is None or not isinstance(root, str):
            return self._reject(proof, "malformed")
        if proof.max_distance <= 0 or precision != precision_for_radius(proof.max_distance):
            return self._reject(proof, "precision")

        valid_cells = cells_in_radius(
            proof.target_point.lat, proof.target_point.lng, proof.max_distance, precision
        )
        if self._root(valid_cells) != root:
            return self._reject(proof, "root")
        if len(valid_cells) != count:
            return self._reject(proof, "count")
        return self._accept(proof, check_signature)

    # ------------------------------------------------------------------
    # Region membership
    # ------------------------------------------------------------------

    def generate_region_proof(
        self,
        my_location: Coordinate,
        polygon: Polygon,
        region_id: Optional[str],
        region_name: Optional[str],
        keys: KeyPair,
    ) -> RegionProof:
        """
        Assert that ``my_location`` is inside ``polygon``.

        ``region_id`` defaults to ``region_id_for(polygon)``.
        """
        precision = region_precision(polygon)
        region_cells = cells_in_polygon(polygon, precision)
        my_geohash = encode(my_location.lat, my_location.lng, precision)
        region_id = region_id or self.region_id_for(polygon)

        payload = {
            "precision": precision,
            "regionCellCount": len(region_cells),
            "regionCellsRoot": self._root(region_cells),
            "cellCommitment": self._cell_commitment(my_geohash),
        }
        proof = RegionProof(
            proof_id=self._new_proof_id("region", region_id),
            timestamp=self.commitments.now(),
            prover_public_key=keys.public_key,
            proof=canonical(payload),
            signature="",
            result=my_geohash in region_cells,
            region_id=region_id,
            region_name=region_name,
        )
        return self._finish(proof, keys, precision, len(region_cells))

    def verify_region_proof(
        self,
        proof: RegionProof,
        polygon: Polygon,
        check_signature: bool = True,
    ) -> bool:
        if self._is_stale(proof):
            return self._reject(proof, "stale")
        data = self._load_payload(proof)
        if data is None:
            return self._reject(proof, "malformed")

        precision = _payload_int(data, "precision")
        count = _payload_int(data, "regionCellCount")
        root = data.get("regionCellsRoot")
        if precision is None or count is None or not isinstance(root, str):
            return self._reject(proof, "malformed")

        try:
            expected_precision = region_precision(polygon)
            region_cells = cells_in_polygon(polygon, expected_precision)
        except InvalidArgument:
            return self._reject(proof, "polygon")
        if precision != expected_precision:
            return self._reject(proof, "precision")
        if self._root(region_cells) != root:
            return self._reject(proof, "root")
        if len(region_cells) != count:
            return self._reject(proof, "count")
        return self._accept(proof, check_signature)

    # ------------------------------------------------------------------
    # Group proximity
    # ------------------------------------------------------------------

    def generate_group_proximity_proof(
        self,
        participants: Sequence[GroupParticipant],
        max_distance: float,
        keys: KeyPair,
    ) -> GroupProximityProof:
        """
        Assert that all participants' revealed prefixes agree.

        Compared at ``group_precision``; the payload commits to the
        participants' commitment hashes (not their geohashes) so a verifier
        holding the commitments can detect a tampered input set.

        Raises:
            InvalidArgument: If there are no participants or one lacks a revealed prefix
        """
        _check_distance(max_distance)
        if not participants:
            raise InvalidArgument("Group proof needs at least one participant")
        prefixes = []
        for p in participants:
            if not p.commitment.revealed_prefix:
                raise InvalidArgument("Every participant commitment must reveal a prefix")
            prefixes.append(p.commitment.revealed_prefix)

        precision = group_precision(prefixes, max_distance)
        all_proximate = all(shares_prefix(a, b, precision) for a, b in combinations(prefixes, 2))

        payload = {
            "precision": precision,
            "participantCount": len(participants),
            "commitmentsRoot": self._root({p.commitment.commitment for p in participants}),
        }
        proof = GroupProximityProof(
            proof_id=self._new_proof_id("group"),
            timestamp=self.commitments.now(),
            prover_public_key=keys.public_key,
            proof=canonical(payload),
            signature="",
            result=all_proximate,
            participants=[p.public_key for p in participants],
            max_distance=max_distance,
        )
        return self._finish(proof, keys, precision, len(participants))

    def verify_group_proximity_proof(
        self,
        proof: GroupProximityProof,
        commitments: Sequence[LocationCommitment],
        check_signature: bool = True,
    ) -> bool:
        """Recompute the commitments root and compatible precision from the published commitments."""
        if self._is_stale(proof):
            return self._reject(proof, "stale")
        data = self._load_payload(proof)
        if data is None:
            return self._reject(proof, "malformed")

        precision = _payload_int(data, "precision")
        count = _payload_int(data, "participantCount")
        root = data.get("commitmentsRoot")
        if precision is None or count is None or not isinstance(root, str):
            return self._reject(proof, "malformed")
        if count != len(commitments) or count != len(proof.participants):
            return self._reject(proof, "count")

        prefixes = [c.revealed_prefix for c in commitments]
        if not prefixes or not all(prefixes) or proof.max_distance <= 0:
            return self._reject(proof, "malformed")
        if precision != group_precision(prefixes, proof.max_distance):
            return self._reject(proof, "precision")
        if self._root({c.commitment for c in commitments}) != root:
            return self._reject(proof, "root")
        return self._accept(proof, check_signature)

    # ------------------------------------------------------------------
    # Temporal presence
    # ------------------------------------------------------------------

    def generate_temporal_proof(
        self,
        history: Sequence[HistoryEntry],
        target: Coordinate,
        time_range: TimeRange,
        max_distance: float,
        keys: KeyPair,
    ) -> TemporalProof:
        """
        Assert presence within ``max_distance`` of ``target`` during ``time_range``.

        Uses history entries whose commitment timestamp lies in
        [start, end] (inclusive).
        """
        _check_distance(max_distance)
        if time_range.start > time_range.end:
            raise InvalidArgument("time_range.start must not be after time_range.end")

        relevant = [
            h for h in history
            if time_range.start <= h.commitment.timestamp <= time_range.end
        ]
        precision = precision_for_radius(max_distance)
        valid_cells = cells_in_radius(target.lat, target.lng, max_distance, precision)
        was_present = any(
            encode(h.coordinate.lat, h.coordinate.lng, precision) in valid_cells
            for h in relevant
        )

        payload = {
            "precision": precision,
            "historyCount": len(relevant),
            "timeRange": {"start": time_range.start, "end": time_range.end},
            "commitmentsRoot": self._root({h.commitment.commitment for h in relevant}),
            "validCellCount": len(valid_cells),
            "validCellsRoot": self._root(valid_cells),
        }
        proof = TemporalProof(
            proof_id=self._new_proof_id("temporal"),
            timestamp=self.commitments.now(),
            prover_public_key=keys.public_key,
            proof=canonical(payload),
            signature="",
            result=was_present,
            location=target,
            time_range=time_range,
            max_distance=max_distance,
        )
        return self._finish(proof, keys, precision, len(valid_cells))

    def verify_temporal_proof(
        self,
        proof: TemporalProof,
        commitments: Optional[Sequence[LocationCommitment]] = None,
        check_signature: bool = True,
    ) -> bool:
        """
        Recompute the target cell set; when the prover's published
        commitments are supplied, also recompute the history root and count.
        """
        if self._is_stale(proof):
            return self._reject(proof, "stale")
        data = self._load_payload(proof)
        if data is None:
            return self._reject(proof, "malformed")
        if not isinstance(proof.location, Coordinate):
            return self._reject(proof, "location")

        precision = _payload_int(data, "precision")
        cell_count = _payload_int(data, "validCellCount")
        cells_root = data.get("validCellsRoot")
        if precision is None or cell_count is None or not isinstance(cells_root, str):
            return self._reject(proof, "malformed")
        if data.get("timeRange") != {"start": proof.time_range.start, "end": proof.time_range.end}:
            return self._reject(proof, "time_range")
        if proof.max_distance <= 0 or precision != precision_for_radius(proof.max_distance):
            return self._reject(proof, "precision")

        valid_cells = cells_in_radius(proof.location.lat, proof.location.lng, proof.max_distance, precision)
        if self._root(valid_cells) != cells_root:
            return self._reject(proof, "root")
        if len(valid_cells) != cell_count:
            return self._reject(proof, "count")

        if commitments is not None:
            in_range = {
                c.commitment for c in commitments
                if proof.time_range.start <= c.timestamp <= proof.time_range.end
            }
            if len(in_range) != data.get("historyCount") or self._root(in_range) != data.get("commitmentsRoot"):
                return self._reject(proof, "history")
        return self._accept(proof, check_signature)


# =============================================================================
# Quick checks (no proof generation)
# =============================================================================

def get_distance(a: Coordinate, b: Coordinate) -> float:
    """Distance between two locations in metres."""
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)

def are_locations_proximate(a: Coordinate, b: Coordinate, max_distance_meters: float) -> bool:
    return get_distance(a, b) <= max_distance_meters

def is_location_in_region(location: Coordinate, polygon: Polygon) -> bool:
    return point_in_polygon(location.lat, location.lng, polygon)


__all__ = [
    "ProofService",
    "TrustedAssertionProof",
    "are_locations_proximate",
    "get_distance",
    "group_precision",
    "is_location_in_region",
    "region_precision",
    "signing_message",
]
