from __future__ import annotations

import argparse
import json
import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from zkgps.commitments import CommitmentService
from zkgps.errors import ZkGpsError
from zkgps.geohash import decode, decode_bounds, encode, neighbors
from zkgps.models import (
    TRUST_LEVELS,
    Coordinate,
    GroupProximityProof,
    KeyPair,
    LocationCommitment,
    ProximityProof,
    RegionProof,
    SignedCommitment,
    TemporalProof,
    TrustSnapshot,
    parse_proof,
    to_wire,
)
from zkgps.proofs import ProofService
from zkgps.settings import Settings
from zkgps.trust import TrustCircleManager


def ensure_state(state: str) -> Dict[str, str]:
    os.makedirs(state, exist_ok=True)
    return {
        "keys": os.path.join(state, "keys.json"),
        "trust": os.path.join(state, "trust.json"),
    }

def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def write_json(path: str, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)

def emit(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))

def load_keys(path: str) -> KeyPair:
    if not os.path.exists(path):
        raise SystemExit("❌ No keys found. Run init-keys first.")
    return KeyPair.model_validate(read_json(path))

def services() -> tuple[CommitmentService, ProofService]:
    commitments = CommitmentService(settings=Settings.load())
    return commitments, ProofService(commitments)

def load_trust(st: Dict[str, str]) -> TrustCircleManager:
    keys = load_keys(st["keys"])
    snapshot: Optional[TrustSnapshot] = None
    if os.path.exists(st["trust"]):
        snapshot = TrustSnapshot.model_validate(read_json(st["trust"]))
    return TrustCircleManager(keys.public_key, keys.public_key, snapshot=snapshot)

def save_trust(st: Dict[str, str], manager: TrustCircleManager) -> None:
    write_json(st["trust"], to_wire(manager.export()))

def load_commitments(path: str) -> List[LocationCommitment]:
    data = read_json(path)
    if isinstance(data, dict):
        data = [data]
    return [LocationCommitment.model_validate(c) for c in data]

def finish_verification(ok: bool, **extra: Any) -> None:
    emit({"valid": ok, **extra})
    if not ok:
        raise SystemExit(1)


# =============================================================================
# Keys and geohash
# =============================================================================

def cmd_init_keys(args):
    st = ensure_state(args.state)
    if os.path.exists(st["keys"]) and not args.force:
        keys = load_keys(st["keys"])
        emit({"status": "exists", "publicKey": keys.public_key})
        return

    commitments, _ = services()
    keys = commitments.generate_keypair()
    write_json(st["keys"], to_wire(keys))
    emit({"status": "created", "publicKey": keys.public_key})

def cmd_encode(args):
    emit({"geohash": encode(args.lat, args.lng, args.precision)})

def cmd_decode(args):
    center = decode(args.geohash)
    emit({**to_wire(center), "bounds": to_wire(decode_bounds(args.geohash))})

def cmd_neighbors(args):
    emit({"geohash": args.geohash, "neighbors": neighbors(args.geohash)})


# =============================================================================
# Commitments
# =============================================================================

def cmd_commit(args):
    st = ensure_state(args.state)
    commitments, _ = services()
    salt = commitments.generate_salt()
    c = commitments.create_commitment(
        Coordinate(lat=args.lat, lng=args.lng),
        precision=args.precision,
        salt=salt,
        expiration_ms=args.ttl_ms,
    )
    if args.sign:
        keys = load_keys(st["keys"])
        c = commitments.sign_commitment(c, keys.private_key, keys.public_key)
    emit({"commitment": to_wire(c), "salt": salt})

def cmd_verify_commit(args):
    data = read_json(args.commitment)
    if not isinstance(data, dict):
        raise SystemExit("❌ Commitment file must hold a single JSON object")
    if isinstance(data.get("commitment"), dict):
        data = data["commitment"]

    commitments, _ = services()
    coordinate = Coordinate(lat=args.lat, lng=args.lng)
    if "signature" in data:
        signed = SignedCommitment.model_validate(data)
        ok = commitments.verify_signed_commitment(signed) and commitments.verify_commitment(
            signed, coordinate, args.salt
        )
    else:
        ok = commitments.verify_commitment(LocationCommitment.model_validate(data), coordinate, args.salt)
    finish_verification(ok)


# =============================================================================
# Proofs
# =============================================================================

def cmd_prove_proximity(args):
    st = ensure_state(args.state)
    keys = load_keys(st["keys"])
    _, proofs = services()
    proof = proofs.generate_proximity_proof(
        Coordinate(lat=args.lat, lng=args.lng),
        Coordinate(lat=args.target_lat, lng=args.target_lng),
        args.max_distance,
        keys,
    )
    wire = to_wire(proof)
    if args.save:
        write_json(args.save, wire)
    emit(wire)

def cmd_verify_proof(args):
    proof = parse_proof(read_json(args.proof))
    _, proofs = services()

    if isinstance(proof, ProximityProof):
        ok = proofs.verify_proximity_proof(proof)
    elif isinstance(proof, RegionProof):
        if not args.polygon:
            raise SystemExit("❌ Region proofs need --polygon")
        polygon = [(float(lat), float(lng)) for lat, lng in read_json(args.polygon)]
        ok = proofs.verify_region_proof(proof, polygon)
    elif isinstance(proof, GroupProximityProof):
        if not args.commitments:
            raise SystemExit("❌ Group proofs need --commitments")
        ok = proofs.verify_group_proximity_proof(proof, load_commitments(args.commitments))
    elif isinstance(proof, TemporalProof):
        history = load_commitments(args.commitments) if args.commitments else None
        ok = proofs.verify_temporal_proof(proof, history)
    else:
        raise SystemExit(f"❌ Unsupported proof type: {proof.type}")

    finish_verification(ok, type=proof.type, result=proof.result)


# =============================================================================
# Trust circles
# =============================================================================

def cmd_circle_create(args):
    st = ensure_state(args.state)
    manager = load_trust(st)
    circle = manager.create_circle(
        name=args.name,
        level=args.level,
        custom_precision=args.precision,
        update_interval=args.interval_ms,
    )
    save_trust(st, manager)
    emit(to_wire(circle))

def cmd_circle_add(args):
    st = ensure_state(args.state)
    manager = load_trust(st)
    if not manager.add_to_circle(args.circle_id, args.contact):
        raise SystemExit(f"❌ Unknown circle: {args.circle_id}")
    save_trust(st, manager)
    emit({
        "circleId": args.circle_id,
        "contactId": args.contact,
        "precision": manager.get_precision_for_contact(args.contact),
    })

def cmd_contact_precision(args):
    st = ensure_state(args.state)
    manager = load_trust(st)
    if args.clear:
        manager.set_contact_precision(args.contact, None)
        save_trust(st, manager)
    elif args.set is not None:
        manager.set_contact_precision(args.contact, args.set)
        save_trust(st, manager)
    emit({"contactId": args.contact, "precision": manager.get_precision_for_contact(args.contact)})


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="zkgps")
    p.add_argument("--state", default="./state", help="State directory (keys.json, trust.json)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log protocol events to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    # init-keys
    i = sub.add_parser("init-keys", help="Create a P-256 signing keypair")
    i.add_argument("--force", action="store_true", help="Overwrite existing keys")
    i.set_defaults(func=cmd_init_keys)

    # encode
    e = sub.add_parser("encode", help="Encode a coordinate to a geohash")
    e.add_argument("--lat", type=float, required=True)
    e.add_argument("--lng", type=float, required=True)
    e.add_argument("--precision", type=int, default=9)
    e.set_defaults(func=cmd_encode)

    # decode
    d = sub.add_parser("decode", help="Decode a geohash to its cell centre and bounds")
    d.add_argument("geohash")
    d.set_defaults(func=cmd_decode)

    # neighbors
    n = sub.add_parser("neighbors", help="List the 8 neighbouring cells (N, NE, E, SE, S, SW, W, NW)")
    n.add_argument("geohash")
    n.set_defaults(func=cmd_neighbors)

    # commit
    c = sub.add_parser("commit", help="Commit to a location (prints commitment + salt)")
    c.add_argument("--lat", type=float, required=True)
    c.add_argument("--lng", type=float, required=True)
    c.add_argument("--precision", type=int, required=True, help="Revealed prefix length (1-12)")
    c.add_argument("--ttl-ms", type=int, help="Commitment lifetime (default: ZKGPS_MAX_COMMITMENT_AGE_MS)")
    c.add_argument("--sign", action="store_true", help="Sign with the state keypair")
    c.set_defaults(func=cmd_commit)

    # verify-commit
    vc = sub.add_parser("verify-commit", help="Open a commitment against a coordinate and salt")
    vc.add_argument("--commitment", required=True, help="JSON file holding the commitment (or commit output)")
    vc.add_argument("--lat", type=float, required=True)
    vc.add_argument("--lng", type=float, required=True)
    vc.add_argument("--salt", required=True)
    vc.set_defaults(func=cmd_verify_commit)

    # prove-proximity
    pp = sub.add_parser("prove-proximity", help="Assert proximity to a target point")
    pp.add_argument("--lat", type=float, required=True)
    pp.add_argument("--lng", type=float, required=True)
    pp.add_argument("--target-lat", type=float, required=True)
    pp.add_argument("--target-lng", type=float, required=True)
    pp.add_argument("--max-distance", type=float, required=True, help="Metres")
    pp.add_argument("--save", help="Also write the proof JSON to this file")
    pp.set_defaults(func=cmd_prove_proximity)

    # verify-proof
    vp = sub.add_parser("verify-proof", help="Verify a proof (freshness, payload, signature)")
    vp.add_argument("--proof", required=True, help="Proof JSON file")
    vp.add_argument("--polygon", help="Region polygon JSON file: [[lat, lng], ...]")
    vp.add_argument("--commitments", help="Commitments JSON file (group and temporal proofs)")
    vp.set_defaults(func=cmd_verify_proof)

    # circle-create
    cc = sub.add_parser("circle-create", help="Create a trust circle")
    cc.add_argument("--name", required=True)
    cc.add_argument("--level", required=True, choices=TRUST_LEVELS)
    cc.add_argument("--precision", type=int, help="Custom precision (1-12)")
    cc.add_argument("--interval-ms", type=int, help="Update interval (default: per level)")
    cc.set_defaults(func=cmd_circle_create)

    # circle-add
    ca = sub.add_parser("circle-add", help="Add a contact to a trust circle")
    ca.add_argument("--circle-id", required=True)
    ca.add_argument("--contact", required=True)
    ca.set_defaults(func=cmd_circle_add)

    # contact-precision
    cp = sub.add_parser("contact-precision", help="Show, set or clear a contact's precision")
    cp.add_argument("--contact", required=True)
    group = cp.add_mutually_exclusive_group()
    group.add_argument("--set", type=int, help="Precision override (1-12)")
    group.add_argument("--clear", action="store_true", help="Remove the override")
    cp.set_defaults(func=cmd_contact_precision)

    return p

def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    try:
        args.func(args)
    except (ZkGpsError, ValidationError) as e:
        raise SystemExit(f"❌ {e}")

if __name__ == "__main__":
    main()
