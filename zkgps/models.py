from __future__ import annotations

import time
import uuid
from typing import Annotated, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, TypeAdapter, field_serializer, model_validator
from pydantic.alias_generators import to_camel

from zkgps import MESSAGE_VERSION

Precision = Annotated[int, Field(ge=1, le=12)]
TrustLevel = Literal["intimate", "close", "friends", "network", "public"]

TRUST_LEVELS: List[str] = ["intimate", "close", "friends", "network", "public"]

# Default precision per trust level
TRUST_LEVEL_PRECISION: Dict[str, int] = {
    "intimate": 10,  # ~1.2m - exact position
    "close": 8,      # ~38m - building level
    "friends": 6,    # ~1.2km - neighborhood
    "network": 4,    # ~39km - metro area
    "public": 2,     # ~1250km - large region
}

# Default broadcast interval per trust level (ms)
TRUST_LEVEL_INTERVAL_MS: Dict[str, int] = {
    "intimate": 10_000,
    "close": 60_000,
    "friends": 300_000,
    "network": 900_000,
    "public": 3_600_000,
}


def now_ms() -> int:
    return int(time.time() * 1000)

def new_id(prefix: str) -> str:
    """
    Generate a time-ordered identifier.

    Format: {prefix}_{timestamp_ms:013x}_{random:016x}
    """
    timestamp_ms = now_ms()
    random_bits = uuid.uuid4().hex[:16]
    return f"{prefix}_{timestamp_ms:013x}_{random_bits}"


class WireModel(BaseModel):
    """Base for models exchanged as JSON: snake_case in Python, camelCase on the wire."""

    model_config = {"populate_by_name": True, "alias_generator": to_camel}


def to_wire(model: BaseModel) -> dict:
    """Serialise a model to its JSON wire form (camelCase, no null fields)."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Geometry
# =============================================================================

class Coordinate(WireModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)

    model_config = {"frozen": True}


class GeohashBounds(WireModel):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    model_config = {"frozen": True}


class TimeRange(WireModel):
    start: int
    end: int

    model_config = {"frozen": True}


# =============================================================================
# Commitments
# =============================================================================

class LocationCommitment(WireModel):
    commitment: str
    precision: Precision
    timestamp: int
    expires_at: int
    revealed_prefix: Optional[str] = None  # public geohash prefix at `precision`

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "LocationCommitment":
        if self.expires_at <= self.timestamp:
            raise ValueError("expiresAt must be later than timestamp")
        return self


class SignedCommitment(LocationCommitment):
    signature: str
    signer_public_key: str


class KeyPair(WireModel):
    public_key: str
    private_key: str

    model_config = {"frozen": True}


class HistoryEntry(BaseModel):
    """Local-only location record backing temporal proofs. Never transmitted."""

    commitment: LocationCommitment
    coordinate: Coordinate
    salt: str

    model_config = {"frozen": True}


class GroupParticipant(BaseModel):
    public_key: str
    commitment: LocationCommitment

    model_config = {"frozen": True}


# =============================================================================
# Proofs
# =============================================================================

class BaseProof(WireModel):
    """
    Common proof envelope.

    `proof` holds the JSON-encoded payload string. `result` is asserted by
    the prover and is not re-derived by verifiers.
    """

    proof_id: str
    timestamp: int
    prover_public_key: str
    proof: str
    signature: str
    result: bool


class ProximityProof(BaseProof):
    type: Literal["proximity"] = "proximity"
    target_point: Coordinate
    max_distance: float


class RegionProof(BaseProof):
    type: Literal["region"] = "region"
    region_id: str
    region_name: Optional[str] = None


class TemporalProof(BaseProof):
    type: Literal["temporal"] = "temporal"
    location: Union[Coordinate, str]  # coordinate or region id
    time_range: TimeRange
    max_distance: float


class GroupProximityProof(BaseProof):
    type: Literal["group"] = "group"
    participants: List[str]
    max_distance: float
    centroid: Optional[Coordinate] = None


Proof = Annotated[
    Union[ProximityProof, RegionProof, TemporalProof, GroupProximityProof],
    Field(discriminator="type"),
]

_PROOF_ADAPTER: TypeAdapter = TypeAdapter(Proof)


def parse_proof(data: dict) -> Union[ProximityProof, RegionProof, TemporalProof, GroupProximityProof]:
    """Parse a wire-form proof dict into the matching proof model."""
    return _PROOF_ADAPTER.validate_python(data)


# =============================================================================
# Trust circles
# =============================================================================

class TrustCircle(WireModel):
    id: str
    name: str
    level: TrustLevel
    custom_precision: Optional[Precision] = None
    members: Set[str] = Field(default_factory=set)
    update_interval: int  # ms between broadcasts to this circle
    require_mutual: bool = False
    enabled: bool = True

    @field_serializer("members")
    def _sorted_members(self, members: Set[str]) -> List[str]:
        return sorted(members)

    @property
    def effective_precision(self) -> int:
        if self.custom_precision is not None:
            return self.custom_precision
        return TRUST_LEVEL_PRECISION[self.level]


class ContactTrust(WireModel):
    contact_id: str
    circles: Set[str] = Field(default_factory=set)
    precision_override: Optional[Precision] = None
    paused: bool = False
    last_update: Optional[int] = None

    @field_serializer("circles")
    def _sorted_circles(self, circles: Set[str]) -> List[str]:
        return sorted(circles)


class TrustSnapshot(WireModel):
    circles: List[TrustCircle] = Field(default_factory=list)
    contacts: List[ContactTrust] = Field(default_factory=list)


# =============================================================================
# Transport envelopes (serialised by the broadcast layer, not sent by the core)
# =============================================================================

class CircleCommitment(WireModel):
    trust_circle_id: str
    encrypted_commitment: str
    precision: Precision


class LocationBroadcast(WireModel):
    version: Literal[1] = MESSAGE_VERSION
    type: Literal["location_broadcast"] = "location_broadcast"
    sender_id: str
    sender_public_key: str
    commitments: List[CircleCommitment]
    timestamp: int
    signature: str


class ProximityQuery(WireModel):
    version: Literal[1] = MESSAGE_VERSION
    type: Literal["proximity_query"] = "proximity_query"
    query_id: str = Field(default_factory=lambda: new_id("pq"))
    queryer: str
    queryer_public_key: str
    target_user_id: str
    max_distance: float
    our_commitment: LocationCommitment
    timestamp: int
    signature: str


class ProximityResponse(WireModel):
    version: Literal[1] = MESSAGE_VERSION
    type: Literal["proximity_response"] = "proximity_response"
    query_id: str
    responder: str
    responder_public_key: str
    is_proximate: bool
    proof: Optional[ProximityProof] = None
    timestamp: int
    signature: str
