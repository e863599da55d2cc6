"""
Trust circle management for zkGPS.

Trust circles decide who may learn which geohash precision of your location.
Each circle has a trust level that maps to a default precision:

    intimate: ~1m (exact position) - partners, family in same house
    close: ~38m (building level) - close friends, family
    friends: ~1.2km (neighborhood) - regular friends
    network: ~39km (metro area) - acquaintances
    public: ~1250km (large region) - everyone else

Membership is stored on both sides (``circle.members`` and
``contact.circles``) and every mutation keeps the two in sync.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from zkgps.errors import InvalidArgument
from zkgps.geohash import check_precision
from zkgps.models import (
    TRUST_LEVEL_INTERVAL_MS,
    TRUST_LEVEL_PRECISION,
    TRUST_LEVELS,
    ContactTrust,
    LocationCommitment,
    TrustCircle,
    TrustSnapshot,
    new_id,
    now_ms,
)
from zkgps.settings import default_trust_circles

logger = logging.getLogger(__name__)

MIN_UPDATE_INTERVAL_MS = 1000

# Fields a caller may change through update_circle; membership has its own API
_UPDATABLE_FIELDS = {"name", "level", "custom_precision", "update_interval", "require_mutual", "enabled"}

_LEVEL_DESCRIPTIONS: Dict[str, str] = {
    "intimate": "Exact location (~1m) - Partners, family in same house",
    "close": "Building level (~38m) - Close friends and family",
    "friends": "Neighborhood (~1.2km) - Regular friends",
    "network": "Metro area (~39km) - Acquaintances",
    "public": "Large region (~1250km) - Public visibility",
}


class TrustCircleManager:
    """
    Lock-guarded CRUD over trust circles and per-contact settings.

    Seeds the default circle set unless a snapshot is given, in which case
    the snapshot is loaded as-is. Returned models are copies; mutate through
    the manager.
    """

    def __init__(
        self,
        user_id: str,
        public_key: str,
        snapshot: Optional[TrustSnapshot] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.user_id = user_id
        self.public_key = public_key
        self.clock = clock
        self._circles: Dict[str, TrustCircle] = {}
        self._contacts: Dict[str, ContactTrust] = {}
        self._lock = threading.RLock()

        if snapshot is None:
            for circle in default_trust_circles():
                self._circles[circle.id] = circle
        else:
            self.import_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Circles
    # ------------------------------------------------------------------

    def create_circle(
        self,
        name: str,
        level: str,
        custom_precision: Optional[int] = None,
        update_interval: Optional[int] = None,
        require_mutual: Optional[bool] = None,
    ) -> TrustCircle:
        """
        Create an enabled, empty circle.

        ``update_interval`` defaults to the level's interval and
        ``require_mutual`` defaults to True for intimate and close circles.

        Raises:
            InvalidArgument: If the circle fails validate_circle
        """
        fields: Dict[str, Any] = {"name": name, "level": level, "custom_precision": custom_precision}
        if update_interval is not None:
            fields["update_interval"] = update_interval
        errors = validate_circle(fields)
        if errors:
            raise InvalidArgument("; ".join(errors))

        circle = TrustCircle(
            id=new_id("tc"),
            name=name,
            level=level,
            custom_precision=custom_precision,
            update_interval=TRUST_LEVEL_INTERVAL_MS[level] if update_interval is None else update_interval,
            require_mutual=level in ("intimate", "close") if require_mutual is None else require_mutual,
        )
        with self._lock:
            self._circles[circle.id] = circle
        logger.info(f"Created trust circle {circle.id} at level {level}")
        return circle.model_copy(deep=True)

    def update_circle(self, circle_id: str, **updates: Any) -> Optional[TrustCircle]:
        """
        Apply field updates to a circle. The id never changes.

        Returns the updated circle, or None if it does not exist.

        Raises:
            InvalidArgument: On unknown fields, membership edits or invalid values
        """
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidArgument(f"Cannot update circle fields: {sorted(unknown)}")
        errors = validate_circle({"name": "-", "level": "public", **updates})
        if errors:
            raise InvalidArgument("; ".join(errors))

        with self._lock:
            circle = self._circles.get(circle_id)
            if circle is None:
                return None
            try:
                updated = TrustCircle.model_validate({**circle.model_dump(), **updates, "id": circle_id})
            except ValidationError as e:
                raise InvalidArgument(str(e)) from e
            self._circles[circle_id] = updated
            return updated.model_copy(deep=True)

    def delete_circle(self, circle_id: str) -> bool:
        """Delete a circle and drop it from every contact's circle set."""
        with self._lock:
            for contact in self._contacts.values():
                contact.circles.discard(circle_id)
            removed = self._circles.pop(circle_id, None) is not None
        if removed:
            logger.info(f"Deleted trust circle {circle_id}")
        return removed

    def get_circle(self, circle_id: str) -> Optional[TrustCircle]:
        with self._lock:
            circle = self._circles.get(circle_id)
            return circle.model_copy(deep=True) if circle else None

    def get_all_circles(self) -> List[TrustCircle]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._circles.values()]

    def get_enabled_circles(self) -> List[TrustCircle]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._circles.values() if c.enabled]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _contact(self, contact_id: str) -> ContactTrust:
        contact = self._contacts.get(contact_id)
        if contact is None:
            contact = ContactTrust(contact_id=contact_id)
            self._contacts[contact_id] = contact
        return contact

    def add_to_circle(self, circle_id: str, contact_id: str) -> bool:
        """Add a contact to a circle. Returns False if the circle does not exist."""
        with self._lock:
            circle = self._circles.get(circle_id)
            if circle is None:
                return False
            circle.members.add(contact_id)
            self._contact(contact_id).circles.add(circle_id)
            return True

    def remove_from_circle(self, circle_id: str, contact_id: str) -> bool:
        """Remove a contact from a circle. Returns False if the circle does not exist."""
        with self._lock:
            circle = self._circles.get(circle_id)
            if circle is None:
                return False
            circle.members.discard(contact_id)
            contact = self._contacts.get(contact_id)
            if contact is not None:
                contact.circles.discard(circle_id)
            return True

    def is_in_circle(self, circle_id: str, contact_id: str) -> bool:
        with self._lock:
            circle = self._circles.get(circle_id)
            return circle is not None and contact_id in circle.members

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contact_trust(self, contact_id: str) -> Optional[ContactTrust]:
        with self._lock:
            contact = self._contacts.get(contact_id)
            return contact.model_copy(deep=True) if contact else None

    def set_contact_precision(self, contact_id: str, precision: Optional[int]) -> None:
        """Set (or with None, clear) a per-contact precision override."""
        if precision is not None:
            check_precision(precision)
        with self._lock:
            self._contact(contact_id).precision_override = precision

    def pause_contact(self, contact_id: str) -> None:
        with self._lock:
            self._contact(contact_id).paused = True

    def resume_contact(self, contact_id: str) -> None:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is not None:
                contact.paused = False

    # ------------------------------------------------------------------
    # Precision resolution
    # ------------------------------------------------------------------

    def get_precision_for_contact(self, contact_id: str) -> Optional[int]:
        """
        Resolve the precision a contact may see.

        Priority:
        1. Paused contact: None (no sharing)
        2. Contact-specific override
        3. Highest effective precision over enabled circles holding the contact
        4. None when the contact is in no enabled circle
        """
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is not None:
                if contact.paused:
                    return None
                if contact.precision_override is not None:
                    return contact.precision_override

            precisions = [
                c.effective_precision
                for c in self._circles.values()
                if c.enabled and contact_id in c.members
            ]
            return max(precisions) if precisions else None

    def get_contacts_at_precision(self, min_precision: int) -> List[str]:
        """Contacts whose resolved precision is at least ``min_precision``."""
        with self._lock:
            out = []
            for contact_id in self._contacts:
                precision = self.get_precision_for_contact(contact_id)
                if precision is not None and precision >= min_precision:
                    out.append(contact_id)
            return out

    @staticmethod
    def get_precision_for_level(level: str) -> int:
        return TRUST_LEVEL_PRECISION[level]

    # ------------------------------------------------------------------
    # Broadcast helpers
    # ------------------------------------------------------------------

    def get_circles_needing_update(
        self,
        last_update_times: Mapping[str, int],
        now: Optional[int] = None,
    ) -> List[TrustCircle]:
        """Enabled, non-empty circles whose update interval has elapsed."""
        now = self.clock() if now is None else now
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._circles.values()
                if c.enabled and c.members
                and now - last_update_times.get(c.id, 0) >= c.update_interval
            ]

    def create_circle_commitments(
        self,
        create_fn: Callable[[int], LocationCommitment],
    ) -> Dict[str, Tuple[LocationCommitment, int]]:
        """
        Create one commitment per enabled, non-empty circle.

        ``create_fn`` receives the circle's effective precision. Returns
        circle id -> (commitment, precision).
        """
        with self._lock:
            targets = [
                (c.id, c.effective_precision)
                for c in self._circles.values()
                if c.enabled and c.members
            ]
        return {circle_id: (create_fn(precision), precision) for circle_id, precision in targets}

    # ------------------------------------------------------------------
    # Mutual verification
    # ------------------------------------------------------------------

    def check_mutual_membership(
        self,
        their_user_id: str,
        their_circles: Optional[Iterable[TrustCircle]] = None,
    ) -> bool:
        """
        Check the mutual-membership requirement for another user.

        True when none of our require_mutual circles contain them. Otherwise
        True only if one of their require_mutual circles contains us; False
        when their circles are unknown.
        """
        with self._lock:
            requires_mutual = any(
                c.require_mutual and their_user_id in c.members
                for c in self._circles.values()
            )
        if not requires_mutual:
            return True
        if their_circles is None:
            return False
        return any(c.require_mutual and self.user_id in c.members for c in their_circles)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def export(self) -> TrustSnapshot:
        with self._lock:
            return TrustSnapshot(
                circles=[c.model_copy(deep=True) for c in self._circles.values()],
                contacts=[c.model_copy(deep=True) for c in self._contacts.values()],
            )

    def import_snapshot(self, snapshot: TrustSnapshot) -> None:
        """Replace all circles and contacts with the snapshot's."""
        with self._lock:
            self._circles = {c.id: c.model_copy(deep=True) for c in snapshot.circles}
            self._contacts = {c.contact_id: c.model_copy(deep=True) for c in snapshot.contacts}

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "circle_count": len(self._circles),
                "enabled_circle_count": sum(1 for c in self._circles.values() if c.enabled),
                "contact_count": len(self._contacts),
                "paused_contact_count": sum(1 for c in self._contacts.values() if c.paused),
            }


# =============================================================================
# Factories
# =============================================================================

def create_trust_circle_manager(user_id: str, public_key: str) -> TrustCircleManager:
    """Manager seeded with the default circles."""
    return TrustCircleManager(user_id, public_key)


def load_trust_circle_manager(user_id: str, public_key: str, saved: TrustSnapshot) -> TrustCircleManager:
    """Manager restored from a saved snapshot, without default circles."""
    return TrustCircleManager(user_id, public_key, snapshot=saved)


# =============================================================================
# Utilities
# =============================================================================

def describe_trust_level(level: str) -> str:
    return _LEVEL_DESCRIPTIONS[level]


def trust_level_from_precision(precision: int) -> str:
    """Coarsest trust level whose default precision is at most ``precision``."""
    if precision >= 10:
        return "intimate"
    if precision >= 8:
        return "close"
    if precision >= 6:
        return "friends"
    if precision >= 4:
        return "network"
    return "public"


def validate_circle(circle: Mapping[str, Any]) -> List[str]:
    """
    Validate a (possibly partial) circle given as snake_case fields.

    Returns a list of error messages; empty means valid.
    """
    errors = []

    name = circle.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("Circle name is required")

    if circle.get("level") not in TRUST_LEVELS:
        errors.append("Invalid trust level")

    precision = circle.get("custom_precision")
    if precision is not None:
        if isinstance(precision, bool) or not isinstance(precision, int) or not 1 <= precision <= 12:
            errors.append("Custom precision must be between 1 and 12")

    interval = circle.get("update_interval")
    if interval is not None and interval < MIN_UPDATE_INTERVAL_MS:
        errors.append("Update interval must be at least 1 second (1000ms)")

    return errors
