"""Instance slot allocation per provider."""

import logging
import sqlite3

from agent_dispatch.db.models import InstanceSlot
from agent_dispatch.errors import ResourceExhausted, SlotError, ValidationError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("assigned", "in-progress")
MERGE_WORKER = "merge-worker"


def make_instance_id(provider: str, slot_number: int) -> str:
    return f"{provider}-{slot_number}"


def parse_instance_id(instance_id: str) -> tuple[str, int]:
    """Split 'claude-2' into ('claude', 2)."""
    provider, sep, number = instance_id.rpartition("-")
    if not sep or not provider or not number.isdigit():
        raise ValidationError(f"Invalid instance id '{instance_id}'")
    return provider, int(number)


class SlotLease:
    """A claim on one instance slot by one assignment. Release it exactly once."""

    def __init__(self, conn: sqlite3.Connection, assignment_id: str, instance_id: str):
        self.conn = conn
        self.assignment_id = assignment_id
        self.instance_id = instance_id
        self.released = False

    def release(self):
        if self.released:
            raise SlotError(f"Slot {self.instance_id} already released by {self.assignment_id}")
        cur = self.conn.execute(
            "UPDATE assignments SET instance_id = NULL WHERE id = ? AND instance_id = ?",
            (self.assignment_id, self.instance_id),
        )
        if cur.rowcount == 0:
            self.conn.rollback()
            raise SlotError(
                f"Assignment {self.assignment_id} does not hold slot {self.instance_id}"
            )
        self.conn.execute(
            """INSERT INTO assignment_events (assignment_id, event_type, old_value, new_value)
               VALUES (?, 'slot_released', ?, NULL)""",
            (self.assignment_id, self.instance_id),
        )
        self.conn.commit()
        self.released = True
        logger.info("Released slot %s from assignment %s", self.instance_id, self.assignment_id)


class InstanceSlotAllocator:
    def __init__(self, conn: sqlite3.Connection, max_slots: dict[str, int]):
        self.conn = conn
        self.max_slots = max_slots

    def get_max_slots(self, provider: str) -> int:
        return self.max_slots.get(provider, 0)

    def _occupants(self, provider: str) -> dict[str, sqlite3.Row]:
        rows = self.conn.execute(
            f"""SELECT id, issue_number, instance_id FROM assignments
                WHERE provider = ? AND instance_id IS NOT NULL
                AND status IN ({', '.join('?' for _ in ACTIVE_STATUSES)})""",
            (provider, *ACTIVE_STATUSES),
        ).fetchall()
        return {row["instance_id"]: row for row in rows}

    def get_provider_slots(self, provider: str) -> list[InstanceSlot]:
        occupants = self._occupants(provider)
        slots = []
        for n in range(1, self.get_max_slots(provider) + 1):
            instance_id = make_instance_id(provider, n)
            row = occupants.get(instance_id)
            slots.append(
                InstanceSlot(
                    provider=provider,
                    slot_number=n,
                    instance_id=instance_id,
                    is_available=row is None,
                    assignment_id=row["id"] if row else None,
                    issue_number=row["issue_number"] if row else None,
                    is_abandoned=self.is_abandoned(instance_id) if row else False,
                )
            )
        return slots

    def get_next_available_slot(self, provider: str) -> InstanceSlot | None:
        for slot in self.get_provider_slots(provider):
            if slot.is_available:
                return slot
        return None

    def require_slot(self, provider: str) -> InstanceSlot:
        """Next free slot, raising ResourceExhausted when there is none."""
        if provider not in self.max_slots:
            raise ValidationError(f"Unknown provider '{provider}'")
        slot = self.get_next_available_slot(provider)
        if slot is None:
            raise ResourceExhausted(
                f"No available {provider} slots ({self.get_max_slots(provider)} in use)"
            )
        return slot

    def is_abandoned(self, instance_id: str) -> bool:
        # Abandonment detection is not implemented; every occupied slot is live.
        return False

    def lease_for(self, assignment_id: str) -> SlotLease:
        row = self.conn.execute(
            "SELECT instance_id FROM assignments WHERE id = ?", (assignment_id,)
        ).fetchone()
        if row is None:
            raise ValidationError(f"Assignment {assignment_id} not found")
        if row["instance_id"] is None:
            raise SlotError(f"Assignment {assignment_id} holds no slot")
        return SlotLease(self.conn, assignment_id, row["instance_id"])

    def get_utilization_stats(self, provider: str | None = None) -> dict[str, dict]:
        providers = [provider] if provider else list(self.max_slots)
        stats = {}
        for p in providers:
            slots = self.get_provider_slots(p)
            used = [s for s in slots if not s.is_available]
            stats[p] = {
                "max_slots": len(slots),
                "used_slots": len(used),
                "available_slots": len(slots) - len(used),
                "abandoned_slots": sum(1 for s in used if s.is_abandoned),
            }
        return stats
