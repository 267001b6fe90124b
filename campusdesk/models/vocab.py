"""
CampusDesk
Enumerated domain vocabularies.

Each vocabulary is a closed set of codes with a human-readable label table.
The codes are what the database stores and what the completion service is
told to emit; the labels are for display only.

Usage:
    from campusdesk.models.vocab import STUDENT_STATUS
    STUDENT_STATUS.validate("WITHDRAWN")     # -> "WITHDRAWN"
    STUDENT_STATUS.label("WITHDRAWN")        # -> "Withdrawn"
    "ENROLLED" in STUDENT_STATUS             # -> True
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Vocabulary:
    """A closed set of codes plus their display labels (insertion-ordered)."""

    name: str
    labels: dict

    @property
    def values(self) -> tuple[str, ...]:
        return tuple(self.labels)

    def __contains__(self, value) -> bool:
        return isinstance(value, str) and value in self.labels

    def __iter__(self):
        return iter(self.labels)

    def label(self, value: str) -> str:
        return self.labels.get(value, value)

    def options(self) -> list[dict]:
        """Select-box style ``[{value, label}]`` list."""
        return [{"value": v, "label": lbl} for v, lbl in self.labels.items()]

    def validate(self, value) -> str:
        """Return *value* unchanged if it is a member, else raise ValueError."""
        if value not in self:
            raise ValueError(
                f"{self.name} must be one of: {', '.join(self.values)} (got {value!r})"
            )
        return value

    def sql_in(self) -> str:
        """Render the value set for a CHECK constraint."""
        return ", ".join(f"'{v}'" for v in self.values)


# ── Student records ──────────────────────────────────────────────────────────

STUDENT_STATUS = Vocabulary("student_status", {
    "PRE_ENROLLMENT": "Pre-enrollment",
    "ENROLLED": "Enrolled",
    "ON_LEAVE": "On leave",
    "WITHDRAWN": "Withdrawn",
    "EXPELLED": "Expelled",
    "GRADUATED": "Graduated",
    "COMPLETED": "Completed",
})

INVOICE_STATUS = Vocabulary("invoice_status", {
    "UNPAID": "Unpaid",
    "PARTIAL": "Partially paid",
    "PAID": "Paid",
})

ATTENDANCE_ALERT_LEVEL = Vocabulary("attendance_alert_level", {
    "NONE": "No alert",
    "WARNING": "Warning (below 90%)",
    "DANGER": "Danger (below 80%)",
})

CLASS_LEVEL = Vocabulary("class_level", {
    "BEGINNER": "Beginner",
    "ELEMENTARY": "Elementary",
    "INTERMEDIATE": "Intermediate",
    "ADVANCED": "Advanced",
})

# ── Chat / approval pipeline ─────────────────────────────────────────────────

USER_ROLE = Vocabulary("user_role", {
    "GENERAL": "General staff",
    "ADMIN": "Administrator",
    "APPROVER": "Approver",
})

MESSAGE_ROLE = Vocabulary("message_role", {
    "USER": "User",
    "ASSISTANT": "Assistant",
    "SYSTEM": "System",
})

APPROVAL_STATUS = Vocabulary("approval_status", {
    "PENDING": "Awaiting decision",
    "APPROVED": "Approved",
    "REJECTED": "Rejected",
})

APPROVAL_TYPE = Vocabulary("approval_type", {
    "DATA_CHANGE": "Data change",
    "KNOWLEDGE_UPDATE": "Knowledge update",
})

AUDIT_ACTION = Vocabulary("audit_action", {
    "CREATE": "Created",
    "UPDATE": "Updated",
    "DELETE": "Deleted",
    "KNOWLEDGE_UPDATE": "Knowledge updated",
})

# Decision values a reviewer may submit (PENDING is never a target state).
DECISIONS = frozenset({"APPROVED", "REJECTED"})
