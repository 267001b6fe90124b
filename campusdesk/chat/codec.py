"""
CampusDesk
Proposal codec — turns raw tool calls into validated, typed descriptors.

The completion service's output is untrusted input.  Nothing leaves this
module unless it has been checked structurally (shape, types, closed
vocabularies, writable fields) and referentially (targets and referenced
records exist, uniqueness holds).  Refusals raise ``MalformedProposal``
with a field → reason map; the codec never persists anything.

    decode(tool_call)       → QueryCall | MutationDescriptor | KnowledgeEditDescriptor
    revalidate(descriptor)  → re-run referential checks against current state
                              (raises StaleTarget)
    from_dict(data)         → rebuild a descriptor from its stored JSON form
"""

import logging
import re
from dataclasses import asdict, dataclass, field

from campusdesk.chat.tools import DATA_CHANGE, KNOWLEDGE_UPDATE, QUERY, get_tool
from campusdesk.core.exceptions import MalformedProposal, StaleTarget, UnknownCapability
from campusdesk.models.chat import MUTATION_OPERATIONS
from campusdesk.services import records
from campusdesk.services.records import FIELD_SPECS, MUTABLE_ENTITY_TYPES, RE_SLUG, FieldSpec
from campusdesk.utils.helpers import parse_date

logger = logging.getLogger(__name__)

MAX_ARTICLE_BODY = 50_000
MAX_ARTICLE_TITLE = 300
MAX_REASON = 1000

RE_INT = re.compile(r"^[+-]?[0-9]+$")


# ── Descriptors ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueryCall:
    tool_call_id: str
    tool_name: str
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MutationDescriptor:
    """A normalized create/update/delete against one records entity."""

    entity_type: str
    operation: str
    target_id: str | None
    changes: dict
    reason: str = ""
    tool_call_id: str | None = None

    kind = "data_change"
    approval_type = "DATA_CHANGE"

    @property
    def summary(self) -> str:
        if self.operation == "create":
            label = self.changes.get("id") or self.changes.get("student_id") or "new"
            return f"Create {self.entity_type} {label}"
        if self.operation == "delete":
            return f"Delete {self.entity_type} {self.target_id}"
        fields = ", ".join(f"{k} → {v}" for k, v in sorted(self.changes.items()))
        return f"Update {self.entity_type} {self.target_id}: {fields}"[:500]

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class KnowledgeEditDescriptor:
    """A full-body replacement (or creation) of one knowledge article."""

    slug: str
    body: str
    title: str | None = None
    reason: str = ""
    creates: bool = False
    base_version: int | None = None
    tool_call_id: str | None = None

    kind = "knowledge_update"
    approval_type = "KNOWLEDGE_UPDATE"
    entity_type = "knowledge_article"

    @property
    def operation(self) -> str:
        return "create" if self.creates else "update"

    @property
    def target_id(self) -> str:
        return self.slug

    @property
    def changes(self) -> dict:
        d = {"body": self.body}
        if self.title:
            d["title"] = self.title
        return d

    @property
    def summary(self) -> str:
        verb = "Create" if self.creates else "Update"
        return f"{verb} knowledge article {self.slug}"

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


def from_dict(data: dict):
    """Rebuild a descriptor from ``ApprovalRequest.descriptor``."""
    data = dict(data or {})
    kind = data.pop("kind", None)
    if kind == MutationDescriptor.kind:
        return MutationDescriptor(**data)
    if kind == KnowledgeEditDescriptor.kind:
        return KnowledgeEditDescriptor(**data)
    raise MalformedProposal("Stored descriptor has an unknown kind", details={"kind": str(kind)})


# ── Field validation ─────────────────────────────────────────────────────────

def _check_value(spec: FieldSpec, value, errors: dict):
    """Return the normalized JSON-safe value, or record an error and return None."""
    if value is None or (isinstance(value, str) and not value.strip() and spec.kind != "str"):
        if not spec.nullable:
            errors[spec.name] = "must not be empty"
        return None

    if spec.kind == "int":
        if isinstance(value, bool):
            errors[spec.name] = "must be an integer"
            return None
        if isinstance(value, str) and RE_INT.match(value.strip()):
            value = int(value.strip())
        if not isinstance(value, int):
            errors[spec.name] = "must be an integer"
            return None
        if spec.min_value is not None and value < spec.min_value:
            errors[spec.name] = f"must be ≥ {spec.min_value}"
            return None
        return value

    if not isinstance(value, str):
        errors[spec.name] = "must be a string"
        return None
    value = value.strip()
    if spec.upper:
        value = value.upper()

    if spec.kind == "date":
        parsed = parse_date(value)
        if parsed is None:
            errors[spec.name] = "must be an ISO date (YYYY-MM-DD)"
            return None
        return parsed.isoformat()

    if spec.kind == "enum":
        value = value.upper()
        if value not in spec.vocab:
            errors[spec.name] = f"must be one of: {', '.join(spec.vocab.values)}"
            return None
        return value

    if not value and not spec.nullable:
        errors[spec.name] = "must not be empty"
        return None
    if spec.max_len and len(value) > spec.max_len:
        errors[spec.name] = f"must be at most {spec.max_len} characters"
        return None
    if spec.pattern and value and not spec.pattern.match(value):
        errors[spec.name] = "has an invalid format"
        return None
    if spec.kind == "ref" and value and not records.exists(spec.ref, value):
        errors[spec.name] = f"references unknown {spec.ref} {value!r}"
        return None
    return value or None


def _check_refs_and_targets(entity_type, operation, target_id, changes, errors):
    """Referential checks shared by decode and revalidate."""
    specs = FIELD_SPECS[entity_type]
    if operation in ("update", "delete"):
        if not records.exists(entity_type, target_id):
            errors["target_id"] = f"{entity_type} {target_id!r} does not exist"
    for name, value in changes.items():
        spec = specs.get(name)
        if spec and spec.kind == "ref" and value and not records.exists(spec.ref, value):
            errors[name] = f"references unknown {spec.ref} {value!r}"
    if operation == "create":
        if entity_type in ("student", "school_class") and records.exists(entity_type, changes.get("id")):
            errors["id"] = f"{entity_type} {changes.get('id')!r} already exists"
        if entity_type == "tuition_invoice":
            from campusdesk.models.school import TuitionInvoice
            dup = TuitionInvoice.query.filter_by(
                student_id=changes.get("student_id"), year_month=changes.get("year_month"),
            ).first()
            if dup is not None:
                errors["year_month"] = "an invoice for this student and month already exists"


def validate_mutation(entity_type, operation, target_id=None, changes=None, reason="",
                      tool_call_id=None) -> MutationDescriptor:
    """Validate a mutation payload and return its normalized descriptor."""
    errors: dict = {}

    if not isinstance(entity_type, str) or entity_type not in MUTABLE_ENTITY_TYPES:
        errors["entity_type"] = f"must be one of: {', '.join(sorted(MUTABLE_ENTITY_TYPES))}"
    if not isinstance(operation, str) or operation not in MUTATION_OPERATIONS:
        errors["operation"] = "must be one of: create, update, delete"
    if changes is None:
        changes = {}
    if not isinstance(changes, dict):
        errors["changes"] = "must be an object"
    if reason is not None and not isinstance(reason, str):
        errors["reason"] = "must be a string"
    if errors:
        raise MalformedProposal("Invalid data change proposal", details=errors)

    specs = FIELD_SPECS[entity_type]
    normalized: dict = {}

    if operation == "create":
        if target_id not in (None, ""):
            errors["target_id"] = "must be omitted for create"
        for name in specs:
            if specs[name].required and changes.get(name) in (None, ""):
                errors[name] = "is required"
    else:
        if target_id in (None, ""):
            errors["target_id"] = f"is required for {operation}"
        else:
            target_id = str(target_id).strip()
            if entity_type in ("student", "school_class"):
                target_id = target_id.upper()
        if operation == "update" and not changes:
            errors["changes"] = "must name at least one field"
        if operation == "delete" and changes:
            errors["changes"] = "must be empty for delete"

    for name, value in changes.items():
        spec = specs.get(name)
        if spec is None:
            errors[name] = "is not a field of " + entity_type
            continue
        if operation == "update" and not spec.writable:
            errors[name] = "cannot be changed"
            continue
        normalized_value = _check_value(spec, value, errors)
        if name not in errors:
            normalized[name] = normalized_value

    if not errors:
        _check_refs_and_targets(entity_type, operation, target_id, normalized, errors)
    if errors:
        raise MalformedProposal("Invalid data change proposal", details=errors)

    return MutationDescriptor(
        entity_type=entity_type,
        operation=operation,
        target_id=None if operation == "create" else target_id,
        changes=normalized,
        reason=(reason or "")[:MAX_REASON],
        tool_call_id=tool_call_id,
    )


def validate_knowledge_edit(slug, body, title=None, reason="", tool_call_id=None) -> KnowledgeEditDescriptor:
    errors: dict = {}
    if not isinstance(slug, str) or not RE_SLUG.match(slug.strip()):
        errors["slug"] = "must be lowercase letters, digits and single hyphens"
    if not isinstance(body, str) or not body.strip():
        errors["body"] = "must be a non-empty string"
    elif len(body) > MAX_ARTICLE_BODY:
        errors["body"] = f"must be at most {MAX_ARTICLE_BODY} characters"
    if title is not None and (not isinstance(title, str) or len(title) > MAX_ARTICLE_TITLE):
        errors["title"] = f"must be a string of at most {MAX_ARTICLE_TITLE} characters"
    if errors:
        raise MalformedProposal("Invalid knowledge update proposal", details=errors)

    slug = slug.strip()
    article = records.get_article(slug)
    title = title.strip() if isinstance(title, str) and title.strip() else None
    if article is None and not title:
        raise MalformedProposal("Invalid knowledge update proposal",
                                details={"title": "is required when creating a new article"})
    return KnowledgeEditDescriptor(
        slug=slug,
        body=body,
        title=title,
        reason=(reason or "")[:MAX_REASON] if isinstance(reason, str) else "",
        creates=article is None,
        base_version=article.version if article else None,
        tool_call_id=tool_call_id,
    )


# ── Public API ───────────────────────────────────────────────────────────────

def capability_of(tool_name: str) -> str:
    tool = get_tool(tool_name)
    if tool is None:
        raise UnknownCapability(tool_name)
    return tool.capability


def decode(tool_call: dict):
    """
    Decode one raw tool call ``{id, name, input}``.

    Raises:
        UnknownCapability: the tool name maps to no capability.
        MalformedProposal: the payload failed validation.
    """
    name = tool_call.get("name")
    call_id = tool_call.get("id")
    payload = tool_call.get("input")
    capability = capability_of(name)

    if not isinstance(payload, dict):
        raise MalformedProposal("Tool input must be a JSON object", details={"input": "not an object"})

    if capability == QUERY:
        return QueryCall(tool_call_id=call_id, tool_name=name, params=payload)

    if capability == DATA_CHANGE:
        entity_type = payload.get("entity_type")
        operation = payload.get("operation")
        return validate_mutation(
            entity_type.strip().lower() if isinstance(entity_type, str) else entity_type,
            operation.strip().lower() if isinstance(operation, str) else operation,
            target_id=payload.get("target_id"),
            changes=payload.get("changes"),
            reason=payload.get("reason", ""),
            tool_call_id=call_id,
        )

    if capability == KNOWLEDGE_UPDATE:
        return validate_knowledge_edit(
            payload.get("slug"), payload.get("body"),
            title=payload.get("title"), reason=payload.get("reason", ""),
            tool_call_id=call_id,
        )

    raise UnknownCapability(name)


def revalidate(descriptor):
    """
    Re-check a stored descriptor against the current records state.

    Raises:
        StaleTarget: the target, a referenced record or a uniqueness
            assumption no longer holds (or the article moved on).
    """
    errors: dict = {}
    if isinstance(descriptor, MutationDescriptor):
        _check_refs_and_targets(descriptor.entity_type, descriptor.operation,
                                descriptor.target_id, descriptor.changes, errors)
    elif isinstance(descriptor, KnowledgeEditDescriptor):
        article = records.get_article(descriptor.slug)
        if descriptor.creates and article is not None:
            errors["slug"] = "article was created after this proposal"
        elif not descriptor.creates and article is None:
            errors["slug"] = "article no longer exists"
        elif article is not None and descriptor.base_version is not None \
                and article.version != descriptor.base_version:
            errors["version"] = (
                f"article changed since proposal (v{descriptor.base_version} → v{article.version})"
            )
    else:
        raise TypeError(f"Not a mutation descriptor: {descriptor!r}")

    if errors:
        logger.info("Stale proposal target: %s", errors)
        raise StaleTarget("Proposal no longer applies to current records", details=errors)
    return descriptor
