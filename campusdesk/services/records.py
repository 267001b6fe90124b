"""
CampusDesk
Records store service — the only code path that writes school records.

Both the approval executor and the direct student CRUD endpoints go
through here so every applied change produces the same diff shape for the
audit trail.

Per-entity ``FIELD_SPECS`` describe which fields exist, which may be
written, which are required on create and how values are typed.  The
proposal codec validates against the same specs.

Usage:
    from campusdesk.services import records
    obj = records.get_entity("student", "S123")
    diff = records.update_entity(obj, {"status": "WITHDRAWN"})
"""

import logging
import re
from dataclasses import dataclass
from datetime import date

from campusdesk.models import db
from campusdesk.models.school import KnowledgeArticle, SchoolClass, Student, TuitionInvoice
from campusdesk.models.vocab import CLASS_LEVEL, INVOICE_STATUS, STUDENT_STATUS, Vocabulary
from campusdesk.utils.helpers import parse_date

logger = logging.getLogger(__name__)

RE_STUDENT_ID = re.compile(r"^S\d{1,8}$")
RE_CLASS_ID = re.compile(r"^[A-Z0-9][A-Z0-9-]{0,19}$")
RE_YEAR_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
RE_SLUG = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
RE_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class FieldSpec:
    """Type and write rules for one entity field."""

    name: str
    kind: str                       # str | int | date | enum | ref
    required: bool = False          # required on create
    writable: bool = True           # may appear in an update
    nullable: bool = True
    max_len: int | None = None
    min_value: int | None = None
    pattern: re.Pattern | None = None
    upper: bool = False             # identifiers are stored upper-case
    vocab: Vocabulary | None = None
    ref: str | None = None          # entity_type a ref field points at


FIELD_SPECS: dict[str, dict[str, FieldSpec]] = {
    "student": {f.name: f for f in (
        FieldSpec("id", "str", required=True, writable=False, nullable=False,
                  pattern=RE_STUDENT_ID, upper=True),
        FieldSpec("name_en", "str", required=True, nullable=False, max_len=150),
        FieldSpec("name_kanji", "str", max_len=150),
        FieldSpec("nationality", "str", max_len=60),
        FieldSpec("status", "enum", nullable=False, vocab=STUDENT_STATUS),
        FieldSpec("class_id", "ref", ref="school_class", upper=True),
        FieldSpec("email", "str", max_len=200, pattern=RE_EMAIL),
        FieldSpec("phone", "str", max_len=40),
        FieldSpec("enrolled_on", "date"),
    )},
    "school_class": {f.name: f for f in (
        FieldSpec("id", "str", required=True, writable=False, nullable=False,
                  pattern=RE_CLASS_ID, upper=True),
        FieldSpec("name", "str", required=True, nullable=False, max_len=100),
        FieldSpec("level", "enum", nullable=False, vocab=CLASS_LEVEL),
        FieldSpec("capacity", "int", nullable=False, min_value=1),
    )},
    "tuition_invoice": {f.name: f for f in (
        FieldSpec("student_id", "ref", required=True, writable=False, nullable=False,
                  ref="student", upper=True),
        FieldSpec("year_month", "str", required=True, writable=False, nullable=False,
                  pattern=RE_YEAR_MONTH),
        FieldSpec("amount_due", "int", required=True, nullable=False, min_value=0),
        FieldSpec("amount_paid", "int", nullable=False, min_value=0),
        FieldSpec("status", "enum", nullable=False, vocab=INVOICE_STATUS),
        FieldSpec("due_date", "date"),
    )},
}

ENTITY_MODELS = {
    "student": Student,
    "school_class": SchoolClass,
    "tuition_invoice": TuitionInvoice,
}

MUTABLE_ENTITY_TYPES = set(ENTITY_MODELS)


# ── Value conversion ─────────────────────────────────────────────────────────

def to_python(spec: FieldSpec, value):
    """Convert a validated JSON-safe value into what the model column expects."""
    if value is None:
        return None
    if spec.kind == "date":
        return parse_date(value)
    if spec.kind == "int":
        return int(value)
    return value


def to_json(value):
    if isinstance(value, date):
        return value.isoformat()
    return value


def snapshot(obj, entity_type: str) -> dict:
    """JSON-safe dict of every specced field of *obj*."""
    return {name: to_json(getattr(obj, name)) for name in FIELD_SPECS[entity_type]}


def normalize_pk(entity_type: str, entity_id):
    if entity_type == "tuition_invoice":
        try:
            return int(entity_id)
        except (TypeError, ValueError):
            return None
    return str(entity_id) if entity_id is not None else None


# ── Reads ────────────────────────────────────────────────────────────────────

def get_entity(entity_type: str, entity_id):
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        return None
    pk = normalize_pk(entity_type, entity_id)
    if pk is None:
        return None
    return db.session.get(model, pk)


def exists(entity_type: str, entity_id) -> bool:
    return get_entity(entity_type, entity_id) is not None


# ── Writes (flush only; caller owns the transaction) ─────────────────────────

def create_entity(entity_type: str, values: dict):
    """Insert a record. Returns ``(obj, diff)`` with a ``{before, after}`` diff."""
    specs = FIELD_SPECS[entity_type]
    model = ENTITY_MODELS[entity_type]
    obj = model(**{name: to_python(specs[name], v) for name, v in values.items()})
    db.session.add(obj)
    db.session.flush()
    logger.info("Created %s/%s", entity_type, obj.id)
    return obj, {"before": None, "after": snapshot(obj, entity_type)}


def update_entity(obj, changes: dict, entity_type: str | None = None) -> dict:
    """Apply field changes to *obj*. Returns ``{field: {old, new}}`` for fields that actually changed."""
    entity_type = entity_type or _entity_type_of(obj)
    specs = FIELD_SPECS[entity_type]
    diff = {}
    for name, raw in changes.items():
        new = to_python(specs[name], raw)
        old = getattr(obj, name)
        if old == new:
            continue
        setattr(obj, name, new)
        diff[name] = {"old": to_json(old), "new": to_json(new)}
    db.session.flush()
    logger.info("Updated %s/%s fields=%s", entity_type, obj.id, sorted(diff))
    return diff


def delete_entity(obj, entity_type: str | None = None) -> dict:
    entity_type = entity_type or _entity_type_of(obj)
    pk = obj.id
    before = snapshot(obj, entity_type)
    db.session.delete(obj)
    db.session.flush()
    logger.info("Deleted %s/%s", entity_type, pk)
    return {"before": before, "after": None}


def _entity_type_of(obj) -> str:
    for entity_type, model in ENTITY_MODELS.items():
        if isinstance(obj, model):
            return entity_type
    raise TypeError(f"{type(obj).__name__} is not a mutable records entity")


# ── Knowledge articles ───────────────────────────────────────────────────────

def get_article(slug: str):
    return db.session.get(KnowledgeArticle, slug)


def upsert_article(slug: str, body: str, actor: str, title: str | None = None):
    """
    Create the article or replace its body (bumping ``version``).

    Returns ``(article, diff)``; the diff carries the full before/after
    body so the audit row is enough to reconstruct the previous version.
    """
    article = get_article(slug)
    if article is None:
        article = KnowledgeArticle(slug=slug, title=title, body=body, version=1, updated_by=actor)
        db.session.add(article)
        db.session.flush()
        return article, {"before": None, "after": article.to_dict()}

    before = article.to_dict()
    article.body = body
    if title:
        article.title = title
    article.version = (article.version or 0) + 1
    article.updated_by = actor
    db.session.flush()
    return article, {"before": before, "after": article.to_dict()}
