"""
CampusDesk
Tool catalogue offered to the completion service.

Each tool maps to exactly one capability:
    - query            read-only lookups, executed inline during the turn
    - dataChange       structured record mutation, routed to the approval ledger
    - knowledgeUpdate  knowledge-base edit, routed to the approval ledger

Tool definitions use the Anthropic ``{name, description, input_schema}``
shape; the gateway converts them for other providers.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import func

from campusdesk.core.exceptions import ValidationError
from campusdesk.models import db
from campusdesk.models.school import MonthlyAttendance, Student, TuitionInvoice
from campusdesk.models.vocab import STUDENT_STATUS

logger = logging.getLogger(__name__)

QUERY = "query"
DATA_CHANGE = "dataChange"
KNOWLEDGE_UPDATE = "knowledgeUpdate"
CAPABILITIES = {QUERY, DATA_CHANGE, KNOWLEDGE_UPDATE}

MAX_QUERY_ROWS = 50


@dataclass(frozen=True)
class ToolSpec:
    name: str
    capability: str
    min_role: str
    description: str
    input_schema: dict
    handler: Callable[[dict], dict] | None = field(default=None, compare=False)

    def definition(self) -> dict:
        return {"name": self.name, "description": self.description,
                "input_schema": self.input_schema}


# ── Query handlers (read-only) ───────────────────────────────────────────────

def _latest_attendance(student_id):
    return (
        MonthlyAttendance.query
        .filter_by(student_id=student_id)
        .order_by(MonthlyAttendance.year_month.desc())
        .first()
    )


def search_students(params: dict) -> dict:
    """Find students by id, name fragment, class or status; optional attendance ceiling (percent)."""
    q = Student.query
    if params.get("student_id"):
        q = q.filter(Student.id == str(params["student_id"]).upper())
    if params.get("name"):
        pattern = f"%{str(params['name']).lower()}%"
        q = q.filter(db.or_(func.lower(Student.name_en).like(pattern),
                            Student.name_kanji.like(f"%{params['name']}%")))
    if params.get("class_id"):
        q = q.filter(Student.class_id == str(params["class_id"]))
    if params.get("status"):
        q = q.filter(Student.status == str(params["status"]).upper())

    rows = []
    for s in q.order_by(Student.name_en.asc()).limit(MAX_QUERY_ROWS).all():
        latest = _latest_attendance(s.id)
        rows.append({
            "id": s.id,
            "name": s.display_name,
            "nationality": s.nationality,
            "status": s.status,
            "class_id": s.class_id,
            "attendance_rate": round(latest.rate * 100) if latest else None,
            "year_month": latest.year_month if latest else None,
        })

    if params.get("max_attendance_rate") is not None:
        ceiling = float(params["max_attendance_rate"])
        rows = [r for r in rows if r["attendance_rate"] is not None and r["attendance_rate"] <= ceiling]

    return {"count": len(rows), "students": rows}


def search_attendance(params: dict) -> dict:
    q = MonthlyAttendance.query.join(Student)
    if params.get("student_id"):
        q = q.filter(MonthlyAttendance.student_id == str(params["student_id"]).upper())
    if params.get("year_month"):
        q = q.filter(MonthlyAttendance.year_month == str(params["year_month"]))
    if params.get("max_rate") is not None:
        q = q.filter(MonthlyAttendance.rate <= float(params["max_rate"]) / 100)

    records = (
        q.order_by(MonthlyAttendance.year_month.desc(), MonthlyAttendance.rate.asc())
        .limit(MAX_QUERY_ROWS).all()
    )
    result = []
    for r in records:
        row = r.to_dict()
        row["student_name"] = r.student.display_name
        row["nationality"] = r.student.nationality
        result.append(row)
    return {"count": len(result), "records": result}


def search_tuition(params: dict) -> dict:
    q = TuitionInvoice.query.join(Student)
    if params.get("student_id"):
        q = q.filter(TuitionInvoice.student_id == str(params["student_id"]).upper())
    if params.get("year_month"):
        q = q.filter(TuitionInvoice.year_month == str(params["year_month"]))
    if params.get("unpaid_only"):
        q = q.filter(TuitionInvoice.amount_due > TuitionInvoice.amount_paid)

    invoices = (
        q.order_by(TuitionInvoice.year_month.desc(), TuitionInvoice.student_id.asc())
        .limit(MAX_QUERY_ROWS).all()
    )
    rows = []
    for inv in invoices:
        row = inv.to_dict()
        row["student_name"] = inv.student.display_name
        rows.append(row)
    return {
        "count": len(rows),
        "total_outstanding": sum(max(r["balance"], 0) for r in rows),
        "invoices": rows,
    }


def review_pending_approvals(params: dict) -> dict:
    from campusdesk.chat import ledger

    page = ledger.list_requests(status="PENDING", type_=params.get("type"), page=1, per_page=20)
    return {
        "count": page["total"],
        "requests": [
            {"id": item["id"], "type": item["type"], "summary": item["summary"],
             "requested_by": item["requested_by"], "created_at": item["created_at"]}
            for item in page["items"]
        ],
    }


# ── Catalogue ────────────────────────────────────────────────────────────────

_STATUS_ENUM = list(STUDENT_STATUS.values)

TOOLS: dict[str, ToolSpec] = {
    spec.name: spec for spec in (
        ToolSpec(
            name="search_students",
            capability=QUERY,
            min_role="GENERAL",
            description="Search students by id, name, class, enrollment status or attendance ceiling.",
            input_schema={
                "type": "object",
                "properties": {
                    "student_id": {"type": "string", "description": "Student id such as S123"},
                    "name": {"type": "string", "description": "Name fragment (English or kanji)"},
                    "class_id": {"type": "string"},
                    "status": {"type": "string", "enum": _STATUS_ENUM},
                    "max_attendance_rate": {"type": "number",
                                            "description": "Latest attendance at or below this percent"},
                },
                "required": [],
            },
            handler=search_students,
        ),
        ToolSpec(
            name="search_attendance",
            capability=QUERY,
            min_role="GENERAL",
            description="Look up monthly attendance by student, month (YYYY-MM) or rate ceiling (percent).",
            input_schema={
                "type": "object",
                "properties": {
                    "student_id": {"type": "string"},
                    "year_month": {"type": "string", "description": "YYYY-MM"},
                    "max_rate": {"type": "number"},
                },
                "required": [],
            },
            handler=search_attendance,
        ),
        ToolSpec(
            name="search_tuition",
            capability=QUERY,
            min_role="GENERAL",
            description="Look up tuition invoices and outstanding balances.",
            input_schema={
                "type": "object",
                "properties": {
                    "student_id": {"type": "string"},
                    "year_month": {"type": "string", "description": "YYYY-MM"},
                    "unpaid_only": {"type": "boolean"},
                },
                "required": [],
            },
            handler=search_tuition,
        ),
        ToolSpec(
            name="review_pending_approvals",
            capability=QUERY,
            min_role="APPROVER",
            description="List approval requests still waiting for a decision.",
            input_schema={
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["DATA_CHANGE", "KNOWLEDGE_UPDATE"]},
                },
                "required": [],
            },
            handler=review_pending_approvals,
        ),
        ToolSpec(
            name="propose_data_change",
            capability=DATA_CHANGE,
            min_role="ADMIN",
            description=(
                "Propose a create, update or delete of a student, school_class or tuition_invoice "
                "record. The change is queued for human approval and is NOT applied immediately."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "entity_type": {"type": "string",
                                    "enum": ["student", "school_class", "tuition_invoice"]},
                    "operation": {"type": "string", "enum": ["create", "update", "delete"]},
                    "target_id": {"type": "string",
                                  "description": "Id of the record (omit for create)"},
                    "changes": {"type": "object",
                                "description": "Field → new value (create/update only)"},
                    "reason": {"type": "string"},
                },
                "required": ["entity_type", "operation"],
            },
        ),
        ToolSpec(
            name="propose_knowledge_update",
            capability=KNOWLEDGE_UPDATE,
            min_role="ADMIN",
            description=(
                "Propose a new version of a knowledge-base article (or a new article). "
                "Queued for human approval."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "slug": {"type": "string", "description": "lowercase-hyphenated article slug"},
                    "title": {"type": "string", "description": "Required when creating a new article"},
                    "body": {"type": "string", "description": "Full replacement body (Markdown)"},
                    "reason": {"type": "string"},
                },
                "required": ["slug", "body"],
            },
        ),
    )
}


def get_tool(name: str) -> ToolSpec | None:
    if not isinstance(name, str):
        return None
    return TOOLS.get(name)


def run_query(spec: ToolSpec, params) -> str:
    """Execute a query tool and return its JSON result (errors are reported, not raised)."""
    if not isinstance(params, dict):
        return json.dumps({"error": "tool input must be an object"})
    try:
        result = spec.handler(params)
    except (TypeError, ValueError, ValidationError) as exc:
        logger.info("Query tool %s rejected input: %s", spec.name, exc, extra={"tool": spec.name})
        return json.dumps({"error": f"invalid input: {exc}"})
    return json.dumps(result, ensure_ascii=False, default=str)
