"""
Student Blueprint — direct student CRUD for administrators.

Endpoints:
    GET    /api/v1/students                 ?status=&class_id=&q=&page=&per_page=
    POST   /api/v1/students                 (ADMIN)
    GET    /api/v1/students/<id>
    PATCH  /api/v1/students/<id>            (ADMIN)
    DELETE /api/v1/students/<id>            (ADMIN)

Writes use the same field rules as chat proposals (``codec.validate_mutation``)
and the same records store, and are audited with ``source="api"``.  They are
not approval-gated: the endpoint itself requires the ADMIN role.
"""

import logging

from flask import Blueprint, jsonify, request

from campusdesk.auth import current_actor, require_role
from campusdesk.chat import codec
from campusdesk.core.exceptions import NotFoundError, ValidationError
from campusdesk.models.school import Student
from campusdesk.models.vocab import STUDENT_STATUS
from campusdesk.services import audit_recorder, records
from campusdesk.utils.errors import E, api_error
from campusdesk.utils.helpers import db_commit_or_error, page_args, paginate_envelope

logger = logging.getLogger(__name__)

student_bp = Blueprint("student", __name__, url_prefix="/api/v1")


def _get_student(student_id: str) -> Student:
    student = records.get_entity("student", student_id.upper())
    if student is None:
        raise NotFoundError(resource="Student", resource_id=student_id)
    return student


@student_bp.route("/students", methods=["GET"])
def list_students():
    page, per_page = page_args()
    q = Student.query

    status = request.args.get("status")
    if status:
        status = status.upper()
        if status not in STUDENT_STATUS:
            raise ValidationError(f"Invalid status '{status}'",
                                  details={"status": f"must be one of: {', '.join(STUDENT_STATUS.values)}"})
        q = q.filter(Student.status == status)
    class_id = request.args.get("class_id")
    if class_id:
        q = q.filter(Student.class_id == class_id.upper())
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(Student.name_en.ilike(like) | Student.name_kanji.ilike(like) | Student.id.ilike(like))

    return jsonify(paginate_envelope(q.order_by(Student.id.asc()), page, per_page))


@student_bp.route("/students/<student_id>", methods=["GET"])
def get_student(student_id):
    return jsonify(_get_student(student_id).to_dict())


@student_bp.route("/students", methods=["POST"])
@require_role("ADMIN")
def create_student():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required")

    descriptor = codec.validate_mutation("student", "create", changes=data)
    student, diff = records.create_entity("student", descriptor.changes)
    actor = current_actor()
    audit_recorder.record(action="CREATE", actor=actor.user_id, entity_type="student",
                          entity_id=student.id, diff=diff, source="api")
    err = db_commit_or_error()
    if err:
        return err
    logger.info("Student %s created via API", student.id, extra={"actor": actor.user_id})
    return jsonify(student.to_dict()), 201


@student_bp.route("/students/<student_id>", methods=["PATCH"])
@require_role("ADMIN")
def update_student(student_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return api_error(E.VALIDATION_REQUIRED, "At least one field is required")

    student = _get_student(student_id)
    descriptor = codec.validate_mutation("student", "update", target_id=student.id, changes=data)
    diff = records.update_entity(student, descriptor.changes, "student")
    if diff:
        actor = current_actor()
        audit_recorder.record(action="UPDATE", actor=actor.user_id, entity_type="student",
                              entity_id=student.id, diff=diff, source="api")
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(student.to_dict())


@student_bp.route("/students/<student_id>", methods=["DELETE"])
@require_role("ADMIN")
def delete_student(student_id):
    student = _get_student(student_id)
    pk = student.id
    diff = records.delete_entity(student, "student")
    audit_recorder.record(action="DELETE", actor=current_actor().user_id, entity_type="student",
                          entity_id=pk, diff=diff, source="api")
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": pk})
