"""
Proposal codec tests.

Tests cover:
  - capability lookup and unknown tools
  - data change validation (vocabularies, writable fields, refs, targets)
  - knowledge edit validation and create/update detection
  - revalidate() against changed records state
  - descriptor round trip through the stored JSON form
"""

import pytest

from campusdesk.chat import codec
from campusdesk.chat.codec import KnowledgeEditDescriptor, MutationDescriptor, QueryCall
from campusdesk.core.exceptions import MalformedProposal, StaleTarget, UnknownCapability
from campusdesk.models import db
from campusdesk.models.school import Student


def _change(payload, name="propose_data_change"):
    return {"id": "call_1", "name": name, "input": payload}


class TestCapabilities:
    def test_query_tool_decodes_to_query_call(self, school):
        decoded = codec.decode({"id": "q1", "name": "search_students", "input": {"student_id": "S123"}})
        assert isinstance(decoded, QueryCall)
        assert decoded.params == {"student_id": "S123"}
        assert decoded.tool_call_id == "q1"

    def test_unknown_tool_raises(self):
        with pytest.raises(UnknownCapability) as exc:
            codec.decode({"id": "x", "name": "drop_all_tables", "input": {}})
        assert exc.value.tool_name == "drop_all_tables"

    def test_capability_of(self):
        assert codec.capability_of("propose_data_change") == "dataChange"
        assert codec.capability_of("propose_knowledge_update") == "knowledgeUpdate"
        assert codec.capability_of("search_tuition") == "query"

    def test_non_object_input_is_malformed(self, school):
        with pytest.raises(MalformedProposal):
            codec.decode(_change("change S123 to WITHDRAWN"))


class TestDataChange:
    def test_status_update_normalized(self, school):
        decoded = codec.decode(_change({
            "entity_type": "Student", "operation": "UPDATE", "target_id": "s123",
            "changes": {"status": "withdrawn"}, "reason": "left the school",
        }))
        assert isinstance(decoded, MutationDescriptor)
        assert decoded.entity_type == "student"
        assert decoded.operation == "update"
        assert decoded.target_id == "S123"
        assert decoded.changes == {"status": "WITHDRAWN"}
        assert decoded.approval_type == "DATA_CHANGE"

    def test_status_outside_vocabulary_refused(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "update", "target_id": "S123",
                "changes": {"status": "ON_VACATION"},
            }))
        assert "status" in exc.value.details

    def test_unknown_target_refused(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "update", "target_id": "S999",
                "changes": {"status": "WITHDRAWN"},
            }))
        assert "target_id" in exc.value.details

    def test_read_only_field_refused_on_update(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "update", "target_id": "S123",
                "changes": {"id": "S124"},
            }))
        assert exc.value.details["id"] == "cannot be changed"

    def test_unknown_field_refused(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "update", "target_id": "S123",
                "changes": {"shoe_size": 42},
            }))
        assert "shoe_size" in exc.value.details

    def test_dangling_class_reference_refused(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "update", "target_id": "S123",
                "changes": {"class_id": "NOPE"},
            }))
        assert "class_id" in exc.value.details

    def test_unsupported_entity_type_refused(self):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({"entity_type": "teacher", "operation": "delete", "target_id": "T1"}))
        assert "entity_type" in exc.value.details

    def test_create_requires_required_fields(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "create", "changes": {"id": "S200"},
            }))
        assert exc.value.details["name_en"] == "is required"

    def test_create_duplicate_id_refused(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "student", "operation": "create",
                "changes": {"id": "S123", "name_en": "Someone Else"},
            }))
        assert "already exists" in exc.value.details["id"]

    def test_create_invoice_with_int_amounts(self, school):
        decoded = codec.decode(_change({
            "entity_type": "tuition_invoice", "operation": "create",
            "changes": {"student_id": "S101", "year_month": "2024-06", "amount_due": "60000"},
        }))
        assert decoded.changes["amount_due"] == 60000
        assert decoded.target_id is None
        assert decoded.summary.startswith("Create tuition_invoice")

    def test_delete_with_changes_refused(self, school):
        with pytest.raises(MalformedProposal):
            codec.decode(_change({
                "entity_type": "student", "operation": "delete", "target_id": "S123",
                "changes": {"status": "WITHDRAWN"},
            }))


class TestOddlyTypedPayloads:
    """The model may send any JSON; every shape must end in MalformedProposal."""

    @pytest.mark.parametrize("payload, field", [
        ({"entity_type": ["student"], "operation": "update", "target_id": "S123",
          "changes": {"status": "WITHDRAWN"}}, "entity_type"),
        ({"entity_type": {"name": "student"}, "operation": "update", "target_id": "S123",
          "changes": {"status": "WITHDRAWN"}}, "entity_type"),
        ({"entity_type": "student", "operation": {"x": 1}, "target_id": "S123",
          "changes": {"status": "WITHDRAWN"}}, "operation"),
        ({"entity_type": "student", "operation": ["update"], "target_id": "S123",
          "changes": {"status": "WITHDRAWN"}}, "operation"),
        ({"entity_type": "student", "operation": "update", "target_id": "S123",
          "changes": ["status", "WITHDRAWN"]}, "changes"),
    ])
    def test_non_string_vocabulary_fields(self, school, payload, field):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change(payload))
        assert field in exc.value.details

    @pytest.mark.parametrize("capacity", ["--5", "\u00b2", "1_000", "5.0", "", True, 2.5, [3]])
    def test_bad_integer_strings(self, school, capacity):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({
                "entity_type": "school_class", "operation": "update", "target_id": "C2024A",
                "changes": {"capacity": capacity},
            }))
        assert "capacity" in exc.value.details

    def test_signed_digit_string_accepted(self, school):
        decoded = codec.decode(_change({
            "entity_type": "school_class", "operation": "update", "target_id": "C2024A",
            "changes": {"capacity": " +30 "},
        }))
        assert decoded.changes == {"capacity": 30}

    def test_non_string_tool_name(self, school):
        with pytest.raises(UnknownCapability):
            codec.decode({"id": "x", "name": ["propose_data_change"], "input": {}})


class TestKnowledgeEdit:
    def test_update_existing_article(self, school):
        decoded = codec.decode(_change(
            {"slug": "attendance-policy", "body": "New policy text"}, name="propose_knowledge_update",
        ))
        assert isinstance(decoded, KnowledgeEditDescriptor)
        assert decoded.creates is False
        assert decoded.base_version == 1
        assert decoded.operation == "update"

    def test_new_article_requires_title(self, school):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({"slug": "visa-renewal", "body": "Steps..."},
                                 name="propose_knowledge_update"))
        assert "title" in exc.value.details

    def test_bad_slug_refused(self):
        with pytest.raises(MalformedProposal) as exc:
            codec.decode(_change({"slug": "Visa Renewal!", "body": "x", "title": "Visa"},
                                 name="propose_knowledge_update"))
        assert "slug" in exc.value.details


class TestRevalidate:
    def test_deleted_target_is_stale(self, school):
        descriptor = codec.validate_mutation("student", "update", target_id="S123",
                                             changes={"status": "WITHDRAWN"})
        db.session.delete(db.session.get(Student, "S123"))
        db.session.commit()
        with pytest.raises(StaleTarget) as exc:
            codec.revalidate(descriptor)
        assert "target_id" in exc.value.details

    def test_article_version_moved_on(self, school):
        descriptor = codec.validate_knowledge_edit("attendance-policy", "v2 body")
        from campusdesk.services import records
        records.upsert_article("attendance-policy", "someone else's edit", "kimura")
        db.session.commit()
        with pytest.raises(StaleTarget) as exc:
            codec.revalidate(descriptor)
        assert "version" in exc.value.details

    def test_unchanged_state_passes(self, school):
        descriptor = codec.validate_mutation("student", "update", target_id="S123",
                                             changes={"phone": "090-1111-2222"})
        assert codec.revalidate(descriptor) is descriptor

    def test_from_dict_rebuilds_descriptor(self, school):
        descriptor = codec.validate_mutation("student", "update", target_id="S123",
                                             changes={"status": "ON_LEAVE"}, reason="medical")
        assert codec.from_dict(descriptor.to_dict()) == descriptor

    def test_from_dict_unknown_kind(self):
        with pytest.raises(MalformedProposal):
            codec.from_dict({"kind": "shell_command"})
