"""Tests for the change request workflow engine."""
import re
from datetime import datetime, timedelta

import pytest
from sqlalchemy import insert, update

from itsm_core import crud, schemas, workflow
from itsm_core.audit import get_history
from itsm_core.blob_store import LocalBlobStore
from itsm_core.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from itsm_core.models import AttachmentType, BusinessPriority, ChangeRequest, CRSequence, CRStatus, HistoryAction, Role
from itsm_core.notifications import ByRole, Explicit, NotificationKind
from itsm_core.roles import resolve_actor

from conftest import (
    IT_OFFICER_ID,
    LINE_MANAGER_ID,
    REQUESTOR_ID,
    STAGE_ACTORS,
    FailingDispatcher,
    approve_payload_for,
    make_close_payload,
    make_create_payload,
    make_ito_payload,
)


class TestCreate:
    """Test raising change requests."""

    def test_create_starts_at_line_manager_stage(self, db, actors, notifier):
        """New CRs land at stage 2 with a created history entry."""
        cr = workflow.create_change_request(db, make_create_payload(), actors["requestor"], notifier)

        assert re.match(rf"^CR-{datetime.utcnow().year}-\d{{4}}$", cr.cr_number)
        assert cr.current_stage == 2
        assert cr.current_status == CRStatus.PENDING_LM_APPROVAL
        assert cr.requested_by == REQUESTOR_ID

        assert len(cr.history) == 1
        entry = cr.history[0]
        assert entry.action == HistoryAction.CREATED
        assert (entry.from_stage, entry.to_stage) == (1, 2)
        assert (entry.from_status, entry.to_status) == ("Draft", "Pending LM Approval")

    def test_create_notifies_line_manager(self, db, actors, notifier):
        cr = workflow.create_change_request(db, make_create_payload(), actors["requestor"], notifier)
        snapshot, kind, recipients = notifier.sent[0]
        assert kind == NotificationKind.CR_CREATED
        assert recipients == Explicit((LINE_MANAGER_ID,))
        assert snapshot.cr_number == cr.cr_number

    def test_cr_numbers_are_sequential(self, db, actors):
        first = workflow.create_change_request(db, make_create_payload(), actors["requestor"])
        second = workflow.create_change_request(db, make_create_payload(), actors["requestor"])
        assert first.cr_number.endswith("-0001")
        assert second.cr_number.endswith("-0002")

    def test_high_priority_requires_justification(self, db, actors):
        """High priority with missing or blank justification is refused."""
        for justification in (None, "   "):
            with pytest.raises(ValidationError):
                workflow.create_change_request(
                    db,
                    make_create_payload(business_priority=BusinessPriority.HIGH, priority_justification=justification),
                    actors["requestor"],
                )
        assert db.query(ChangeRequest).count() == 0

        cr = workflow.create_change_request(
            db,
            make_create_payload(business_priority=BusinessPriority.HIGH, priority_justification="Card scheme deadline"),
            actors["requestor"],
        )
        assert cr.current_stage == 2
        assert cr.current_status == CRStatus.PENDING_LM_APPROVAL

    def test_failing_dispatcher_does_not_fail_create(self, db, actors):
        """Notification failures are logged, never raised."""
        dispatcher = FailingDispatcher()
        cr = workflow.create_change_request(db, make_create_payload(), actors["requestor"], dispatcher)
        assert dispatcher.calls == 1
        assert crud.get_change_request(db, cr.id).current_stage == 2


class TestApprove:
    """Test stage-by-stage approval."""

    @pytest.mark.parametrize("stage", range(2, 10))
    def test_wrong_role_changes_nothing(self, db, actors, create_cr, stage):
        """A disallowed approver leaves stage, status, approvals and history untouched."""
        cr = create_cr(stage=stage)
        before = (cr.current_stage, cr.current_status, len(cr.approvals), len(cr.history))

        allowed = STAGE_ACTORS[stage]
        intruders = [actors[key] for key in actors if key != allowed]
        if stage == 5:
            intruders.append(resolve_actor(99, [role.value for role in Role]))
        for actor in intruders:
            with pytest.raises(PermissionDeniedError):
                workflow.approve_change_request(db, cr.id, approve_payload_for(stage), actor)

        db.expire_all()
        cr = crud.get_change_request(db, cr.id)
        assert (cr.current_stage, cr.current_status, len(cr.approvals), len(cr.history)) == before

    def test_stage_3_requires_it_officer(self, db, actors, create_cr):
        cr = create_cr(stage=3)
        with pytest.raises(ValidationError) as exc_info:
            workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["head_of_it"])
        assert "IT Officer" in exc_info.value.message

        cr = workflow.approve_change_request(
            db, cr.id, schemas.ChangeRequestApprove(assigned_to_it_officer_id=IT_OFFICER_ID), actors["head_of_it"]
        )
        assert cr.assigned_to_it_officer_id == IT_OFFICER_ID
        assert cr.current_status == CRStatus.ASSIGNED_TO_IT_OFFICER

    def test_stage_5_only_original_requestor(self, db, actors, create_cr):
        cr = create_cr(stage=5)
        with pytest.raises(PermissionDeniedError):
            workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), resolve_actor(99))

        cr = workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["requestor"])
        assert cr.current_stage == 6
        assert cr.approvals[-1].approver_role == Role.REQUESTOR

    def test_stage_7_requires_risk_acceptance(self, db, actors, create_cr):
        cr = create_cr(stage=7)
        for accepted in (None, False):
            with pytest.raises(ValidationError):
                workflow.approve_change_request(
                    db, cr.id, schemas.ChangeRequestApprove(risk_accepted=accepted), actors["head_of_it"]
                )
        assert crud.get_change_request(db, cr.id).current_stage == 7

    def test_leaving_stage_9_stamps_deployment(self, db, actors, create_cr):
        cr = create_cr(stage=9)
        assert cr.deployment_completed_at is None
        cr = workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["it_officer"])
        assert cr.deployment_completed_at is not None
        assert cr.current_status == CRStatus.WAITING_FOR_CLOSURE

    def test_stage_10_cannot_be_approved(self, db, actors, create_cr):
        cr = create_cr(stage=10)
        with pytest.raises(ValidationError):
            workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["noc"])

    def test_terminal_checked_before_role(self, db, actors, create_cr):
        """A rejected CR reports a validation error even to the wrong role."""
        cr = create_cr()
        workflow.reject_change_request(db, cr.id, schemas.ChangeRequestReject(reason="Out of scope"), actors["line_manager"])
        with pytest.raises(ValidationError):
            workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["qa_officer"])

    def test_missing_cr(self, db, actors):
        with pytest.raises(NotFoundError):
            workflow.approve_change_request(db, 404, schemas.ChangeRequestApprove(), actors["line_manager"])

    def test_stage_notifications(self, db, actors, notifier, create_cr):
        """Recipients follow the stage entered."""
        cr = create_cr(stage=4)
        sent = {kind: recipients for _, kind, recipients in notifier.sent}
        assert sent[NotificationKind.LM_APPROVED] == ByRole(Role.HEAD_OF_IT)
        assert sent[NotificationKind.HOIT_APPROVED] == Explicit((IT_OFFICER_ID,))
        assert cr.current_stage == 4


class TestFullLifecycle:
    """Drive a CR from stage 2 to Completed."""

    def test_full_drive_and_close(self, db, actors, notifier, create_cr):
        cr = create_cr(stage=10)
        now = cr.deployment_completed_at + timedelta(hours=49)
        cr = workflow.close_change_request(db, cr.id, make_close_payload(), actors["noc"], notifier, now=now)

        assert cr.current_stage == 10
        assert cr.current_status == CRStatus.COMPLETED
        assert cr.completed_at == now

        transitions = [
            (h.from_stage, h.to_stage) for h in cr.history if h.action == HistoryAction.APPROVED
        ]
        assert transitions == [(s, s + 1) for s in range(2, 10)]
        assert cr.history[0].action == HistoryAction.CREATED
        assert cr.history[-1].action == HistoryAction.CLOSED
        assert (cr.history[-1].to_stage, cr.history[-1].to_status) == (10, "Completed")

        assert [a.stage for a in cr.approvals] == list(range(2, 11))
        assert cr.approvals[-1].approver_role == Role.NOC

        assert notifier.kinds == [
            NotificationKind.CR_CREATED,
            NotificationKind.LM_APPROVED,
            NotificationKind.HOIT_APPROVED,
            NotificationKind.ITO_SUBMITTED,
            NotificationKind.REQUESTOR_CONFIRMED,
            NotificationKind.QA_VALIDATED,
            NotificationKind.HOIT_PRODUCTION_APPROVED,
            NotificationKind.HOIS_APPROVED,
            NotificationKind.DEPLOYMENT_COMPLETED,
            NotificationKind.CR_CLOSED,
        ]

    def test_last_history_matches_state_after_each_step(self, db, actors, create_cr):
        """Re-fetched stage/status always agree with the newest history entry."""
        cr = create_cr()
        for _ in range(4):
            fetched = crud.get_change_request(db, cr.id)
            latest = get_history(db, cr.id)[0]
            assert (latest.to_stage, latest.to_status) == (fetched.current_stage, fetched.current_status.value)
            if fetched.current_stage == 4:
                workflow.update_it_officer_fields(db, cr.id, make_ito_payload(), actors["it_officer"])
            payload = schemas.ChangeRequestApprove(
                assigned_to_it_officer_id=IT_OFFICER_ID if fetched.current_stage == 3 else None
            )
            approver = {2: "line_manager", 3: "head_of_it", 4: "it_officer", 5: "requestor"}[fetched.current_stage]
            cr = workflow.approve_change_request(db, cr.id, payload, actors[approver])


class TestReject:
    """Test rejection."""

    def test_reject_keeps_stage(self, db, actors, notifier, create_cr):
        cr = create_cr(stage=4)
        cr = workflow.reject_change_request(
            db, cr.id, schemas.ChangeRequestReject(reason="Insufficient backout plan"), actors["it_officer"], notifier
        )
        assert cr.current_stage == 4
        assert cr.current_status == CRStatus.REJECTED
        assert cr.approvals[-1].comments == "Insufficient backout plan"
        assert cr.history[-1].action == HistoryAction.REJECTED

        _, kind, recipients = notifier.sent[-1]
        assert kind == NotificationKind.CR_REJECTED
        assert recipients == Explicit((REQUESTOR_ID, LINE_MANAGER_ID, IT_OFFICER_ID))

    def test_reject_at_stage_10_by_noc(self, db, actors, create_cr):
        cr = create_cr(stage=10)
        cr = workflow.reject_change_request(db, cr.id, schemas.ChangeRequestReject(reason="Post-deploy errors"), actors["noc"])
        assert cr.current_status == CRStatus.REJECTED

    def test_reject_blank_reason_refused_by_schema(self):
        with pytest.raises(ValueError):
            schemas.ChangeRequestReject(reason="   ")


class TestUpdateAndRemove:
    """Test baton-pass edit and soft delete."""

    def test_requestor_edits_at_stage_2(self, db, actors, create_cr):
        cr = create_cr()
        cr = workflow.update_change_request(
            db, cr.id, schemas.ChangeRequestUpdate(purpose_of_change="Patch POS terminals"), actors["requestor"]
        )
        assert cr.purpose_of_change == "Patch POS terminals"
        assert cr.current_stage == 2
        entry = cr.history[-1]
        assert entry.action == HistoryAction.UPDATED
        assert "purpose_of_change" in entry.notes

    @pytest.mark.parametrize("field", ["purpose_of_change", "description_of_change", "business_priority", "line_manager_id"])
    def test_required_fields_cannot_be_cleared(self, db, actors, create_cr, field):
        cr = create_cr()
        original = getattr(cr, field)
        with pytest.raises(ValidationError, match=field):
            workflow.update_change_request(db, cr.id, schemas.ChangeRequestUpdate(**{field: None}), actors["requestor"])

        cr = crud.get_change_request(db, cr.id)
        assert getattr(cr, field) == original
        assert len(cr.history) == 1

    def test_non_baton_holder_cannot_edit(self, db, actors, create_cr):
        cr = create_cr()
        with pytest.raises(PermissionDeniedError):
            workflow.update_change_request(
                db, cr.id, schemas.ChangeRequestUpdate(purpose_of_change="x"), actors["head_of_it"]
            )
        assert len(crud.get_change_request(db, cr.id).history) == 1

    def test_priority_rule_rechecked(self, db, actors, create_cr):
        cr = create_cr()
        with pytest.raises(ValidationError):
            workflow.update_change_request(
                db, cr.id, schemas.ChangeRequestUpdate(business_priority=BusinessPriority.HIGH), actors["requestor"]
            )

    def test_head_of_it_edits_mid_workflow(self, db, actors, create_cr):
        cr = create_cr(stage=6)
        cr = workflow.update_change_request(
            db, cr.id, schemas.ChangeRequestUpdate(description_of_change="Scope narrowed"), actors["head_of_it"]
        )
        assert cr.description_of_change == "Scope narrowed"

    def test_remove_soft_deletes(self, db, actors, create_cr):
        cr = create_cr()
        cr = workflow.remove_change_request(db, cr.id, actors["requestor"])
        assert cr.current_status == CRStatus.DELETED
        assert cr.history[-1].action == HistoryAction.DELETED
        assert crud.list_change_requests(db) == []
        assert len(crud.list_change_requests(db, include_deleted=True)) == 1

        with pytest.raises(ValidationError):
            workflow.remove_change_request(db, cr.id, actors["requestor"])

    def test_completed_cannot_be_edited_or_removed(self, db, actors, create_cr):
        cr = create_cr(stage=10)
        now = cr.deployment_completed_at + timedelta(days=3)
        workflow.close_change_request(db, cr.id, make_close_payload(), actors["noc"], now=now)
        with pytest.raises(ValidationError):
            workflow.update_change_request(db, cr.id, schemas.ChangeRequestUpdate(purpose_of_change="x"), actors["head_of_it"])
        with pytest.raises(ValidationError):
            workflow.remove_change_request(db, cr.id, actors["head_of_it"])


class TestITOfficerFields:
    """Test the stage 4 assessment."""

    def test_assigned_officer_records_assessment(self, db, actors, create_cr):
        cr = create_cr(stage=4)
        cr = workflow.update_it_officer_fields(db, cr.id, make_ito_payload(), actors["it_officer"])
        assert (cr.category, cr.subcategory) == ("SERVERS", "AMEX")
        assert cr.cost_involved == 0
        assert cr.current_stage == 4
        assert cr.history[-1].action == HistoryAction.ITO_FIELDS_UPDATED

    def test_other_it_officer_denied(self, db, actors, create_cr):
        cr = create_cr(stage=4)
        with pytest.raises(PermissionDeniedError):
            workflow.update_it_officer_fields(db, cr.id, make_ito_payload(), resolve_actor(40, ["it_officer"]))

    def test_wrong_stage(self, db, actors, create_cr):
        cr = create_cr(stage=3)
        with pytest.raises(ValidationError):
            workflow.update_it_officer_fields(db, cr.id, make_ito_payload(), actors["it_officer"])

    def test_invalid_category_pair(self, db, actors, create_cr):
        cr = create_cr(stage=4)
        with pytest.raises(ValidationError):
            workflow.update_it_officer_fields(
                db, cr.id, make_ito_payload(subcategory="POS APP"), actors["it_officer"]
            )


class TestSatelliteRecords:
    """Test testing results, QA checklists, deployment team and attachments."""

    def test_testing_results(self, db, actors, create_cr):
        cr = create_cr(stage=4)
        result = workflow.add_testing_results(
            db,
            cr.id,
            schemas.TestingResultsCreate(
                test_type="UAT",
                test_results=[{"test_case": "Login", "expected_result": "OK", "actual_result": "OK", "passed": True}],
                passed=True,
            ),
            actors["it_officer"],
        )
        assert result.test_results[0]["test_case"] == "Login"
        assert get_history(db, cr.id)[0].notes == "Testing results added: UAT - PASSED"
        assert crud.get_change_request(db, cr.id).current_stage == 4

    def test_qa_checklist_stage_and_role(self, db, actors, create_cr):
        payload = schemas.QAChecklistCreate(
            checklist_data=[{"check_item": "Regression suite", "checked": True}], validated=False
        )
        cr = create_cr(stage=5)
        with pytest.raises(ValidationError):
            workflow.add_qa_checklist(db, cr.id, payload, actors["qa_officer"])

        cr = create_cr(stage=6)
        with pytest.raises(PermissionDeniedError):
            workflow.add_qa_checklist(db, cr.id, payload, actors["head_of_it"])

        checklist = workflow.add_qa_checklist(db, cr.id, payload, actors["qa_officer"])
        assert checklist.validated is False
        assert checklist.validation_date is None

        checklist = workflow.validate_qa_checklist(db, cr.id, checklist.id, actors["qa_officer"])
        assert checklist.validated is True
        assert checklist.validation_date is not None

        with pytest.raises(ValidationError):
            workflow.validate_qa_checklist(db, cr.id, checklist.id, actors["qa_officer"])

    def test_validate_unknown_checklist(self, db, actors, create_cr):
        cr = create_cr(stage=6)
        with pytest.raises(NotFoundError):
            workflow.validate_qa_checklist(db, cr.id, 999, actors["qa_officer"])

    def test_deployment_team_member(self, db, actors, create_cr):
        cr = create_cr(stage=9)
        member = workflow.add_deployment_team_member(
            db, cr.id, schemas.DeploymentTeamMemberCreate(member_name="Sara Ali", designation="DBA"), actors["it_officer"]
        )
        assert member.role == "member"
        assert [m.member_name for m in crud.get_deployment_team(db, cr.id)] == ["Sara Ali"]
        assert "Sara Ali" in get_history(db, cr.id)[0].notes

    def test_attachments(self, db, actors, create_cr, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        cr = create_cr()
        attachment = workflow.add_attachment(
            db, cr.id, actors["requestor"],
            data=b"%PDF-1.4 uat evidence",
            filename="uat.pdf",
            mime_type="application/pdf",
            kind=AttachmentType.UAT_DOCUMENTATION,
            blob_store=store,
        )
        assert attachment.file_path.startswith("/uat-documents/")
        assert attachment.file_path.endswith(".pdf")
        assert store.resolve(attachment.file_path).read_bytes() == b"%PDF-1.4 uat evidence"

        with pytest.raises(ValidationError):
            workflow.add_attachment(
                db, cr.id, actors["requestor"],
                data=b"GIF89a",
                filename="sig.gif",
                mime_type="image/gif",
                kind=AttachmentType.SIGNATURE,
                blob_store=store,
            )
        assert len(crud.get_attachments(db, cr.id)) == 1

    def test_terminal_blocks_satellites(self, db, actors, create_cr):
        cr = create_cr()
        workflow.remove_change_request(db, cr.id, actors["requestor"])
        with pytest.raises(ValidationError):
            workflow.add_deployment_team_member(
                db, cr.id, schemas.DeploymentTeamMemberCreate(member_name="Late"), actors["requestor"]
            )


class TestClose:
    """Test NOC closure through the engine."""

    def test_non_noc_denied(self, db, actors, create_cr):
        cr = create_cr(stage=10)
        with pytest.raises(PermissionDeniedError):
            workflow.close_change_request(db, cr.id, make_close_payload(), actors["head_of_it"])

    def test_wrong_stage_reported_before_role(self, db, actors, create_cr):
        cr = create_cr(stage=8)
        with pytest.raises(ValidationError):
            workflow.close_change_request(db, cr.id, make_close_payload(), actors["head_of_it"])

    def test_early_closure(self, db, actors, notifier, create_cr):
        cr = create_cr(stage=10)
        soon = cr.deployment_completed_at + timedelta(hours=3)
        with pytest.raises(ValidationError):
            workflow.close_change_request(db, cr.id, make_close_payload(), actors["noc"], now=soon)
        assert crud.get_change_request(db, cr.id).current_status == CRStatus.WAITING_FOR_CLOSURE

        cr = workflow.close_change_request(
            db, cr.id, make_close_payload(noc_closure_justification="Vendor confirmed stability"),
            actors["noc"], notifier, now=soon,
        )
        assert cr.current_status == CRStatus.COMPLETED
        assert cr.history[-1].additional_data["hours_since_deployment"] == 3

        _, kind, recipients = notifier.sent[-1]
        assert kind == NotificationKind.CR_CLOSED
        assert recipients == Explicit((REQUESTOR_ID, LINE_MANAGER_ID, IT_OFFICER_ID))


class TestConcurrency:
    """Test optimistic conflict detection."""

    def test_concurrent_modification_raises_conflict(self, db, actors, notifier, create_cr):
        """A commit racing with another writer rolls back cleanly."""
        cr = create_cr()
        sent_before = len(notifier.sent)

        # Another writer bumps the row version behind the loaded object's back
        db.execute(
            update(ChangeRequest)
            .where(ChangeRequest.id == cr.id)
            .values(version_id=ChangeRequest.version_id + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError):
            workflow.approve_change_request(db, cr.id, schemas.ChangeRequestApprove(), actors["line_manager"], notifier)

        fresh = crud.get_change_request(db, cr.id)
        assert fresh.current_stage == 2
        assert fresh.approvals == []
        assert len(fresh.history) == 1
        assert len(notifier.sent) == sent_before

    def test_first_of_year_race_raises_conflict(self, db, actors, create_cr, monkeypatch):
        """Losing the race for the year's sequence row rolls back cleanly."""
        create_cr()
        allocate = crud.next_cr_number

        def allocate_after_rival(session, year=None):
            # A rival inserted this year's row after our lookup found none
            session.execute(insert(CRSequence).values(year=datetime.utcnow().year, next_number=1))
            return allocate(session, year)

        monkeypatch.setattr(crud, "next_cr_number", allocate_after_rival)
        with pytest.raises(ConflictError):
            workflow.create_change_request(db, make_create_payload(), actors["requestor"])
        assert db.query(ChangeRequest).count() == 1

        monkeypatch.setattr(crud, "next_cr_number", allocate)
        cr = workflow.create_change_request(db, make_create_payload(), actors["requestor"])
        assert cr.cr_number.endswith("-0002")


class TestQueries:
    """Test role queues, search and statistics."""

    def test_role_queues(self, db, actors, create_cr):
        at_lm = create_cr()
        at_hoit = create_cr(stage=3)
        at_qa = create_cr(stage=6)

        def ids(actor, **kwargs):
            return {cr.id for cr in crud.find_by_role(db, actor, **kwargs)}

        assert ids(actors["line_manager"]) == {at_lm.id, at_hoit.id, at_qa.id}
        assert ids(actors["head_of_it"]) == {at_hoit.id}
        assert ids(actors["qa_officer"]) == {at_qa.id}
        assert ids(actors["it_officer"]) == {at_qa.id}
        assert ids(actors["noc"]) == set()
        assert ids(actors["requestor"]) == {at_lm.id, at_hoit.id, at_qa.id}
        assert ids(actors["noc"], view_all=True) == {at_lm.id, at_hoit.id, at_qa.id}

    def test_staff_queues_exclude_terminal(self, db, actors, create_cr):
        cr = create_cr(stage=3)
        workflow.reject_change_request(db, cr.id, schemas.ChangeRequestReject(reason="Duplicate"), actors["head_of_it"])
        assert crud.find_by_role(db, actors["head_of_it"]) == []
        assert [c.id for c in crud.find_by_user(db, REQUESTOR_ID)] == [cr.id]

    def test_search(self, db, actors, create_cr):
        firmware = create_cr()
        network = create_cr(purpose_of_change="Replace core switch", business_priority=BusinessPriority.LOW)

        def search(**filters):
            return [cr.id for cr in crud.search_change_requests(db, schemas.ChangeRequestSearch(**filters))]

        assert search(search="core SWITCH") == [network.id]
        assert search(search=firmware.cr_number) == [firmware.id]
        assert search(priority=BusinessPriority.LOW) == [network.id]
        assert search(stage=2) == [network.id, firmware.id]
        assert search(status=CRStatus.REJECTED) == []
        assert search(date_from=datetime.utcnow() + timedelta(days=1)) == []

    def test_statistics(self, db, actors, create_cr):
        create_cr()
        create_cr(stage=3, business_priority=BusinessPriority.CRITICAL)
        rejected = create_cr()
        workflow.reject_change_request(db, rejected.id, schemas.ChangeRequestReject(reason="No"), actors["line_manager"])

        stats = crud.get_statistics(db)
        assert stats.total == 3
        assert stats.pending == 2
        assert stats.rejected == 1
        assert stats.completed == 0
        assert stats.by_stage[2] == 2
        assert stats.by_stage[3] == 1
        assert stats.by_stage[10] == 0
        assert stats.by_priority == {"Low": 0, "Medium": 2, "High": 0, "Critical": 1}
