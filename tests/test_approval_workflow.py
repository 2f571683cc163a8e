from datetime import date
from decimal import Decimal

import pytest

from conftest import make_template
from payroll_core.common.errors import (
    AlreadyApprovedError, ConflictError, ValidationError,
)
from payroll_core.common.roles import Role
from payroll_core.models.audit import AuditLog
from payroll_core.models.notification import Notification
from payroll_core.models.user import User
from payroll_core.services.audit import AuditRecorder
from payroll_core.services.notifications import LoggingEmailSender, NotificationDispatcher
from payroll_core.services.approval_workflow import (
    CTC_TRANSITIONS, PAYSLIP_TRANSITIONS, check_transition,
)


def _actions(services, entity_type, entity_id):
    return [a.action for a in services.audit.history(entity_type, entity_id)]


@pytest.fixture
def pending_slip(services, people, approved_ctc):
    return services.workflow.submit_payslip(people["emp_a"], 2024, 3, 5, people["hr"])


def test_submit_structure_audits_and_notifies_managers(services, people, template):
    s = services.workflow.submit_structure(people["emp_a"], template, people["hr"])
    assert s.status == "pending"
    assert _actions(services, "CTCStructure", s.id) == ["Created"]
    notes = Notification.query.filter_by(user_id=people["hrm_user_id"]).all()
    assert [n.subject for n in notes] == ["CTC Requires Approval"]
    assert services.notifier.email_sender.sent[0]["to"] == "hrm@example.test"


def test_approve_structure(services, people, template):
    s = services.workflow.submit_structure(people["emp_a"], template, people["hr"])
    s = services.workflow.approve_structure(s.id, people["hrm"])
    assert s.status == "approved"
    log = services.audit.history("CTCStructure", s.id)
    assert [a.action for a in log] == ["Created", "Approved"]
    assert (log[1].old_status, log[1].new_status) == ("pending", "approved")
    # employee and creator both hear about it
    subjects = {n.subject for n in Notification.query.all()}
    assert {"CTC Status Updated", "CTC Review Completed"} <= subjects


def test_double_approval_of_structure(services, people, approved_ctc):
    with pytest.raises(AlreadyApprovedError):
        services.workflow.approve_structure(approved_ctc.id, people["admin"])


def test_structure_approval_needs_manager(services, people, template):
    s = services.workflow.submit_structure(people["emp_a"], template, people["hr"])
    with pytest.raises(ValidationError):
        services.workflow.approve_structure(s.id, people["staff"])
    assert services.store.get(s.id).status == "pending"


def test_superseding_structure_audits_predecessor(services, people, approved_ctc):
    nxt = services.workflow.submit_superseding_structure(
        approved_ctc.id, make_template(date(2024, 10, 1)), people["hr"])
    services.workflow.approve_structure(nxt.id, people["hrm"])
    assert _actions(services, "CTCStructure", approved_ctc.id) == ["Superseded"]
    assert services.store.get(approved_ctc.id).effective_to == date(2024, 10, 1)


def test_payslip_full_lifecycle(services, people, pending_slip):
    assert pending_slip.lifecycle == "pending"
    assert pending_slip.net_pay == Decimal("74850.00")

    slip = services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    assert slip.lifecycle == "approved"
    assert slip.approved_by_user_id == people["hrm"].user_id

    slip = services.workflow.release_payslip(slip.id, people["hrm"])
    assert slip.lifecycle == "released"
    assert slip.is_released is True
    assert slip.released_at is not None

    assert _actions(services, "Payslip", slip.id) == ["Created", "Approved", "Released"]
    staff_notes = Notification.query.filter_by(user_id=people["staff"].user_id).all()
    assert "New Payslip Released" in [n.subject for n in staff_notes]


def test_release_requires_approval(services, people, pending_slip):
    with pytest.raises(ValidationError):
        services.workflow.release_payslip(pending_slip.id, people["hrm"])
    assert services.payslips.get(pending_slip.id).is_released is False


def test_hr_cannot_approve_or_release(services, people, pending_slip):
    with pytest.raises(ValidationError):
        services.workflow.approve_payslip(pending_slip.id, people["hr"])
    services.workflow.approve_payslip(pending_slip.id, people["admin"])
    with pytest.raises(ValidationError):
        services.workflow.release_payslip(pending_slip.id, people["hr"])


def test_double_approval_of_payslip(services, people, pending_slip):
    services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    with pytest.raises(ConflictError):
        services.workflow.approve_payslip(pending_slip.id, people["hrm"])


def test_released_payslip_is_frozen(services, people, pending_slip):
    services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    services.workflow.release_payslip(pending_slip.id, people["hrm"])

    with pytest.raises(ValidationError):
        services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    with pytest.raises(ValidationError):
        services.workflow.release_payslip(pending_slip.id, people["hrm"])
    with pytest.raises(ValidationError):
        services.payslips.recompute(pending_slip.id, 0, people["hr"])
    assert services.payslips.get(pending_slip.id).net_pay == Decimal("74850.00")


def test_stale_version_rejected(services, people, pending_slip):
    with pytest.raises(ConflictError):
        services.workflow.approve_payslip(pending_slip.id, people["hrm"],
                                          expected_version=pending_slip.version + 1)
    slip = services.workflow.approve_payslip(pending_slip.id, people["hrm"],
                                             expected_version=pending_slip.version)
    assert slip.status == "approved"


def test_audit_failure_does_not_undo_transition(services, people, pending_slip, monkeypatch):
    def boom(self, *args, **kwargs):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(AuditRecorder, "_write", boom)
    slip = services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    assert slip.status == "approved"
    assert services.payslips.get(pending_slip.id).status == "approved"
    assert AuditLog.query.filter_by(entity_type="Payslip", action="Approved").count() == 0


def test_notification_failure_does_not_undo_transition(services, people, pending_slip):
    class BrokenSender:
        def send(self, to, subject, body):
            raise OSError("smtp down")

    services.notifier.email_sender = BrokenSender()
    services.workflow.approve_payslip(pending_slip.id, people["hrm"])
    slip = services.workflow.release_payslip(pending_slip.id, people["hrm"])
    assert slip.lifecycle == "released"


def test_transition_tables():
    check_transition(CTC_TRANSITIONS, "pending", "approved", "CTC")
    check_transition(PAYSLIP_TRANSITIONS, "approved", "released", "Payslip")
    with pytest.raises(AlreadyApprovedError):
        check_transition(PAYSLIP_TRANSITIONS, "approved", "approved", "Payslip")
    with pytest.raises(ValidationError):
        check_transition(PAYSLIP_TRANSITIONS, "released", "approved", "Payslip")
    with pytest.raises(ValidationError):
        check_transition(PAYSLIP_TRANSITIONS, "pending", "released", "Payslip")


class _RecordingSession:
    def __init__(self, inner):
        self.inner = inner
        self.queried = []

    def query(self, *entities):
        self.queried.extend(entities)
        return self.inner.query(*entities)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_history_and_role_fan_out_use_the_injected_session(app, session, people):
    rec = _RecordingSession(session)
    audit = AuditRecorder(session=rec)
    audit.record("CTCStructure", 1, "Created", people["hr"].user_id)
    assert [a.action for a in audit.history("CTCStructure", 1)] == ["Created"]

    notifier = NotificationDispatcher(app.extensions["payroll_settings"], session=rec)
    assert notifier.notify_role(Role.HR_MANAGER, "Pending", "CTC awaits approval") == 1
    assert rec.queried == [AuditLog, User]


def test_mail_log_keeps_only_recent_messages():
    sender = LoggingEmailSender("payroll@example.test", keep=2)
    for n in range(3):
        sender.send("hrm@example.test", f"subject {n}", "body")
    assert [m["subject"] for m in sender.sent] == ["subject 1", "subject 2"]
