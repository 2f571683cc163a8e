"""
Lifecycle of compensation structures and payslips.

    CTC structure:  pending -> approved
    Payslip:        pending -> approved -> released   (released is terminal)

There is no rejected state for either; nothing ever moves backwards.

Every transition commits first, then writes the audit row and sends
notifications. Those side effects are best-effort: when they fail the
transition still stands.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy.exc import SQLAlchemyError

from payroll_core.common.errors import (
    AlreadyApprovedError, ConflictError, ValidationError, translate_db_error,
)
from payroll_core.common.roles import Actor
from payroll_core.extensions import db
from payroll_core.models.payroll.ctc import CTCStructure
from payroll_core.models.payroll.payslip import Payslip
from payroll_core.models.user import User
from .audit import AuditRecorder
from .compensation_store import CompensationStore, CompensationTemplate
from .notifications import NotificationDispatcher, notify_pending_approval
from .payslip_service import PayslipService

log = logging.getLogger(__name__)

CTC_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"approved"}),
    "approved": frozenset(),
}

PAYSLIP_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"approved"}),
    "approved": frozenset({"released"}),
    "released": frozenset(),
}


def check_transition(table: Dict[str, FrozenSet[str]], current: str, target: str, what: str) -> None:
    if target not in table.get(current, frozenset()):
        if current == target == "approved":
            raise AlreadyApprovedError(f"{what} is already approved")
        raise ValidationError(f"{what} cannot move from {current} to {target}")


class ApprovalWorkflow:
    def __init__(self, store: CompensationStore, payslips: PayslipService,
                 audit: AuditRecorder, notifier: NotificationDispatcher, session=None):
        self.store = store
        self.payslips = payslips
        self.audit = audit
        self.notifier = notifier
        self.session = session or db.session

    # ---------- compensation structures ----------
    def submit_structure(self, employee_id: int, template: CompensationTemplate, actor: Actor) -> CTCStructure:
        """HR creates a structure; it enters the workflow as pending."""
        s = self.store.create(employee_id, template, actor)
        self.audit.record(
            "CTCStructure", s.id, "Created", actor.user_id,
            details=f"CTC created for employee {employee_id}, effective {s.effective_from.isoformat()}",
            new_status="pending",
        )
        emp = self.store.get_employee(employee_id)
        notify_pending_approval(self.notifier, "CTC Requires Approval",
                                f"A new CTC for {emp.full_name} is pending approval.")
        return s

    def submit_superseding_structure(self, structure_id: int, template: CompensationTemplate,
                                     actor: Actor) -> CTCStructure:
        s = self.store.supersede(structure_id, template, actor)
        self.audit.record(
            "CTCStructure", s.id, "Created", actor.user_id,
            details=f"Supersedes structure {structure_id} from {s.effective_from.isoformat()}",
            new_status="pending",
        )
        notify_pending_approval(self.notifier, "CTC Requires Approval",
                                f"A revised CTC for employee {s.employee_id} is pending approval.")
        return s

    def approve_structure(self, structure_id: int, actor: Actor,
                          expected_version: Optional[int] = None) -> CTCStructure:
        self._require_manager(actor, "approve compensation structures")
        s = self.store.get(structure_id)
        old = s.status
        check_transition(CTC_TRANSITIONS, old, "approved", f"Compensation structure {s.id}")
        superseded = s.supersedes_id

        s = self.store.approve(structure_id, actor, expected_version=expected_version)

        self.audit.record(
            "CTCStructure", s.id, "Approved", actor.user_id,
            details=f"CTC effective {s.effective_from.isoformat()} approved for employee {s.employee_id}",
            old_status=old, new_status="approved",
        )
        if superseded:
            self.audit.record(
                "CTCStructure", superseded, "Superseded", actor.user_id,
                details=f"Window closed at {s.effective_from.isoformat()} by structure {s.id}",
            )

        emp = self.store.get_employee(s.employee_id)
        when = s.effective_from.strftime("%d-%b-%Y")
        self.notifier.notify(emp.user_id, "CTC Status Updated",
                             f"Your CTC effective {when} was approved.", email=emp.email)
        if s.created_by_user_id and s.created_by_user_id != actor.user_id:
            creator = self.session.get(User, s.created_by_user_id)
            self.notifier.notify_user(creator, "CTC Review Completed",
                                      f"The CTC you created for {emp.full_name} effective {when} was approved.")
        return s

    # ---------- payslips ----------
    def submit_payslip(self, employee_id: int, year: int, month: int, lop_days: int, actor: Actor,
                       override_allowances=None, override_deductions=None) -> Payslip:
        slip = self.payslips.create(employee_id, year, month, lop_days, actor,
                                    override_allowances=override_allowances,
                                    override_deductions=override_deductions)
        self.audit.record(
            "Payslip", slip.id, "Created", actor.user_id,
            details=f"Payslip {month}/{year} created for employee {employee_id}",
            new_status="pending",
        )
        notify_pending_approval(self.notifier, "Payslip Requires Approval",
                                f"Payslip for employee {employee_id} ({month}/{year}) awaits approval.")
        return slip

    def approve_payslip(self, payslip_id: int, actor: Actor,
                        expected_version: Optional[int] = None) -> Payslip:
        self._require_manager(actor, "approve payslips")
        slip = self._load_for_transition(payslip_id, expected_version)
        old = slip.lifecycle
        check_transition(PAYSLIP_TRANSITIONS, old, "approved", f"Payslip {slip.id}")

        slip.status = "approved"
        slip.approved_by_user_id = actor.user_id
        slip.approved_at = datetime.utcnow()
        self._commit("payslip")

        self.audit.record(
            "Payslip", slip.id, "Approved", actor.user_id,
            details=f"Payslip {slip.month}/{slip.year} approved for employee {slip.employee_id}",
            old_status=old, new_status="approved",
        )
        if slip.created_by_user_id and slip.created_by_user_id != actor.user_id:
            creator = self.session.get(User, slip.created_by_user_id)
            self.notifier.notify_user(creator, "Payslip Status Updated",
                                      f"The payslip for employee {slip.employee_id} "
                                      f"({slip.month}/{slip.year}) was approved.")
        return slip

    def release_payslip(self, payslip_id: int, actor: Actor,
                        expected_version: Optional[int] = None) -> Payslip:
        self._require_manager(actor, "release payslips")
        slip = self._load_for_transition(payslip_id, expected_version)
        old = slip.lifecycle
        if old == "pending":
            raise ValidationError("Payslip must be approved before release")
        check_transition(PAYSLIP_TRANSITIONS, old, "released", f"Payslip {slip.id}")

        slip.is_released = True
        slip.released_by_user_id = actor.user_id
        slip.released_at = datetime.utcnow()
        self._commit("payslip")
        log.info("payslip #%s released by user %s", slip.id, actor.user_id)

        self.audit.record(
            "Payslip", slip.id, "Released", actor.user_id,
            details=f"Payslip {slip.month}/{slip.year} released for employee {slip.employee_id}",
            old_status=old, new_status="released",
        )
        emp = self.store.get_employee(slip.employee_id)
        self.notifier.notify(emp.user_id, "New Payslip Released",
                             f"Payslip for {slip.month}/{slip.year} is now available.", email=emp.email)
        return slip

    # ---------- helpers ----------
    def _require_manager(self, actor: Actor, what: str) -> None:
        if not actor.manager_capable:
            raise ValidationError(f"Role {actor.role.value} cannot {what}")

    def _load_for_transition(self, payslip_id: int, expected_version: Optional[int]) -> Payslip:
        slip = self.payslips.get(payslip_id)
        if slip.is_released:
            raise ValidationError(f"Payslip {slip.id} has been released and can no longer change")
        if expected_version is not None and slip.version != expected_version:
            raise ConflictError("Payslip was modified concurrently; reload and retry",
                                payload={"expected_version": expected_version, "version": slip.version})
        return slip

    def _commit(self, what: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise translate_db_error(e, what) from e
