# payroll_core/services/batch_assignment.py
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from payroll_core.common.errors import (
    ConflictError, NotFoundError, PersistenceError, ValidationError, translate_db_error,
)
from payroll_core.common.roles import Actor, can_author_payroll
from payroll_core.common.settings import PayrollSettings
from payroll_core.extensions import db
from .audit import AuditRecorder
from .compensation_store import CompensationStore, CompensationTemplate
from .notifications import NotificationDispatcher, notify_pending_approval

log = logging.getLogger(__name__)

CREATED = "Created"
CONFLICT = "Conflict"
ERROR = "Error"


@dataclass(frozen=True)
class BatchOutcome:
    employee_id: Any
    status: str
    message: Optional[str] = None
    structure_id: Optional[int] = None
    employee_name: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BatchAssignmentOrchestrator:
    """
    Apply one compensation template to many employees.

    Each employee is its own unit of work: committed on success, rolled back on
    failure, and reported either way. The call as a whole only fails when the
    template itself is unusable or the store cannot be reached at all.
    """

    def __init__(self, store: CompensationStore, settings: PayrollSettings,
                 audit: Optional[AuditRecorder] = None,
                 notifier: Optional[NotificationDispatcher] = None, session=None):
        self.store = store
        self.settings = settings
        self.audit = audit
        self.notifier = notifier
        self.session = session or db.session

    def assign(self, template: CompensationTemplate, employee_ids: Sequence[Any],
               actor: Actor) -> List[BatchOutcome]:
        if not employee_ids:
            raise ValidationError("At least one employee required")
        if not can_author_payroll(actor.role):
            raise ValidationError(f"Role {actor.role.value} cannot assign compensation structures")
        template.validate()
        self._ping()

        outcomes: List[BatchOutcome] = []
        for emp_id in employee_ids:
            outcomes.append(self._assign_one(template, emp_id, actor))

        created = [o for o in outcomes if o.status == CREATED]
        log.info("batch ctc assignment by user %s: %d created, %d conflict, %d error",
                 actor.user_id, len(created),
                 sum(1 for o in outcomes if o.status == CONFLICT),
                 sum(1 for o in outcomes if o.status == ERROR))
        if created and self.notifier is not None and self.settings.notify_on_batch:
            notify_pending_approval(self.notifier, "CTC Requires Approval",
                                    f"{len(created)} new CTC structure(s) are pending approval.")
        return outcomes

    def _assign_one(self, template: CompensationTemplate, emp_id: Any, actor: Actor) -> BatchOutcome:
        name = email = None
        try:
            if isinstance(emp_id, bool) or not isinstance(emp_id, int):
                raise NotFoundError(f"Employee {emp_id!r} not found")
            emp = self.store.get_employee(emp_id)
            name, email = emp.full_name, emp.email
            s = self.store.create(
                emp_id, template, actor,
                reject_pending_overlap=self.settings.batch_conflict_on_pending,
                commit=False,
            )
            self.session.commit()
            structure_id = s.id
        except ConflictError as e:
            self.session.rollback()
            return BatchOutcome(emp_id, CONFLICT, e.message, employee_name=name, email=email)
        except (NotFoundError, PersistenceError, ValidationError) as e:
            self.session.rollback()
            return BatchOutcome(emp_id, ERROR, e.message, employee_name=name, email=email)
        except SQLAlchemyError as e:
            self.session.rollback()
            log.warning("batch ctc assignment failed for employee %r: %s", emp_id, e)
            err = translate_db_error(e, "compensation structure")
            status = CONFLICT if isinstance(err, ConflictError) else ERROR
            return BatchOutcome(emp_id, status, err.message, employee_name=name, email=email)
        except Exception as e:
            self.session.rollback()
            log.exception("batch ctc assignment crashed for employee %r", emp_id)
            return BatchOutcome(emp_id, ERROR, str(e) or e.__class__.__name__,
                                employee_name=name, email=email)

        if self.audit is not None:
            self.audit.record(
                "CTCStructure", structure_id, "Created", actor.user_id,
                details=f"Batch CTC created for employee {emp_id}, effective {template.effective_from.isoformat()}",
                new_status="pending",
            )
        return BatchOutcome(emp_id, CREATED, "CTC created & pending approval",
                            structure_id=structure_id, employee_name=name, email=email)

    def _ping(self) -> None:
        try:
            self.session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError("Compensation store is unreachable", payload=str(e)) from e
