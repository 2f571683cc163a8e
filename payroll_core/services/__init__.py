# payroll_core/services/__init__.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from payroll_core.common.settings import PayrollSettings
from .audit import AuditRecorder
from .approval_workflow import ApprovalWorkflow
from .batch_assignment import BatchAssignmentOrchestrator
from .compensation_store import CompensationStore
from .notifications import NotificationDispatcher
from .payslip_service import PayslipService


@dataclass
class PayrollServices:
    settings: PayrollSettings
    store: CompensationStore
    payslips: PayslipService
    audit: AuditRecorder
    notifier: NotificationDispatcher
    workflow: ApprovalWorkflow
    batch: BatchAssignmentOrchestrator


def build_services(settings: PayrollSettings, session=None, email_sender=None,
                   audit: Optional[AuditRecorder] = None) -> PayrollServices:
    """Wire the collaborators together; ``settings`` comes from ``PayrollSettings.from_config``."""
    store = CompensationStore(settings, session=session)
    payslips = PayslipService(store, session=session)
    audit = audit or AuditRecorder(session=session)
    notifier = NotificationDispatcher(settings, email_sender=email_sender, session=session)
    workflow = ApprovalWorkflow(store, payslips, audit, notifier, session=session)
    batch = BatchAssignmentOrchestrator(store, settings, audit=audit, notifier=notifier, session=session)
    return PayrollServices(settings, store, payslips, audit, notifier, workflow, batch)
