from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from payroll_core.common.errors import (
    ConflictError, NotFoundError, ValidationError, translate_db_error,
)
from payroll_core.common.money import ZERO, dec, r2, money_str
from payroll_core.common.roles import Actor, Role, can_author_payroll
from payroll_core.extensions import db
from payroll_core.models.payroll.payslip import Payslip
from .compensation_store import CompensationStore
from .payslip_compiler import compile_payslip, days_in_month

log = logging.getLogger(__name__)


def ensure_mutable(slip: Payslip) -> None:
    if slip.is_released:
        raise ValidationError(f"Payslip {slip.id} has been released and can no longer change")


class PayslipService:
    """Persistence around the compiler: one payslip per employee per month."""

    def __init__(self, store: CompensationStore, session=None):
        self.store = store
        self.session = session or db.session

    # ---- reads ----
    def get(self, payslip_id: int) -> Payslip:
        slip = self.session.get(Payslip, payslip_id)
        if slip is None:
            raise NotFoundError(f"Payslip {payslip_id} not found")
        return slip

    def find_period(self, employee_id: int, year: int, month: int) -> Optional[Payslip]:
        return (
            self.session.query(Payslip)
            .filter_by(employee_id=employee_id, year=year, month=month)
            .first()
        )

    def list_for_employee(self, employee_id: int, released_only: bool = False) -> List[Payslip]:
        q = self.session.query(Payslip).filter(Payslip.employee_id == employee_id)
        if released_only:
            q = q.filter(Payslip.is_released.is_(True))
        return q.order_by(Payslip.year.desc(), Payslip.month.desc()).all()

    def get_for_actor(self, payslip_id: int, actor: Actor) -> Payslip:
        """Employees only ever see their own released payslips; staff see everything."""
        slip = self.get(payslip_id)
        if actor.role is Role.EMPLOYEE:
            emp = self.store.get_employee(slip.employee_id)
            if not actor.owns(emp) or not slip.is_released:
                raise NotFoundError(f"Payslip {payslip_id} not found")
        return slip

    def compare_periods(self, employee_id: int, period_a: Tuple[int, int],
                        period_b: Tuple[int, int]) -> Dict[str, Any]:
        """Net pay of two released months side by side."""
        def net_of(period):
            y, m = period
            days_in_month(y, m)
            slip = self.find_period(employee_id, y, m)
            return dec(slip.net_pay) if slip is not None and slip.is_released else ZERO

        a, b = net_of(period_a), net_of(period_b)
        diff = r2(b - a)
        pct = r2(diff * Decimal(100) / a) if a else ZERO
        return {
            "period_a": {"year": period_a[0], "month": period_a[1], "total_net": money_str(a)},
            "period_b": {"year": period_b[0], "month": period_b[1], "total_net": money_str(b)},
            "difference": money_str(diff),
            "percent_change": money_str(pct),
        }

    # ---- writes ----
    def create(self, employee_id: int, year: int, month: int, lop_days: int, actor: Actor,
               override_allowances=None, override_deductions=None) -> Payslip:
        if not can_author_payroll(actor.role):
            raise ValidationError(f"Role {actor.role.value} cannot create payslips")
        days_in_month(year, month)
        self.store.get_employee(employee_id)

        existing = self.find_period(employee_id, year, month)
        if existing is not None:
            raise ConflictError(
                f"Payslip for {year}-{month:02d} already exists for employee {employee_id}",
                payload={"payslip_id": existing.id},
            )

        structure = self._structure_for(employee_id, year, month)

        draft = compile_payslip(structure, employee_id, year, month, lop_days,
                                override_allowances, override_deductions)
        if draft.snapshot_mismatch:
            log.warning("payslip %s-%02d for employee %s uses override totals; line items show CTC amounts",
                        year, month, employee_id)

        slip = Payslip(created_by_user_id=actor.user_id)
        draft.apply_to(slip)
        self.session.add(slip)
        self._commit("payslip")
        log.info("payslip #%s created for employee %s %s-%02d net=%s",
                 slip.id, employee_id, year, month, slip.net_pay)
        return slip

    def recompute(self, payslip_id: int, lop_days: int, actor: Actor,
                  override_allowances=None, override_deductions=None,
                  expected_version: Optional[int] = None) -> Payslip:
        if not can_author_payroll(actor.role):
            raise ValidationError(f"Role {actor.role.value} cannot edit payslips")
        slip = self.get(payslip_id)
        ensure_mutable(slip)
        if slip.status != "pending":
            raise ValidationError(f"Payslip {slip.id} is {slip.status}; only pending payslips can be recomputed")
        if expected_version is not None and slip.version != expected_version:
            raise ConflictError("Payslip was modified concurrently; reload and retry",
                                payload={"expected_version": expected_version, "version": slip.version})

        structure = self._structure_for(slip.employee_id, slip.year, slip.month)
        draft = compile_payslip(structure, slip.employee_id, slip.year, slip.month, lop_days,
                                override_allowances, override_deductions)
        draft.apply_to(slip)
        self._commit("payslip")
        return slip

    def _structure_for(self, employee_id: int, year: int, month: int):
        """The approved structure in force on the 1st of the period."""
        try:
            return self.store.get_active(employee_id, date(year, month, 1))
        except NotFoundError:
            raise ValidationError(
                f"No approved compensation structure covers {year}-{month:02d} for employee {employee_id}"
            ) from None

    def _commit(self, what: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise translate_db_error(e, what) from e


def payslip_to_dict(slip: Payslip) -> Dict[str, Any]:
    return {
        "id": slip.id,
        "employee_id": slip.employee_id,
        "ctc_structure_id": slip.ctc_structure_id,
        "year": slip.year,
        "month": slip.month,
        "basic": money_str(slip.basic),
        "hra": money_str(slip.hra),
        "allowances": [{"label": a.label, "amount": money_str(a.amount)} for a in slip.allowance_items],
        "deductions": [{"label": d.label, "amount": money_str(d.amount)} for d in slip.deduction_items],
        "total_allowances": money_str(slip.total_allowances),
        "total_deductions": money_str(slip.total_deductions),
        "tax_deducted": money_str(slip.tax_deducted),
        "lop_days": slip.lop_days,
        "net_pay": money_str(slip.net_pay),
        "status": slip.status,
        "is_released": bool(slip.is_released),
        "lifecycle": slip.lifecycle,
        "approved_at": slip.approved_at.isoformat() if slip.approved_at else None,
        "released_at": slip.released_at.isoformat() if slip.released_at else None,
        "version": slip.version,
    }
