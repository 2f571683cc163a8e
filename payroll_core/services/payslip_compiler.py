"""
Monthly payslip computation from an approved annual compensation structure.

Everything in here is a pure function of its inputs: no session, no clock, no
config. Persisting the result is the caller's job (see ``payslip_service``).

Conventions:
  * every intermediate figure is rounded to cents, half-up, as soon as it is
    produced;
  * loss-of-pay is prorated over a fixed 30-day month whatever the calendar
    month length is (business policy);
  * per-line snapshots are always derived from the structure's own line
    amounts. When an override total is supplied the lines no longer add up to
    the figure used in the computation; the draft says so via
    ``snapshot_mismatch``.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from payroll_core.common.errors import ValidationError
from payroll_core.common.money import ZERO, dec, parse_dec, r2, total, money_str

MONTHS_PER_YEAR = Decimal(12)
LOP_DAYS_PER_MONTH = Decimal(30)
LOP_LABEL = "LOP"


@dataclass(frozen=True)
class PayslipLine:
    label: str
    amount: Decimal


@dataclass(frozen=True)
class PayslipDraft:
    employee_id: int
    year: int
    month: int
    ctc_structure_id: Optional[int]
    basic: Decimal
    hra: Decimal
    allowance_items: List[PayslipLine]
    deduction_items: List[PayslipLine]
    tax_deducted: Decimal
    lop_days: int
    net_pay: Decimal
    status: str = "pending"
    is_released: bool = False
    snapshot_mismatch: bool = False
    allowance_override: Optional[Decimal] = None
    deduction_override: Optional[Decimal] = None
    breakdown: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in ("basic", "hra", "tax_deducted", "net_pay", "allowance_override", "deduction_override"):
            out[key] = money_str(out[key])
        out["allowance_items"] = [{"label": x.label, "amount": money_str(x.amount)} for x in self.allowance_items]
        out["deduction_items"] = [{"label": x.label, "amount": money_str(x.amount)} for x in self.deduction_items]
        out["breakdown"] = {k: money_str(v) for k, v in self.breakdown.items()}
        return out

    def apply_to(self, payslip) -> None:
        """Copy the computed figures onto a Payslip row (new or pending)."""
        from payroll_core.models.payroll.payslip import PayslipAllowance, PayslipDeduction

        payslip.employee_id = self.employee_id
        payslip.year = self.year
        payslip.month = self.month
        payslip.ctc_structure_id = self.ctc_structure_id
        payslip.basic = self.basic
        payslip.hra = self.hra
        payslip.tax_deducted = self.tax_deducted
        payslip.lop_days = self.lop_days
        payslip.net_pay = self.net_pay
        payslip.status = self.status
        payslip.is_released = self.is_released
        payslip.allowance_items = [
            PayslipAllowance(position=i, label=x.label, amount=x.amount)
            for i, x in enumerate(self.allowance_items)
        ]
        payslip.deduction_items = [
            PayslipDeduction(position=i, label=x.label, amount=x.amount)
            for i, x in enumerate(self.deduction_items)
        ]


def days_in_month(year: int, month: int) -> int:
    if not isinstance(month, int) or month < 1 or month > 12:
        raise ValidationError(f"Month must be 1-12, got {month!r}")
    if not isinstance(year, int) or year < 1 or year > 9999:
        raise ValidationError(f"Year out of range: {year!r}")
    return calendar.monthrange(year, month)[1]


def _check_override(name: str, value) -> Optional[Decimal]:
    if value is None:
        return None
    v = value if isinstance(value, Decimal) else parse_dec(value)
    if v is None or not v.is_finite():
        raise ValidationError(f"{name} is not a valid amount: {value!r}")
    if v < 0:
        raise ValidationError(f"{name} cannot be negative")
    return v


def _monthly_lines(lines) -> List[PayslipLine]:
    return [PayslipLine(label=x.label, amount=r2(dec(x.amount) / MONTHS_PER_YEAR)) for x in lines]


def compile_payslip(structure, employee_id: int, year: int, month: int, lop_days: int = 0,
                    override_allowances=None, override_deductions=None) -> PayslipDraft:
    """Turn an approved CTC structure into a pending payslip draft for (year, month)."""
    if structure is None:
        raise ValidationError("A compensation structure is required")
    if structure.status != "approved":
        raise ValidationError("Compensation structure is not approved",
                              payload={"ctc_structure_id": structure.id, "status": structure.status})
    if structure.employee_id != employee_id:
        raise ValidationError("Compensation structure belongs to a different employee",
                              payload={"ctc_structure_id": structure.id, "employee_id": employee_id})

    month_days = days_in_month(year, month)
    if isinstance(lop_days, bool) or not isinstance(lop_days, int):
        raise ValidationError(f"LOP days must be a whole number, got {lop_days!r}")
    if lop_days < 0:
        raise ValidationError("LOP days cannot be negative")
    if lop_days > month_days:
        raise ValidationError(f"LOP days cannot exceed {month_days} for {year}-{month:02d}")

    allowance_override = _check_override("Allowance override", override_allowances)
    deduction_override = _check_override("Deduction override", override_deductions)

    monthly_basic = r2(dec(structure.basic) / MONTHS_PER_YEAR)
    monthly_hra = r2(dec(structure.hra) / MONTHS_PER_YEAR)

    total_allowances = r2(allowance_override if allowance_override is not None
                          else total(a.amount for a in structure.allowances))
    total_deductions = r2(deduction_override if deduction_override is not None
                          else total(d.amount for d in structure.deductions))
    monthly_allowances = r2(total_allowances / MONTHS_PER_YEAR)
    monthly_deductions = r2(total_deductions / MONTHS_PER_YEAR)

    total_payable = r2(monthly_basic + monthly_hra + monthly_allowances)
    daily_rate = r2(total_payable / LOP_DAYS_PER_MONTH)
    # prorate from the payable total, not the rounded daily rate
    lop_amount = r2(total_payable * lop_days / LOP_DAYS_PER_MONTH)

    pre_tax = r2(max(ZERO, total_payable - lop_amount - monthly_deductions))
    tax = r2(pre_tax * dec(structure.tax_percent) / Decimal(100))
    net = r2(pre_tax - tax)

    allowance_items = _monthly_lines(structure.allowances)
    deduction_items = _monthly_lines(structure.deductions)
    if lop_amount > 0:
        deduction_items.append(PayslipLine(label=LOP_LABEL, amount=lop_amount))

    return PayslipDraft(
        employee_id=employee_id,
        year=year,
        month=month,
        ctc_structure_id=structure.id,
        basic=monthly_basic,
        hra=monthly_hra,
        allowance_items=allowance_items,
        deduction_items=deduction_items,
        tax_deducted=tax,
        lop_days=lop_days,
        net_pay=net,
        snapshot_mismatch=allowance_override is not None or deduction_override is not None,
        allowance_override=allowance_override,
        deduction_override=deduction_override,
        breakdown={
            "monthly_basic": monthly_basic,
            "monthly_hra": monthly_hra,
            "total_allowances": total_allowances,
            "total_deductions": total_deductions,
            "monthly_allowances": monthly_allowances,
            "monthly_deductions": monthly_deductions,
            "total_payable": total_payable,
            "daily_rate": daily_rate,
            "lop_amount": lop_amount,
            "pre_tax": pre_tax,
            "tax": tax,
            "net": net,
        },
    )
