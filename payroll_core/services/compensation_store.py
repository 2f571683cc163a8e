# payroll_core/services/compensation_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import lazyload

from payroll_core.common.errors import (
    AlreadyApprovedError, ConflictError, NotFoundError, ValidationError, translate_db_error,
)
from payroll_core.common.money import is_blank, parse_dec, r2, total
from payroll_core.common.roles import Actor, can_author_payroll
from payroll_core.common.settings import PayrollSettings
from payroll_core.extensions import db
from payroll_core.models.employee import Employee
from payroll_core.models.payroll.ctc import CTCStructure, CTCAllowance, CTCDeduction

log = logging.getLogger(__name__)

MAX_HRA_RATIO = Decimal("0.5")


# ---------- template (the terms HR types in) ----------

@dataclass(frozen=True)
class LineItem:
    label: str
    amount: Decimal


def _d(s) -> Optional[date]:
    if is_blank(s):
        return None
    if isinstance(s, datetime):
        return s.date()
    if isinstance(s, date):
        return s
    try:
        return date.fromisoformat(str(s).strip()[:10])
    except ValueError:
        return None


def _amount(raw, name: str) -> Optional[Decimal]:
    """None when absent or blank; anything else must be a finite number."""
    if is_blank(raw):
        return None
    v = parse_dec(raw)
    if v is None:
        raise ValidationError(f"{name} is not a valid amount: {raw!r}")
    return v


def _date(raw, name: str) -> Optional[date]:
    if is_blank(raw):
        return None
    v = _d(raw)
    if v is None:
        raise ValidationError(f"{name} is not a valid date (YYYY-MM-DD): {raw!r}")
    return v


def _finite(value, name: str) -> Decimal:
    v = value if isinstance(value, Decimal) else parse_dec(value)
    if v is None or not v.is_finite():
        raise ValidationError(f"{name} is not a valid amount: {value!r}")
    return v


def _lines(raw: Optional[Iterable], kind: str) -> Tuple[LineItem, ...]:
    out = []
    for i, item in enumerate(raw or []):
        if isinstance(item, LineItem):
            out.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationError(f"{kind} #{i + 1} must be an object with label and amount")
        amount = _amount(item.get("amount"), f"{kind} #{i + 1} amount")
        if amount is None:
            raise ValidationError(f"{kind} #{i + 1} has no amount")
        out.append(LineItem(label=str(item.get("label") or "").strip(), amount=amount))
    return tuple(out)


@dataclass(frozen=True)
class CompensationTemplate:
    """Annual compensation terms, independent of any employee."""
    basic: Decimal
    hra: Decimal
    effective_from: date
    tax_percent: Decimal = Decimal("0")
    allowances: Tuple[LineItem, ...] = field(default_factory=tuple)
    deductions: Tuple[LineItem, ...] = field(default_factory=tuple)
    effective_to: Optional[date] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CompensationTemplate":
        """Build from the API request shape (camelCase or snake_case keys)."""
        def pick(*keys):
            for k in keys:
                if k in data:
                    return data[k]
            return None

        basic = _amount(pick("basic"), "basic")
        hra = _amount(pick("hra", "HRA"), "hra")
        tax = _amount(pick("tax_percent", "taxPercent"), "tax_percent")
        eff_from = _date(pick("effective_from", "effectiveFrom"), "effective_from")
        eff_to = _date(pick("effective_to", "effectiveTo"), "effective_to")
        if basic is None:
            raise ValidationError("basic is required")
        if eff_from is None:
            raise ValidationError("effective_from is required (YYYY-MM-DD)")
        return cls(
            basic=basic,
            hra=hra if hra is not None else Decimal("0"),
            tax_percent=tax if tax is not None else Decimal("0"),
            allowances=_lines(pick("allowances", "allowance_items", "allowanceItems"), "Allowance"),
            deductions=_lines(pick("deductions", "deduction_items", "deductionItems"), "Deduction"),
            effective_from=eff_from,
            effective_to=eff_to,
        )

    @property
    def gross_ctc(self) -> Decimal:
        return total([self.basic, self.hra]) + total(a.amount for a in self.allowances)

    def validate(self) -> "CompensationTemplate":
        if self.effective_from is None:
            raise ValidationError("effective_from is required")
        basic = _finite(self.basic, "basic")
        hra = _finite(self.hra, "hra")
        if basic <= 0:
            raise ValidationError("Basic pay must be greater than 0")
        if hra < 0:
            raise ValidationError("HRA cannot be negative")
        if hra > basic * MAX_HRA_RATIO:
            raise ValidationError("HRA cannot exceed 50% of Basic")
        tax = _finite(self.tax_percent, "tax_percent")
        if tax < 0 or tax > 100:
            raise ValidationError("Tax percent must be between 0 and 100")
        if self.effective_to is not None and self.effective_to <= self.effective_from:
            raise ValidationError("effective_to must be after effective_from")
        for kind, items in (("allowance", self.allowances), ("deduction", self.deductions)):
            seen = set()
            for it in items:
                if not it.label:
                    raise ValidationError(f"Every {kind} needs a label")
                if _finite(it.amount, f"{kind} {it.label!r}") < 0:
                    raise ValidationError(f"{kind.capitalize()} {it.label!r} cannot be negative")
                key = it.label.lower()
                if key in seen:
                    raise ValidationError(f"Duplicate {kind} labels not allowed ({it.label!r})")
                seen.add(key)
        return self


def add_years(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        # 29 Feb -> 28 Feb
        return d.replace(year=d.year + years, day=28)


# ---------- store ----------

class CompensationStore:
    """
    Owns CompensationStructure rows.

    Each mutating call is one unit of work: it commits on success and rolls
    back on failure, unless the caller passes ``commit=False`` and takes over.
    """

    def __init__(self, settings: PayrollSettings, session=None):
        self.settings = settings
        self.session = session or db.session

    # ---- reads ----
    def get(self, structure_id: int) -> CTCStructure:
        s = self.session.get(CTCStructure, structure_id)
        if s is None:
            raise NotFoundError(f"Compensation structure {structure_id} not found")
        return s

    def get_employee(self, employee_id: int) -> Employee:
        emp = self.session.get(Employee, employee_id)
        if emp is None:
            raise NotFoundError(f"Employee {employee_id} not found")
        return emp

    def lock_employee(self, employee_id: int) -> Employee:
        """
        Load the employee with a row lock held until commit/rollback.

        Every write that checks for overlapping approved windows takes this lock
        first, so two approvals for the same employee run one after the other.
        SQLite has no row locks; the clause is simply not rendered there.
        """
        emp = (
            self.session.query(Employee)
            .options(lazyload(Employee.department))
            .filter(Employee.id == employee_id)
            .with_for_update()
            .one_or_none()
        )
        if emp is None:
            raise NotFoundError(f"Employee {employee_id} not found")
        return emp

    def get_active(self, employee_id: int, as_of: date) -> CTCStructure:
        """The approved structure whose window contains ``as_of``."""
        rows = (
            self.session.query(CTCStructure)
            .filter(
                CTCStructure.employee_id == employee_id,
                CTCStructure.status == "approved",
                CTCStructure.effective_from <= as_of,
                CTCStructure.effective_to > as_of,
            )
            .order_by(CTCStructure.effective_from.desc(), CTCStructure.id.desc())
            .all()
        )
        if not rows:
            raise NotFoundError(f"No approved compensation structure for employee {employee_id} on {as_of}")
        if len(rows) > 1:
            log.warning("employee %s has %d approved structures covering %s; using #%s",
                        employee_id, len(rows), as_of, rows[0].id)
        return rows[0]

    def list_for_employee(self, employee_id: int) -> List[CTCStructure]:
        return (
            self.session.query(CTCStructure)
            .filter_by(employee_id=employee_id)
            .order_by(CTCStructure.effective_from.desc(), CTCStructure.id.desc())
            .all()
        )

    def overlapping(self, employee_id: int, start: date, end: date,
                    statuses: Sequence[str] = ("approved",),
                    exclude_ids: Iterable[Optional[int]] = ()) -> List[CTCStructure]:
        q = self.session.query(CTCStructure).filter(
            CTCStructure.employee_id == employee_id,
            CTCStructure.status.in_(list(statuses)),
            CTCStructure.effective_from < end,
            CTCStructure.effective_to > start,
        )
        excluded = [i for i in exclude_ids if i is not None]
        if excluded:
            q = q.filter(CTCStructure.id.notin_(excluded))
        return q.order_by(CTCStructure.effective_from.asc()).all()

    # ---- writes ----
    def create(self, employee_id: int, template: CompensationTemplate, actor: Actor,
               reject_pending_overlap: bool = False, supersedes_id: Optional[int] = None,
               commit: bool = True) -> CTCStructure:
        if not can_author_payroll(actor.role):
            raise ValidationError(f"Role {actor.role.value} cannot create compensation structures")
        template.validate()
        self.lock_employee(employee_id)

        start = template.effective_from
        end = template.effective_to or add_years(start, self.settings.ctc_validity_years)

        clash = self.overlapping(employee_id, start, end, ("approved",), exclude_ids=[supersedes_id])
        if clash:
            raise self._conflict(
                "Employee already has an approved compensation structure overlapping this period",
                payload={"conflicting_ids": [c.id for c in clash]},
            )
        if reject_pending_overlap:
            pending = self.overlapping(employee_id, start, end, ("pending",))
            if pending:
                raise self._conflict(
                    "Employee already has a pending compensation structure overlapping this period",
                    payload={"conflicting_ids": [c.id for c in pending]},
                )

        s = CTCStructure(
            employee_id=employee_id,
            status="pending",
            effective_from=start,
            effective_to=end,
            supersedes_id=supersedes_id,
            created_by_user_id=actor.user_id,
        )
        self._apply_terms(s, template)
        self.session.add(s)
        self._finish(commit, "compensation structure")
        log.info("ctc #%s created for employee %s (%s..%s) by user %s",
                 s.id, employee_id, start, end, actor.user_id)
        return s

    def update_pending(self, structure_id: int, template: CompensationTemplate, actor: Actor) -> CTCStructure:
        if not can_author_payroll(actor.role):
            raise ValidationError(f"Role {actor.role.value} cannot edit compensation structures")
        template.validate()
        s = self.get(structure_id)
        if s.status != "pending":
            raise ValidationError("Approved compensation terms are immutable; supersede the structure instead")

        end = template.effective_to or add_years(template.effective_from, self.settings.ctc_validity_years)
        self.lock_employee(s.employee_id)
        clash = self.overlapping(s.employee_id, template.effective_from, end, ("approved",),
                                 exclude_ids=[s.id, s.supersedes_id])
        if clash:
            raise self._conflict(
                "Employee already has an approved compensation structure overlapping this period",
                payload={"conflicting_ids": [c.id for c in clash]},
            )
        s.effective_from = template.effective_from
        s.effective_to = end
        self._apply_terms(s, template)
        self._finish(True, "compensation structure")
        return s

    def supersede(self, structure_id: int, template: CompensationTemplate, actor: Actor) -> CTCStructure:
        """Queue a new version of an approved structure; takes effect when approved."""
        current = self.get(structure_id)
        if current.status != "approved":
            raise ValidationError("Only an approved compensation structure can be superseded")
        template.validate()
        if template.effective_from <= current.effective_from:
            raise ValidationError(
                f"A superseding structure must start after {current.effective_from.isoformat()}"
            )
        return self.create(current.employee_id, template, actor,
                           reject_pending_overlap=True, supersedes_id=current.id)

    def approve(self, structure_id: int, actor: Actor, expected_version: Optional[int] = None) -> CTCStructure:
        if not actor.manager_capable:
            raise ValidationError(f"Role {actor.role.value} cannot approve compensation structures")
        s = self.get(structure_id)
        if expected_version is not None and s.version != expected_version:
            raise ConflictError("Compensation structure was modified concurrently; reload and retry",
                                payload={"expected_version": expected_version, "version": s.version})
        if s.status == "approved":
            raise AlreadyApprovedError(f"Compensation structure {s.id} is already approved")
        if s.status != "pending":
            raise ValidationError(f"Compensation structure {s.id} is {s.status}, not pending")

        self.lock_employee(s.employee_id)
        clash = self.overlapping(s.employee_id, s.effective_from, s.effective_to, ("approved",),
                                 exclude_ids=[s.id, s.supersedes_id])
        if clash:
            raise self._conflict(
                "Another approved compensation structure overlaps this period",
                payload={"conflicting_ids": [c.id for c in clash]},
            )

        if s.supersedes_id:
            prev = self.get(s.supersedes_id)
            if prev.status != "approved":
                raise self._conflict(f"Superseded structure {prev.id} is no longer approved")
            if prev.effective_to > s.effective_from:
                prev.effective_to = s.effective_from

        s.status = "approved"
        s.approved_by_user_id = actor.user_id
        s.approved_at = datetime.utcnow()
        self._finish(True, "compensation structure")
        log.info("ctc #%s approved by user %s", s.id, actor.user_id)
        return s

    # ---- helpers ----
    def _apply_terms(self, s: CTCStructure, template: CompensationTemplate) -> None:
        s.basic = r2(template.basic)
        s.hra = r2(template.hra)
        s.tax_percent = r2(template.tax_percent)
        s.allowances = [CTCAllowance(position=i, label=a.label, amount=r2(a.amount))
                        for i, a in enumerate(template.allowances)]
        s.deductions = [CTCDeduction(position=i, label=d.label, amount=r2(d.amount))
                        for i, d in enumerate(template.deductions)]

    def _conflict(self, message: str, payload=None) -> ConflictError:
        # releases the employee row lock taken before the overlap check
        self.session.rollback()
        return ConflictError(message, payload=payload)

    def _finish(self, commit: bool, what: str) -> None:
        try:
            if commit:
                self.session.commit()
            else:
                self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise translate_db_error(e, what) from e


def structure_to_dict(s: CTCStructure) -> Dict[str, Any]:
    return {
        "id": s.id,
        "employee_id": s.employee_id,
        "basic": str(r2(s.basic)),
        "hra": str(r2(s.hra)),
        "tax_percent": str(r2(s.tax_percent)),
        "allowances": [{"label": a.label, "amount": str(r2(a.amount))} for a in s.allowances],
        "deductions": [{"label": d.label, "amount": str(r2(d.amount))} for d in s.deductions],
        "total_allowances": str(r2(s.total_allowances)),
        "total_deductions": str(r2(s.total_deductions)),
        "gross_ctc": str(r2(s.gross_ctc)),
        "effective_from": s.effective_from.isoformat() if s.effective_from else None,
        "effective_to": s.effective_to.isoformat() if s.effective_to else None,
        "status": s.status,
        "supersedes_id": s.supersedes_id,
        "created_by_user_id": s.created_by_user_id,
        "approved_by_user_id": s.approved_by_user_id,
        "approved_at": s.approved_at.isoformat() if s.approved_at else None,
        "version": s.version,
    }
