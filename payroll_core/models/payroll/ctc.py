from datetime import datetime, date

from payroll_core.common.money import total
from payroll_core.extensions import db


APPROVAL_STATUSES = ("pending", "approved")


class CTCAllowance(db.Model):
    __tablename__ = "ctc_allowances"

    id = db.Column(db.Integer, primary_key=True)
    structure_id = db.Column(db.Integer, db.ForeignKey("ctc_structures.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)


class CTCDeduction(db.Model):
    __tablename__ = "ctc_deductions"

    id = db.Column(db.Integer, primary_key=True)
    structure_id = db.Column(db.Integer, db.ForeignKey("ctc_structures.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)


class CTCStructure(db.Model):
    """
    Annual compensation (cost-to-company) for one employee over an effective window.

    The window is half-open: ``effective_from <= day < effective_to``.
    Totals are derived from the line items on every read; nothing is cached.
    """
    __tablename__ = "ctc_structures"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="RESTRICT"),
                            nullable=False, index=True)

    basic = db.Column(db.Numeric(14, 2), nullable=False)
    hra = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    effective_from = db.Column(db.Date, nullable=False)
    effective_to = db.Column(db.Date, nullable=False)

    status = db.Column(db.Enum(*APPROVAL_STATUSES, name="approval_status_enum"),
                       nullable=False, default="pending")
    supersedes_id = db.Column(db.Integer, db.ForeignKey("ctc_structures.id", ondelete="SET NULL"))

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_at = db.Column(db.DateTime)

    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    allowances = db.relationship(CTCAllowance, order_by=CTCAllowance.position,
                                 cascade="all, delete-orphan", lazy="selectin")
    deductions = db.relationship(CTCDeduction, order_by=CTCDeduction.position,
                                 cascade="all, delete-orphan", lazy="selectin")

    __table_args__ = (
        db.CheckConstraint("effective_from < effective_to", name="ck_ctc_window"),
        db.CheckConstraint("basic >= 0 AND hra >= 0", name="ck_ctc_amounts"),
        db.CheckConstraint("tax_percent >= 0 AND tax_percent <= 100", name="ck_ctc_tax_percent"),
        db.Index("ix_ctc_emp_status_window", "employee_id", "status", "effective_from"),
        # PostgreSQL also carries ex_ctc_approved_window (btree_gist EXCLUDE), created by the migration
    )

    __mapper_args__ = {"version_id_col": version}

    # ---- derived ----
    @property
    def total_allowances(self):
        return total(a.amount for a in self.allowances)

    @property
    def total_deductions(self):
        return total(d.amount for d in self.deductions)

    @property
    def gross_ctc(self):
        return total([self.basic, self.hra]) + self.total_allowances

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"

    def covers(self, day: date) -> bool:
        return self.effective_from <= day < self.effective_to

    def overlaps(self, start: date, end: date) -> bool:
        return self.effective_from < end and start < self.effective_to

    def __repr__(self) -> str:
        return (f"<CTCStructure id={self.id} employee_id={self.employee_id} "
                f"status={self.status} {self.effective_from}..{self.effective_to}>")
