from datetime import datetime

from payroll_core.common.money import total
from payroll_core.extensions import db
from .ctc import APPROVAL_STATUSES


class PayslipAllowance(db.Model):
    __tablename__ = "payslip_allowances"

    id = db.Column(db.Integer, primary_key=True)
    payslip_id = db.Column(db.Integer, db.ForeignKey("payslips.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)


class PayslipDeduction(db.Model):
    __tablename__ = "payslip_deductions"

    id = db.Column(db.Integer, primary_key=True)
    payslip_id = db.Column(db.Integer, db.ForeignKey("payslips.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)


class Payslip(db.Model):
    __tablename__ = "payslips"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="RESTRICT"),
                            nullable=False, index=True)
    ctc_structure_id = db.Column(db.Integer, db.ForeignKey("ctc_structures.id", ondelete="SET NULL"))

    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)  # 1-12

    # monthly figures (snapshot, not live)
    basic = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    hra = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_deducted = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    lop_days = db.Column(db.Integer, nullable=False, default=0)
    net_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    status = db.Column(db.Enum(*APPROVAL_STATUSES, name="approval_status_enum"),
                       nullable=False, default="pending")
    is_released = db.Column(db.Boolean, nullable=False, default=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_at = db.Column(db.DateTime)
    released_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    released_at = db.Column(db.DateTime)

    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    allowance_items = db.relationship(PayslipAllowance, order_by=PayslipAllowance.position,
                                      cascade="all, delete-orphan", lazy="selectin")
    deduction_items = db.relationship(PayslipDeduction, order_by=PayslipDeduction.position,
                                      cascade="all, delete-orphan", lazy="selectin")

    __table_args__ = (
        db.UniqueConstraint("employee_id", "year", "month", name="uq_payslip_emp_period"),
        db.CheckConstraint("month >= 1 AND month <= 12", name="ck_payslip_month"),
        db.CheckConstraint("lop_days >= 0 AND lop_days <= 31", name="ck_payslip_lop_days"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def lifecycle(self) -> str:
        if self.is_released:
            return "released"
        return self.status

    @property
    def total_allowances(self):
        return total(a.amount for a in self.allowance_items)

    @property
    def total_deductions(self):
        return total(d.amount for d in self.deduction_items)

    def __repr__(self) -> str:
        return f"<Payslip id={self.id} employee_id={self.employee_id} {self.year}-{self.month:02d} {self.lifecycle}>"
