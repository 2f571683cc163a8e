from datetime import datetime

from payroll_core.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(64), nullable=False, index=True)  # CTCStructure / Payslip
    entity_id = db.Column(db.Integer, index=True)
    action = db.Column(db.String(64), nullable=False)                   # Created / Approved / Released ...
    actor_id = db.Column(db.Integer)
    old_status = db.Column(db.String(32))
    new_status = db.Column(db.String(32))
    details = db.Column(db.Text)
    performed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
