from datetime import datetime

from payroll_core.common.roles import Role
from payroll_core.extensions import db


class User(db.Model):
    """Identity record. Credentials live with the identity provider, not here."""
    __tablename__ = "users"

    id        = db.Column(db.Integer, primary_key=True)
    email     = db.Column(db.String(255), unique=True, index=True, nullable=False)
    full_name = db.Column(db.String(255), nullable=False)
    role      = db.Column(
        db.Enum(Role, name="user_role_enum", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=Role.EMPLOYEE,
    )
    is_active  = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"
