"""initial payroll core schema: users, employees, ctc structures, payslips, audit, notifications

Revision ID: 3f1a9c2d7b10
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ROLE_ENUM = sa.Enum('admin', 'hr', 'hr_manager', 'employee', name='user_role_enum')
APPROVAL_ENUM = sa.Enum('pending', 'approved', name='approval_status_enum')


def _line_table(name: str, parent: str, fk_col: str) -> None:
    op.create_table(
        name,
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(fk_col, sa.Integer(), sa.ForeignKey(f'{parent}.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('label', sa.String(length=120), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
    )
    op.create_index(f'ix_{name}_{fk_col}', name, [fk_col])


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('role', ROLE_ENUM, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('code', sa.String(length=32), nullable=False, unique=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_emp_dept_id', 'employees', ['department_id'])

    op.create_table(
        'ctc_structures',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('basic', sa.Numeric(14, 2), nullable=False),
        sa.Column('hra', sa.Numeric(14, 2), nullable=False),
        sa.Column('tax_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=False),
        sa.Column('status', APPROVAL_ENUM, nullable=False),
        sa.Column('supersedes_id', sa.Integer(), sa.ForeignKey('ctc_structures.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('effective_from < effective_to', name='ck_ctc_window'),
        sa.CheckConstraint('basic >= 0 AND hra >= 0', name='ck_ctc_amounts'),
        sa.CheckConstraint('tax_percent >= 0 AND tax_percent <= 100', name='ck_ctc_tax_percent'),
    )
    op.create_index('ix_ctc_structures_employee_id', 'ctc_structures', ['employee_id'])
    op.create_index('ix_ctc_emp_status_window', 'ctc_structures', ['employee_id', 'status', 'effective_from'])
    if op.get_bind().dialect.name == 'postgresql':
        # at most one approved structure per employee on any date
        op.execute('CREATE EXTENSION IF NOT EXISTS btree_gist')
        op.execute(
            "ALTER TABLE ctc_structures ADD CONSTRAINT ex_ctc_approved_window "
            "EXCLUDE USING gist (employee_id WITH =, daterange(effective_from, effective_to, '[)') WITH &&) "
            "WHERE (status = 'approved') DEFERRABLE INITIALLY DEFERRED"
        )
    _line_table('ctc_allowances', 'ctc_structures', 'structure_id')
    _line_table('ctc_deductions', 'ctc_structures', 'structure_id')

    op.create_table(
        'payslips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('ctc_structure_id', sa.Integer(), sa.ForeignKey('ctc_structures.id', ondelete='SET NULL'), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('basic', sa.Numeric(14, 2), nullable=False),
        sa.Column('hra', sa.Numeric(14, 2), nullable=False),
        sa.Column('tax_deducted', sa.Numeric(14, 2), nullable=False),
        sa.Column('lop_days', sa.Integer(), nullable=False),
        sa.Column('net_pay', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', postgresql.ENUM('pending', 'approved', name='approval_status_enum', create_type=False), nullable=False),
        sa.Column('is_released', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('released_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('employee_id', 'year', 'month', name='uq_payslip_emp_period'),
        sa.CheckConstraint('month >= 1 AND month <= 12', name='ck_payslip_month'),
        sa.CheckConstraint('lop_days >= 0 AND lop_days <= 31', name='ck_payslip_lop_days'),
    )
    op.create_index('ix_payslips_employee_id', 'payslips', ['employee_id'])
    _line_table('payslip_allowances', 'payslips', 'payslip_id')
    _line_table('payslip_deductions', 'payslips', 'payslip_id')

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('old_status', sa.String(length=32), nullable=True),
        sa.Column('new_status', sa.String(length=32), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('performed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    for name in ('notifications', 'audit_logs', 'payslip_deductions', 'payslip_allowances',
                 'payslips', 'ctc_deductions', 'ctc_allowances', 'ctc_structures',
                 'employees', 'departments', 'users'):
        op.drop_table(name)
    bind = op.get_bind()
    APPROVAL_ENUM.drop(bind, checkfirst=True)
    ROLE_ENUM.drop(bind, checkfirst=True)
