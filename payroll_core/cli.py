# payroll_core/cli.py
import json
from datetime import datetime

import click

from payroll_core.common.errors import PayrollError
from payroll_core.common.money import is_blank, parse_dec
from payroll_core.common.roles import Actor, Role
from payroll_core.extensions import db


def _services(app):
    from payroll_core.services import build_services
    return build_services(app.extensions["payroll_settings"])


def _actor(email: str) -> Actor:
    from payroll_core.models.user import User
    u = User.query.filter_by(email=email).first()
    if not u:
        raise click.ClickException(f"User {email} not found. Run flask seed-core first.")
    return Actor.of(u.id, u.role, u.email)


def _decimal_option(ctx, param, value):
    """click callback: blank means unset, anything else must be a finite number."""
    if is_blank(value):
        return None
    parsed = parse_dec(value)
    if parsed is None:
        raise click.BadParameter(f"{value!r} is not a valid amount")
    return parsed


def register_cli(app):

    @app.cli.command("seed-core")
    def seed_core():
        """Seed demo departments, one user per role and an employee profile."""
        from payroll_core.models.user import User
        from payroll_core.models.master import Department
        from payroll_core.models.employee import Employee

        def ensure_department(name: str) -> Department:
            d = Department.query.filter_by(name=name).first()
            if not d:
                d = Department(name=name)
                db.session.add(d)
                db.session.commit()
            return d

        def ensure_user(email: str, full_name: str, role: Role):
            user = User.query.filter_by(email=email).first()
            if user:
                return user, False
            user = User(email=email, full_name=full_name, role=role, is_active=True)
            db.session.add(user)
            db.session.commit()
            return user, True

        eng = ensure_department("Engineering")
        ensure_department("HR")

        created = []
        for email, name, role in (
            ("admin@demo.local", "Demo Admin", Role.ADMIN),
            ("hr@demo.local", "Demo HR", Role.HR),
            ("hrm@demo.local", "Demo HR Manager", Role.HR_MANAGER),
            ("emp@demo.local", "Demo Employee", Role.EMPLOYEE),
        ):
            _, was_created = ensure_user(email, name, role)
            created.append(f"{email} ({'created' if was_created else 'existing'})")

        emp_user = User.query.filter_by(email="emp@demo.local").first()
        if not Employee.query.filter_by(email=emp_user.email).first():
            db.session.add(Employee(
                user_id=emp_user.id,
                department_id=eng.id,
                code="EMP-DEMO",
                email=emp_user.email,
                full_name=emp_user.full_name,
                status="active",
            ))
            db.session.commit()
            created.append("employee profile EMP-DEMO")

        click.echo("Seeded/ensured: departments Engineering, HR; " + "; ".join(created))

    # ---------------- Payroll CLI ----------------
    @app.cli.group("payroll")
    def payroll_group():
        """CTC and payslip utilities."""
        pass

    @payroll_group.command("assign-ctc")
    @click.option("--file", "file_opt", type=click.File("r"), required=True,
                  help='JSON: {"basic":..., "hra":..., "allowances":[...], "deductions":[...], '
                       '"tax_percent":..., "effective_from":"YYYY-MM-DD", "employee_ids":[...]}')
    @click.option("--actor-email", default="hr@demo.local", show_default=True)
    def assign_ctc(file_opt, actor_email):
        """Apply one CTC template to many employees."""
        from payroll_core.services.compensation_store import CompensationTemplate

        payload = json.load(file_opt)
        svc = _services(app)
        try:
            template = CompensationTemplate.from_payload(payload)
            ids = payload.get("employee_ids") or payload.get("employeeIds") or []
            outcomes = svc.batch.assign(template, ids, _actor(actor_email))
        except PayrollError as e:
            raise click.ClickException(e.message)
        for o in outcomes:
            click.echo(f"{o.employee_id}\t{o.status}\t{o.message or ''}")

    @payroll_group.command("approve-ctc")
    @click.argument("structure_id", type=int)
    @click.option("--actor-email", default="hrm@demo.local", show_default=True)
    def approve_ctc(structure_id, actor_email):
        svc = _services(app)
        try:
            s = svc.workflow.approve_structure(structure_id, _actor(actor_email))
        except PayrollError as e:
            raise click.ClickException(e.message)
        click.echo(f"CTC #{s.id} approved ({s.effective_from}..{s.effective_to})")

    @payroll_group.command("compute-payslip")
    @click.option("--employee-id", type=int, required=True)
    @click.option("--year", type=int, default=lambda: datetime.utcnow().year)
    @click.option("--month", type=click.IntRange(1, 12), required=True)
    @click.option("--lop-days", type=int, default=0, show_default=True)
    @click.option("--override-allowances", default=None, callback=_decimal_option)
    @click.option("--override-deductions", default=None, callback=_decimal_option)
    @click.option("--actor-email", default="hr@demo.local", show_default=True)
    def compute_payslip(employee_id, year, month, lop_days, override_allowances,
                        override_deductions, actor_email):
        """Compute and store a pending payslip from the employee's approved CTC."""
        from payroll_core.services.payslip_service import payslip_to_dict

        svc = _services(app)
        try:
            slip = svc.workflow.submit_payslip(
                employee_id, year, month, lop_days, _actor(actor_email),
                override_allowances=override_allowances,
                override_deductions=override_deductions,
            )
        except PayrollError as e:
            raise click.ClickException(e.message)
        click.echo(json.dumps(payslip_to_dict(slip), indent=2))

    @payroll_group.command("approve-payslip")
    @click.argument("payslip_id", type=int)
    @click.option("--actor-email", default="hrm@demo.local", show_default=True)
    def approve_payslip(payslip_id, actor_email):
        svc = _services(app)
        try:
            slip = svc.workflow.approve_payslip(payslip_id, _actor(actor_email))
        except PayrollError as e:
            raise click.ClickException(e.message)
        click.echo(f"Payslip #{slip.id} {slip.lifecycle}")

    @payroll_group.command("release-payslip")
    @click.argument("payslip_id", type=int)
    @click.option("--actor-email", default="hrm@demo.local", show_default=True)
    def release_payslip(payslip_id, actor_email):
        svc = _services(app)
        try:
            slip = svc.workflow.release_payslip(payslip_id, _actor(actor_email))
        except PayrollError as e:
            raise click.ClickException(e.message)
        click.echo(f"Payslip #{slip.id} {slip.lifecycle}")
