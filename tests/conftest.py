import os
from datetime import date
from decimal import Decimal

import pytest

from payroll_core import create_app
from payroll_core.common.roles import Actor, Role
from payroll_core.extensions import db
from payroll_core.models.employee import Employee
from payroll_core.models.user import User
from payroll_core.services import build_services
from payroll_core.services.compensation_store import CompensationTemplate, LineItem


@pytest.fixture(scope="function")
def app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    app = create_app()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def session(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def services(app, session):
    return build_services(app.extensions["payroll_settings"], session=session)


def _user(session, email, role):
    u = User(email=email, full_name=email.split("@")[0].title(), role=role, is_active=True)
    session.add(u)
    session.flush()
    return u


def _employee(session, code, user=None):
    email = user.email if user else f"{code.lower()}@example.test"
    e = Employee(user_id=user.id if user else None, code=code, email=email,
                 full_name=f"Employee {code}", status="active")
    session.add(e)
    session.flush()
    return e


@pytest.fixture
def people(session):
    """One user per role and three employees, the first linked to the employee user."""
    admin = _user(session, "admin@example.test", Role.ADMIN)
    hr = _user(session, "hr@example.test", Role.HR)
    hrm = _user(session, "hrm@example.test", Role.HR_MANAGER)
    staff = _user(session, "staff@example.test", Role.EMPLOYEE)
    a = _employee(session, "E001", user=staff)
    b = _employee(session, "E002")
    c = _employee(session, "E003")
    session.commit()
    return {
        "admin": Actor.of(admin.id, admin.role, admin.email),
        "hr": Actor.of(hr.id, hr.role, hr.email),
        "hrm": Actor.of(hrm.id, hrm.role, hrm.email),
        "staff": Actor.of(staff.id, staff.role, staff.email),
        "hrm_user_id": hrm.id,
        "emp_a": a.id,
        "emp_b": b.id,
        "emp_c": c.id,
    }


def make_template(effective_from=date(2024, 1, 1), **kw):
    """The 1,200,000 basic / 10% tax terms used throughout the payroll tests."""
    base = dict(
        basic=Decimal("1200000"),
        hra=Decimal("0"),
        tax_percent=Decimal("10"),
        allowances=(LineItem("Bonus", Decimal("12000")),),
        deductions=(LineItem("PF", Decimal("12000")),),
        effective_from=effective_from,
    )
    base.update(kw)
    return CompensationTemplate(**base)


@pytest.fixture
def template():
    return make_template()


@pytest.fixture
def approved_ctc(services, people, template):
    """An approved structure for employee A covering calendar 2024."""
    s = services.store.create(people["emp_a"], template, people["hr"])
    return services.store.approve(s.id, people["hrm"])
