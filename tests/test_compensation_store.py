from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

from conftest import make_template
from payroll_core.common.errors import (
    AlreadyApprovedError, ConflictError, NotFoundError, ValidationError,
)
from payroll_core.models.payroll.ctc import CTCStructure
from payroll_core.services.compensation_store import (
    CompensationTemplate, LineItem, add_years, structure_to_dict,
)


def test_create_starts_pending_with_default_window(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])
    assert s.status == "pending"
    assert s.effective_from == date(2024, 1, 1)
    assert s.effective_to == date(2025, 1, 1)
    assert s.created_by_user_id == people["hr"].user_id
    assert s.version == 1
    assert [a.label for a in s.allowances] == ["Bonus"]
    assert s.gross_ctc == Decimal("1212000.00")


def test_employee_cannot_create(services, people, template):
    with pytest.raises(ValidationError):
        services.store.create(people["emp_a"], template, people["staff"])


def test_unknown_employee(services, people, template):
    with pytest.raises(NotFoundError):
        services.store.create(999, template, people["hr"])


def test_approve_sets_approver(services, people, approved_ctc):
    assert approved_ctc.status == "approved"
    assert approved_ctc.approved_by_user_id == people["hrm"].user_id
    assert approved_ctc.approved_at is not None
    assert approved_ctc.version == 2


def test_hr_cannot_approve(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])
    with pytest.raises(ValidationError):
        services.store.approve(s.id, people["hr"])
    assert services.store.get(s.id).status == "pending"


def test_approve_twice(services, people, approved_ctc):
    with pytest.raises(AlreadyApprovedError) as ei:
        services.store.approve(approved_ctc.id, people["hrm"])
    assert isinstance(ei.value, ConflictError)
    assert isinstance(ei.value, ValidationError)


def test_approve_with_stale_version(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])
    with pytest.raises(ConflictError):
        services.store.approve(s.id, people["hrm"], expected_version=s.version + 1)


def test_create_overlapping_approved_window_conflicts(services, people, approved_ctc):
    with pytest.raises(ConflictError):
        services.store.create(people["emp_a"], make_template(date(2024, 6, 1)), people["hr"])


def test_adjacent_windows_do_not_overlap(services, people, approved_ctc):
    s = services.store.create(people["emp_a"], make_template(date(2025, 1, 1)), people["hr"])
    assert services.store.approve(s.id, people["hrm"]).status == "approved"


def test_second_approval_of_overlapping_pending_conflicts(services, people, template):
    first = services.store.create(people["emp_a"], template, people["hr"])
    second = services.store.create(people["emp_a"], make_template(date(2024, 3, 1)), people["hr"])
    services.store.approve(first.id, people["hrm"])
    with pytest.raises(ConflictError):
        services.store.approve(second.id, people["hrm"])
    assert services.store.get(second.id).status == "pending"


def test_pending_overlap_only_rejected_on_request(services, people, template):
    services.store.create(people["emp_a"], template, people["hr"])
    with pytest.raises(ConflictError):
        services.store.create(people["emp_a"], template, people["hr"], reject_pending_overlap=True)
    services.store.create(people["emp_a"], template, people["hr"])


def test_get_active_uses_half_open_window(services, people, approved_ctc):
    assert services.store.get_active(people["emp_a"], date(2024, 1, 1)).id == approved_ctc.id
    assert services.store.get_active(people["emp_a"], date(2024, 12, 31)).id == approved_ctc.id
    with pytest.raises(NotFoundError):
        services.store.get_active(people["emp_a"], date(2025, 1, 1))
    with pytest.raises(NotFoundError):
        services.store.get_active(people["emp_a"], date(2023, 12, 31))


def test_get_active_ignores_pending(services, people, template):
    services.store.create(people["emp_a"], template, people["hr"])
    with pytest.raises(NotFoundError):
        services.store.get_active(people["emp_a"], date(2024, 6, 1))


def test_supersede_closes_previous_window_on_approval(services, people, approved_ctc):
    raise_to = make_template(date(2024, 7, 1), basic=Decimal("1500000"))
    nxt = services.store.supersede(approved_ctc.id, raise_to, people["hr"])
    assert nxt.supersedes_id == approved_ctc.id
    # nothing changes until approval
    assert services.store.get(approved_ctc.id).effective_to == date(2025, 1, 1)

    services.store.approve(nxt.id, people["hrm"])
    prev = services.store.get(approved_ctc.id)
    assert prev.effective_to == date(2024, 7, 1)
    assert prev.basic == Decimal("1200000.00")
    assert services.store.get_active(people["emp_a"], date(2024, 6, 30)).id == approved_ctc.id
    assert services.store.get_active(people["emp_a"], date(2024, 7, 1)).id == nxt.id


def test_supersede_must_start_later(services, people, approved_ctc):
    with pytest.raises(ValidationError):
        services.store.supersede(approved_ctc.id, make_template(date(2024, 1, 1)), people["hr"])


def test_supersede_requires_approved_source(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])
    with pytest.raises(ValidationError):
        services.store.supersede(s.id, make_template(date(2024, 6, 1)), people["hr"])


def test_approved_terms_are_immutable(services, people, approved_ctc):
    with pytest.raises(ValidationError):
        services.store.update_pending(approved_ctc.id, make_template(basic=Decimal("1")), people["hr"])


def test_update_pending_replaces_terms(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])
    changed = make_template(basic=Decimal("600000"), allowances=(), deductions=())
    s = services.store.update_pending(s.id, changed, people["hr"])
    assert s.basic == Decimal("600000.00")
    assert s.allowances == [] and s.deductions == []
    assert s.version == 2


def test_list_for_employee_newest_first(services, people, approved_ctc):
    nxt = services.store.create(people["emp_a"], make_template(date(2025, 1, 1)), people["hr"])
    assert [s.id for s in services.store.list_for_employee(people["emp_a"])] == [nxt.id, approved_ctc.id]
    assert services.store.list_for_employee(people["emp_b"]) == []


def test_structure_to_dict(approved_ctc):
    out = structure_to_dict(approved_ctc)
    assert out["status"] == "approved"
    assert out["gross_ctc"] == "1212000.00"
    assert out["allowances"] == [{"label": "Bonus", "amount": "12000.00"}]
    assert out["effective_to"] == "2025-01-01"


@pytest.mark.parametrize("kw", [
    dict(basic=Decimal("0")),
    dict(hra=Decimal("-1")),
    dict(hra=Decimal("600001")),
    dict(tax_percent=Decimal("101")),
    dict(effective_to=date(2023, 12, 31)),
    dict(allowances=(LineItem("", Decimal("1")),)),
    dict(deductions=(LineItem("PF", Decimal("-5")),)),
    dict(allowances=(LineItem("Bonus", Decimal("1")), LineItem("bonus", Decimal("2")))),
])
def test_template_validation(kw):
    with pytest.raises(ValidationError):
        make_template(**kw).validate()


def test_template_from_camel_case_payload():
    t = CompensationTemplate.from_payload({
        "basic": "1200000",
        "hra": 240000,
        "taxPercent": "10",
        "effectiveFrom": "2024-04-01",
        "allowances": [{"label": "Bonus", "amount": "12000"}],
        "deductions": [],
    })
    assert t.validate() is t
    assert t.effective_from == date(2024, 4, 1)
    assert t.allowances == (LineItem("Bonus", Decimal("12000")),)
    assert t.gross_ctc == Decimal("1452000")


def test_template_requires_effective_from():
    with pytest.raises(ValidationError):
        CompensationTemplate.from_payload({"basic": 1000})


def test_add_years_leap_day():
    assert add_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
    assert add_years(date(2024, 3, 1), 2) == date(2026, 3, 1)


@pytest.mark.parametrize("field,value", [
    ("hra", "12k"),
    ("taxPercent", "ten"),
    ("effectiveTo", "2024-13-40"),
    ("basic", "NaN"),
    ("basic", "Infinity"),
    ("hra", "-Infinity"),
])
def test_malformed_payload_values_are_rejected(field, value):
    payload = {"basic": "1200000", "hra": "0", "taxPercent": "10", "effectiveFrom": "2024-01-01"}
    payload[field] = value
    with pytest.raises(ValidationError) as ei:
        CompensationTemplate.from_payload(payload)
    assert "not a valid" in ei.value.message


def test_malformed_line_amount_is_rejected():
    with pytest.raises(ValidationError):
        CompensationTemplate.from_payload({
            "basic": "1200000",
            "effectiveFrom": "2024-01-01",
            "allowances": [{"label": "Bonus", "amount": "NaN"}],
        })


def test_blank_optional_values_fall_back_to_defaults():
    t = CompensationTemplate.from_payload({
        "basic": "1200000", "hra": "", "taxPercent": None,
        "effectiveFrom": "2024-01-01", "effectiveTo": "",
    })
    assert t.hra == Decimal("0")
    assert t.tax_percent == Decimal("0")
    assert t.effective_to is None


@pytest.mark.parametrize("kw", [
    dict(basic=Decimal("NaN")),
    dict(hra=Decimal("Infinity")),
    dict(tax_percent=Decimal("sNaN")),
    dict(deductions=(LineItem("PF", Decimal("NaN")),)),
])
def test_non_finite_terms_fail_validation(kw):
    with pytest.raises(ValidationError):
        make_template(**kw).validate()


def test_overlap_checks_lock_the_employee_row(services, people, template, monkeypatch):
    locked = []
    real = services.store.lock_employee

    def spy(employee_id):
        locked.append(employee_id)
        return real(employee_id)

    monkeypatch.setattr(services.store, "lock_employee", spy)
    s = services.store.create(people["emp_a"], template, people["hr"])
    services.store.approve(s.id, people["hrm"])
    assert locked == [people["emp_a"], people["emp_a"]]


def test_rejected_approval_releases_the_transaction(services, people, session, template):
    first = services.store.create(people["emp_a"], template, people["hr"])
    second = services.store.create(people["emp_a"], make_template(date(2024, 3, 1)), people["hr"])
    services.store.approve(first.id, people["hrm"])
    with pytest.raises(ConflictError):
        services.store.approve(second.id, people["hrm"])
    assert not session().in_transaction()


def test_database_overlap_rejection_becomes_conflict(services, people, template):
    s = services.store.create(people["emp_a"], template, people["hr"])

    def exclusion_violation(mapper, connection, target):
        raise IntegrityError("UPDATE ctc_structures", {}, Exception("ex_ctc_approved_window"))

    event.listen(CTCStructure, "before_update", exclusion_violation)
    try:
        with pytest.raises(ConflictError):
            services.store.approve(s.id, people["hrm"])
    finally:
        event.remove(CTCStructure, "before_update", exclusion_violation)
    assert services.store.get(s.id).status == "pending"
