import pytest


@pytest.mark.parametrize("raw", ["abc", "NaN", "1,000"])
def test_compute_payslip_rejects_unparseable_override(app, raw):
    result = app.test_cli_runner().invoke(args=[
        "payroll", "compute-payslip", "--employee-id", "1", "--month", "3",
        "--override-allowances", raw,
    ])
    assert result.exit_code == 2
    assert "not a valid amount" in result.output
