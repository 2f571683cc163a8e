# payroll_core/common/settings.py
from __future__ import annotations

from dataclasses import dataclass


def _flag(v, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PayrollSettings:
    """
    Values the services need, frozen at construction time.

    Services receive this object explicitly instead of reaching into
    ``current_app.config`` so that they can be built and tested without an app.
    """
    ctc_validity_years: int = 1
    batch_conflict_on_pending: bool = True
    mail_from: str = "payroll@localhost"
    notify_on_batch: bool = True

    @classmethod
    def from_config(cls, config) -> "PayrollSettings":
        years = int(config.get("PAYROLL_CTC_VALIDITY_YEARS", 1) or 1)
        if years < 1:
            years = 1
        return cls(
            ctc_validity_years=years,
            batch_conflict_on_pending=_flag(config.get("PAYROLL_BATCH_CONFLICT_ON_PENDING"), True),
            mail_from=config.get("PAYROLL_MAIL_FROM") or "payroll@localhost",
            notify_on_batch=_flag(config.get("PAYROLL_NOTIFY_ON_BATCH"), True),
        )
