# payroll_core/models/payroll/__init__.py
# Import order matters: ctc first, payslip reuses its status enum.
from .ctc import CTCStructure, CTCAllowance, CTCDeduction
from .payslip import Payslip, PayslipAllowance, PayslipDeduction

__all__ = [
    "CTCStructure", "CTCAllowance", "CTCDeduction",
    "Payslip", "PayslipAllowance", "PayslipDeduction",
]
