"""
Staff Loans Engine

Employee loan lifecycle for a multi-tenant HR/payroll platform: eligibility,
multi-level approval, EMI amortization and payroll-synchronized repayment.
All financial calculations use Decimal.
"""

__version__ = "1.0.0"
