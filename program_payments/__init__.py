"""
EduPay Program Payments

Installment-based payment tracking for educational programs: program
approval lifecycle, schedule math using Decimal, gateway reconciliation,
overdue freezing and hash-chained audit trails.
"""

__version__ = "1.0.0"
