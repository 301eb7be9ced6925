"""
Billing Kernel

The monetary core of the billing platform:
- Money ledger arithmetic (Decimal only)
- Invoice payment state machine with per-invoice row locking
- Invoice, payment, and recurring definition persistence
- Typed exceptions and structured logging
"""

__version__ = "0.1.0"
