"""
BillingSettings schema.

The frozen runtime settings object produced by ``get_active_config()``.
Field names match the keys of ``defaults.yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BillingSettings:
    """Resolved billing configuration."""

    currency: str = "USD"
    invoice_number_prefix: str = "INV-"
    invoice_number_width: int = 6
    default_due_after_days: int = 30
    scan_cron: str = "0 * * * *"  # Hourly
    scan_schedule_key: str = "recurring-invoices.generate"
    scheduler_tick_seconds: int = 60
    claim_ttl_seconds: int = 900
    delivery_max_attempts: int = 3
    delivery_backoff_seconds: float = 5.0
    delivery_workers: int = 4
    database_url: str = "sqlite:///billing.db"
