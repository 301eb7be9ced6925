"""
Configuration Loader (``billing_config.loader``).

Loads YAML files and turns the merged section dicts into a validated
``BillingSettings``.  Callers use ``billing_config.get_active_config()``;
nothing else should import this module.

Failure modes:
    - Missing YAML file -> ``FileNotFoundError`` propagates.
    - Malformed YAML -> ``yaml.YAMLError`` propagates.
    - Unknown sections or keys, wrong types, out-of-range values ->
      ``ValueError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from billing_batch.domain.schedule import parse_cron
from billing_config.schema import BillingSettings
from billing_kernel.domain.values import Currency

# (section, key) -> BillingSettings field
_FIELD_MAP: dict[tuple[str, str], str] = {
    ("billing", "currency"): "currency",
    ("billing", "invoice_number_prefix"): "invoice_number_prefix",
    ("billing", "invoice_number_width"): "invoice_number_width",
    ("billing", "default_due_after_days"): "default_due_after_days",
    ("recurring", "scan_cron"): "scan_cron",
    ("recurring", "scan_schedule_key"): "scan_schedule_key",
    ("recurring", "scheduler_tick_seconds"): "scheduler_tick_seconds",
    ("recurring", "claim_ttl_seconds"): "claim_ttl_seconds",
    ("delivery", "max_attempts"): "delivery_max_attempts",
    ("delivery", "backoff_seconds"): "delivery_backoff_seconds",
    ("delivery", "workers"): "delivery_workers",
    ("database", "url"): "database_url",
}

_POSITIVE_INTS = (
    "invoice_number_width",
    "default_due_after_days",
    "scheduler_tick_seconds",
    "claim_ttl_seconds",
    "delivery_max_attempts",
    "delivery_workers",
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file yields an empty dict."""
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top level of {path} must be a mapping")
    return data


def merge_sections(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Overlay section-by-section; keys absent from ``overlay`` keep their base value."""
    merged = {section: dict(values or {}) for section, values in base.items()}
    for section, values in overlay.items():
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        merged.setdefault(section, {}).update(values)
    return merged


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    """Validate merged section dicts and build BillingSettings."""
    kwargs: dict[str, Any] = {}
    for section, values in data.items():
        for key, value in (values or {}).items():
            field_name = _FIELD_MAP.get((section, key))
            if field_name is None:
                raise ValueError(f"Unknown config key: {section}.{key}")
            kwargs[field_name] = value

    settings = BillingSettings(**kwargs)
    _validate(settings)
    return settings


def _validate(settings: BillingSettings) -> None:
    Currency(settings.currency)
    for name in _POSITIVE_INTS:
        value = getattr(settings, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{name} must be a positive integer, got {value!r}")
    if (
        isinstance(settings.delivery_backoff_seconds, bool)
        or not isinstance(settings.delivery_backoff_seconds, (int, float))
        or settings.delivery_backoff_seconds < 0
    ):
        raise ValueError(
            f"delivery_backoff_seconds must be >= 0, got {settings.delivery_backoff_seconds!r}"
        )
    parse_cron(settings.scan_cron)
    if not settings.scan_schedule_key:
        raise ValueError("scan_schedule_key must be non-empty")
