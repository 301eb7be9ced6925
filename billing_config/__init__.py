"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.  The kernel never imports this
    package; the orchestrator passes resolved values into kernel services.

Failure modes:
    - ``FileNotFoundError`` -- overlay file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Every successful call emits a ``BILLING_CONFIG_TRACE`` log entry with the
resolved values and the overlay source.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict
from pathlib import Path

from billing_config.loader import load_yaml_file, merge_sections, parse_settings
from billing_config.schema import BillingSettings

__all__ = ["BillingSettings", "get_active_config", "CONFIG_FILE_ENV"]

_logger = logging.getLogger("billing_kernel.config")

_DEFAULTS_FILE = Path(__file__).parent / "defaults.yaml"

CONFIG_FILE_ENV = "BILLING_CONFIG_FILE"


def get_active_config(config_path: Path | str | None = None) -> BillingSettings:
    """The ONLY public configuration entrypoint.

    Loads the packaged defaults, overlays ``config_path`` (or the file named
    by ``BILLING_CONFIG_FILE`` when no path is given), validates, and
    returns a frozen ``BillingSettings``.
    """
    data = load_yaml_file(_DEFAULTS_FILE)

    overlay_source = config_path or os.environ.get(CONFIG_FILE_ENV) or None
    if overlay_source:
        data = merge_sections(data, load_yaml_file(Path(overlay_source)))

    settings = parse_settings(data)

    resolved = asdict(settings)
    resolved.pop("database_url")
    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "overlay_source": str(overlay_source) if overlay_source else None,
            **resolved,
        },
    )
    return settings
