"""Logging setup tests."""

from __future__ import annotations

import logging
from decimal import Decimal

import structlog

from bonus_ledger.config import Settings
from bonus_ledger.logging_config import _stringify_decimals, bind_job_context, setup_logging


class TestLoggingConfig:
    """structlog processors and job context."""

    def test_decimals_rendered_as_strings(self):
        event = _stringify_decimals(None, "info", {"event": "bonus_spent", "amount": Decimal("12.50"), "user_id": 3})
        assert event == {"event": "bonus_spent", "amount": "12.50", "user_id": 3}

    def test_job_context_replaces_previous_job(self):
        bind_job_context("expire_bonuses", run=1)
        bind_job_context("send_expiry_warnings")
        try:
            assert structlog.contextvars.get_contextvars() == {"job": "send_expiry_warnings"}
        finally:
            structlog.contextvars.clear_contextvars()

    def test_sqlalchemy_quiet_outside_debug(self):
        setup_logging(Settings(log_format="console", debug=False))
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
