"""Tests for the package logger configuration."""

from __future__ import annotations

import logging

import pytest

import stock_ledger


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("warning", logging.WARNING),
        (" DEBUG ", logging.DEBUG),
        (logging.ERROR, logging.ERROR),
        ("chatty", logging.INFO),
        ("Formatter", logging.INFO),
        (None, logging.INFO),
    ],
)
def test_coerce_level(raw, expected):
    assert stock_ledger.coerce_level(raw) == expected


def test_configure_logging_is_idempotent_and_adjusts_level():
    logger = logging.getLogger("stock_ledger")
    original = logger.level
    handler_count = len(logger.handlers)
    try:
        assert stock_ledger.configure_logging("ERROR") is logger
        assert len(logger.handlers) == handler_count
        assert logger.level == logging.ERROR
        assert all(handler.level == logging.ERROR for handler in logger.handlers)
    finally:
        stock_ledger.configure_logging(original)


def test_configure_logging_reads_environment(monkeypatch):
    logger = logging.getLogger("stock_ledger")
    original = logger.level
    monkeypatch.setenv("STOCK_LEDGER_LOG_LEVEL", "warning")
    try:
        stock_ledger.configure_logging()
        assert logger.level == logging.WARNING
    finally:
        stock_ledger.configure_logging(original)
