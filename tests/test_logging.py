"""Tests for logging helpers."""

import structlog

from resemble.logging import unit_context


def test_unit_context_binds_and_restores() -> None:
    structlog.contextvars.bind_contextvars(query="parse a string")
    try:
        with unit_context("src/A.java"):
            assert structlog.contextvars.get_contextvars() == {
                "query": "parse a string",
                "unit": "src/A.java",
            }
        assert structlog.contextvars.get_contextvars() == {"query": "parse a string"}
    finally:
        structlog.contextvars.clear_contextvars()
