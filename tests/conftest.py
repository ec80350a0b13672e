"""Shared test configuration and fixtures."""

import os
from collections.abc import Iterator
from unittest.mock import patch

import pytest

_TEST_ENV_VARS = {
    "UPDOWN_AUDIT_DB_URL": "sqlite+aiosqlite:///:memory:",
}


@pytest.fixture(autouse=True)
def _set_test_env_vars() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    """Keep tests away from the on-disk audit database.

    The default configuration writes the audit trail to
    ``${UPDOWN_AUDIT_DB_URL}``, which falls back to a file in the working
    directory.  Commands that resolve the URL from settings during a test
    get an in-memory database instead.
    """
    with patch.dict(os.environ, _TEST_ENV_VARS):
        yield
