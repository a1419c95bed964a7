"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """Undo ``configure_logging`` so caplog sees records in later tests."""
    yield
    logger = logging.getLogger("dbsrvctl")
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
