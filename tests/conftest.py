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
def _reset_maasflow_logger() -> Iterator[None]:
    """Undo console handlers installed by CLI tests so ``caplog`` sees records."""
    yield
    logger = logging.getLogger("maasflow")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer ``MAASFLOW_*`` variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("MAASFLOW_"):
            monkeypatch.delenv(key, raising=False)
