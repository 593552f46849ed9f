"""Runs every harness suite under pytest."""
import asyncio
import logging

import pytest

from roomscribe.tests.harness import registered_suites


SUITES = registered_suites()


@pytest.mark.parametrize("suite_id", list(SUITES))
def test_suite(suite_id):
    suite = SUITES[suite_id](logger=logging.getLogger(f"roomscribe.test.{suite_id}"))
    result = asyncio.run(suite.run())
    problems = [f"{r.test_id} {r.name}: {r.message}\n{r.error or ''}" for r in result.failures()]
    assert result.ok, "\n".join(problems)
    assert result.passed > 0
