"""Exposes the in-process suite harness over HTTP."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from roomscribe.tests.harness import TestHarness


def create_testing_router(ctx) -> APIRouter:
    router = APIRouter(tags=["testing"])
    logger = logging.getLogger("roomscribe.api.testing")
    harness = TestHarness(ctx.logs_dir)
    # Suites start real timers and sockets; two runs at once would skew timings.
    run_lock = asyncio.Lock()

    @router.get("/api/test/suites")
    async def list_suites():
        return {"status": "ok", "suites": harness.get_available_suites()}

    @router.get("/api/test/suites/{suite_id}")
    async def describe_suite(suite_id: str):
        suite_class = harness.suites.get(suite_id)
        if suite_class is None:
            raise HTTPException(status_code=404, detail=f"Unknown suite: {suite_id}")
        return suite_class().get_info()

    @router.api_route("/api/test/run", methods=["GET", "POST"])
    async def run_tests(
        suite: Optional[str] = Query(None, description="Suite ID to run"),
        all_suites: bool = Query(False, alias="all", description="Run all suites"),
    ):
        if not suite and not all_suites:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": "Specify ?suite=<suite_id> or ?all=true",
                    "available_suites": list(harness.suites),
                },
            )
        if run_lock.locked():
            raise HTTPException(status_code=409, detail="A test run is already in progress")

        async with run_lock:
            start_time = time.perf_counter()
            logger.info("Test run requested: suite=%s all=%s", suite, all_suites)
            result = await harness.run_all() if all_suites else await harness.run_suite(suite)
            logger.info(
                "Test run finished in %.2f ms: suite=%s status=%s",
                (time.perf_counter() - start_time) * 1000,
                suite or "all",
                result.get("status"),
            )
        if result.get("status") == "error":
            raise HTTPException(status_code=404, detail=result)
        return result

    return router
