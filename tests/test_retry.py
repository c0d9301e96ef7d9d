"""Tests for fault classification and retry-with-budget."""

from unittest.mock import AsyncMock

import pytest

from visreg.errors import PageLoadTimeout, SessionFault
from visreg.executor.retry import (
    FaultKind,
    classify_fault,
    is_transient_fault,
    is_unreachable_node,
    retry_async,
)


class TestClassifyFault:

    def test_unreachable_node(self):
        exc = SessionFault("Unable to communicate to node 10.0.0.4")
        assert classify_fault(exc) == FaultKind.UNREACHABLE_NODE
        assert is_unreachable_node(exc)
        assert is_transient_fault(exc)

    @pytest.mark.parametrize("message", [
        "Session not started or terminated",
        "A session is either terminated or not started",
        "Could not start Mobile Browser.",
        "Error: ESOCKETTIMEDOUT",
        "Target page, context or browser has been closed",
    ])
    def test_transient(self, message):
        exc = SessionFault(message)
        assert classify_fault(exc) == FaultKind.TRANSIENT
        assert is_transient_fault(exc)
        assert not is_unreachable_node(exc)

    def test_unknown_message_is_fatal(self):
        assert classify_fault(SessionFault("element not found")) == FaultKind.FATAL

    def test_plain_exceptions_classified_by_message(self):
        assert is_transient_fault(RuntimeError("Browser has been closed"))
        assert not is_transient_fault(PageLoadTimeout("still loading"))


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        op = AsyncMock(return_value="ok")
        assert await retry_async(op, retries=3, should_retry=lambda e: True) == "ok"
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_qualifying_errors(self):
        op = AsyncMock(side_effect=[SessionFault("ESOCKETTIMEDOUT"), SessionFault("ESOCKETTIMEDOUT"), "ok"])
        on_retry = AsyncMock()

        result = await retry_async(op, retries=3, should_retry=is_transient_fault, on_retry=on_retry)

        assert result == "ok"
        assert op.await_count == 3
        assert on_retry.await_count == 2

    @pytest.mark.asyncio
    async def test_budget_exhausted_reraises(self):
        op = AsyncMock(side_effect=SessionFault("ESOCKETTIMEDOUT"))

        with pytest.raises(SessionFault):
            await retry_async(op, retries=3, should_retry=is_transient_fault)
        assert op.await_count == 4

    @pytest.mark.asyncio
    async def test_non_qualifying_error_propagates_once(self):
        op = AsyncMock(side_effect=PageLoadTimeout("slow"))
        on_retry = AsyncMock()

        with pytest.raises(PageLoadTimeout):
            await retry_async(op, retries=3, should_retry=is_transient_fault, on_retry=on_retry)
        assert op.await_count == 1
        on_retry.assert_not_awaited()
