"""Tests for the approval rendezvous and the cancellation token."""

from __future__ import annotations

import asyncio

import pytest

from zox.agent.approval import ApprovalRequest, ApprovalSlot
from zox.agent.cancellation import CancellationToken, OperationCancelled


class TestApprovalRequest:
    @pytest.mark.asyncio
    async def test_resolves_to_sent_value(self):
        request = ApprovalRequest("write_file", {"path": "a"})
        assert request.resolve(True)
        decision = await request.wait()
        assert decision.approved is True
        assert decision.explicit is True

    @pytest.mark.asyncio
    async def test_second_resolution_ignored(self):
        request = ApprovalRequest("write_file", {})
        assert request.resolve(False)
        assert not request.resolve(True)
        assert not request.drop()
        decision = await request.wait()
        assert decision.approved is False
        assert decision.explicit is True

    @pytest.mark.asyncio
    async def test_drop_is_unanswered_denial(self):
        request = ApprovalRequest("write_file", {})
        request.drop()
        decision = await request.wait()
        assert decision.approved is False
        assert decision.explicit is False

    @pytest.mark.asyncio
    async def test_timeout_drops(self):
        request = ApprovalRequest("write_file", {})
        decision = await request.wait(timeout=0.01)
        assert not decision.approved
        assert not decision.explicit
        assert request.resolved

    @pytest.mark.asyncio
    async def test_to_dict(self):
        request = ApprovalRequest("replace_lines", {"path": "f.txt", "start_line": 1})
        data = request.to_dict()
        assert data["tool"] == "replace_lines"
        assert data["parameters"] == {"path": "f.txt", "start_line": 1}
        assert data["id"] == request.id


class TestApprovalSlot:
    @pytest.mark.asyncio
    async def test_respond_with_nothing_pending(self):
        assert ApprovalSlot().respond(True) is False

    @pytest.mark.asyncio
    async def test_respond_resolves_pending(self):
        slot = ApprovalSlot()
        request = slot.open("write_file", {})
        assert slot.pending is request
        assert slot.respond(True)
        assert slot.pending is None
        assert (await request.wait()).approved

    @pytest.mark.asyncio
    async def test_open_supersedes_previous(self):
        slot = ApprovalSlot()
        first = slot.open("write_file", {})
        second = slot.open("replace_lines", {})
        decision = await first.wait()
        assert not decision.approved and not decision.explicit
        assert slot.pending is second

    @pytest.mark.asyncio
    async def test_cancel_drops_pending(self):
        slot = ApprovalSlot()
        request = slot.open("write_file", {})
        assert slot.cancel()
        assert not slot.cancel()
        decision = await request.wait()
        assert not decision.approved

    @pytest.mark.asyncio
    async def test_discard_only_matching(self):
        slot = ApprovalSlot()
        old = slot.open("write_file", {})
        new = slot.open("write_file", {})
        slot.discard(old)
        assert slot.pending is new
        slot.discard(new)
        assert slot.pending is None


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_interrupted(self):
        token = CancellationToken()
        finished = False

        async def work():
            nonlocal finished
            await asyncio.sleep(5)
            finished = True

        asyncio.get_running_loop().call_later(0.02, token.cancel)
        with pytest.raises(OperationCancelled):
            await token.run(work())
        assert not finished

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel()

        async def work():
            return 1

        with pytest.raises(OperationCancelled):
            await token.run(work())

    @pytest.mark.asyncio
    async def test_reset(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled
        token.reset()
        assert not token.cancelled
        token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_iterate_stops_on_cancel(self):
        token = CancellationToken()
        closed = asyncio.Event()

        async def stream():
            try:
                yield "first"
                await asyncio.sleep(5)
                yield "never"
            finally:
                closed.set()

        received = []
        with pytest.raises(OperationCancelled):
            async for item in token.iterate(stream()):
                received.append(item)
                asyncio.get_running_loop().call_later(0.02, token.cancel)

        assert received == ["first"]
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_iterate_to_completion(self):
        async def stream():
            for i in range(3):
                yield i

        token = CancellationToken()
        assert [i async for i in token.iterate(stream())] == [0, 1, 2]
