from __future__ import annotations

import asyncio
from typing import List

import pytest

from agent_control.gateway.approvals import ApprovalHub, parse_decision
from agent_control.security.approval import ApprovalRequest, ApprovalResponse


def _req(key: str = "k1") -> ApprovalRequest:
    return ApprovalRequest(approval_key=key, tool="browser_open", summary="browser_open({})")


def test_parse_decision() -> None:
    assert parse_decision("approved") == ApprovalResponse.APPROVED
    assert parse_decision(" APPROVED_FOR_SESSION ") == ApprovalResponse.APPROVED_FOR_SESSION
    assert parse_decision("denied") == ApprovalResponse.DENIED
    with pytest.raises(ValueError):
        parse_decision("maybe")


def test_client_decision_resolves_pending_request() -> None:
    hub = ApprovalHub()
    notified: List[ApprovalRequest] = []

    async def _notify(request: ApprovalRequest) -> None:
        notified.append(request)
        assert hub.list_pending(session_id="s1")[0]["approval_key"] == request.approval_key
        assert hub.decide(session_id="s1", approval_key=request.approval_key, decision="approved") is True

    provider = hub.provider_for_session(session_id="s1", notify=_notify)
    result = asyncio.run(provider.request_approval(request=_req()))
    assert result == ApprovalResponse.APPROVED
    assert len(notified) == 1
    assert hub.list_pending(session_id="s1") == []


def test_decide_unknown_key_or_other_session() -> None:
    hub = ApprovalHub()

    async def _run():
        async def _notify(request: ApprovalRequest) -> None:
            assert hub.decide(session_id="other", approval_key=request.approval_key, decision="approved") is False
            assert hub.decide(session_id="s1", approval_key="nope", decision="approved") is False
            hub.decide(session_id="s1", approval_key=request.approval_key, decision="denied")

        provider = hub.provider_for_session(session_id="s1", notify=_notify)
        return await provider.request_approval(request=_req())

    assert asyncio.run(_run()) == ApprovalResponse.DENIED


def test_deny_session_resolves_pending_as_denied() -> None:
    hub = ApprovalHub()

    async def _notify(_request: ApprovalRequest) -> None:
        return None

    async def _run():
        provider = hub.provider_for_session(session_id="s1", notify=_notify)
        task = asyncio.create_task(provider.request_approval(request=_req()))
        for _ in range(100):
            if hub.list_pending(session_id="s1"):
                break
            await asyncio.sleep(0.01)
        count = hub.deny_session("s1")
        return count, await asyncio.wait_for(task, timeout=1)

    count, result = asyncio.run(_run())
    assert count == 1
    assert result == ApprovalResponse.DENIED


def test_invalid_decision_raises() -> None:
    with pytest.raises(ValueError):
        ApprovalHub().decide(session_id="s", approval_key="k", decision="sure")
