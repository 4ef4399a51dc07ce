from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from agent_control.core.errors import ToolError, UserError
from agent_control.llm.openai_chat import tool_spec_to_openai_tool
from agent_control.tools.protocol import FunctionTool, Tool, ToolCall, ToolOutcome, ToolSpec
from agent_control.tools.registry import ToolRegistry


def _echo_tool(name: str = "echo") -> FunctionTool:
    return FunctionTool(ToolSpec(name=name, description="echo text", mutating=False), lambda args: str(args.get("text", "")))


def test_duplicate_register_rejected() -> None:
    reg = ToolRegistry([_echo_tool()])
    with pytest.raises(UserError) as ei:
        reg.register(_echo_tool())
    assert ei.value.code == "TOOL_NAME_CONFLICT"


def test_override_allowed() -> None:
    reg = ToolRegistry([_echo_tool()])
    replacement = FunctionTool(ToolSpec(name="echo"), lambda _args: "b")
    reg.register(replacement, override=True)
    assert reg.get("echo") is replacement


def test_frozen_registry_rejects_registration() -> None:
    reg = ToolRegistry([_echo_tool()]).freeze()
    with pytest.raises(UserError) as ei:
        reg.register(_echo_tool("other"))
    assert ei.value.code == "REGISTRY_FROZEN"


def test_without_filters_and_freezes_copy() -> None:
    reg = ToolRegistry([_echo_tool("a"), _echo_tool("b"), _echo_tool("c")])
    filtered = reg.without(["b"])
    assert filtered.names() == ["a", "c"]
    assert filtered.frozen is True
    assert "b" in reg
    assert len(reg) == 3


def test_function_tool_satisfies_protocol() -> None:
    assert isinstance(_echo_tool(), Tool)


def test_dispatch_success_and_async_function() -> None:
    async def _upper(args):
        return ToolOutcome.ok(str(args["text"]).upper())

    reg = ToolRegistry([_echo_tool(), FunctionTool(ToolSpec(name="upper"), _upper)])
    out1 = asyncio.run(reg.dispatch(ToolCall(call_id="c1", name="echo", args={"text": "hi"})))
    out2 = asyncio.run(reg.dispatch(ToolCall(call_id="c2", name="upper", args={"text": "hi"})))
    assert out1 == ToolOutcome.ok("hi")
    assert out2.output == "HI"


def test_dispatch_unknown_tool() -> None:
    out = asyncio.run(ToolRegistry().dispatch(ToolCall(call_id="c1", name="nope")))
    assert out.success is False
    assert out.error == "Unknown tool: nope"


def test_dispatch_invalid_arguments_do_not_execute() -> None:
    calls = []

    def _fn(args):
        calls.append(args)
        return "ran"

    reg = ToolRegistry([FunctionTool(ToolSpec(name="t"), _fn)])
    bad_json = asyncio.run(reg.dispatch(ToolCall(call_id="c1", name="t", raw_arguments="{not json")))
    not_object = asyncio.run(reg.dispatch(ToolCall(call_id="c2", name="t", raw_arguments="[1, 2]")))
    assert bad_json.success is False
    assert bad_json.error.startswith("Invalid tool arguments JSON")
    assert not_object.error == "Invalid tool arguments JSON: arguments must be a JSON object"
    assert calls == []


def test_dispatch_converts_exceptions() -> None:
    def _tool_error(_args):
        raise ToolError("disk full")

    def _crash(_args):
        raise RuntimeError("kaboom")

    reg = ToolRegistry([FunctionTool(ToolSpec(name="a"), _tool_error), FunctionTool(ToolSpec(name="b"), _crash)])
    a = asyncio.run(reg.dispatch(ToolCall(call_id="c1", name="a")))
    b = asyncio.run(reg.dispatch(ToolCall(call_id="c2", name="b")))
    assert a == ToolOutcome.failure("disk full")
    assert b.error == "Tool 'b' failed: kaboom"


def test_tool_outcome_history_content() -> None:
    assert ToolOutcome.ok("out").history_content() == "out"
    assert ToolOutcome.failure("bad").history_content() == "bad"
    assert ToolOutcome.failure("bad").output == ""


def test_tool_spec_validation() -> None:
    with pytest.raises(ValidationError):
        ToolSpec(name="   ")
    spec = ToolSpec(name=" padded ")
    assert spec.name == "padded"
    assert spec.requires_approval is None
    assert spec.mutating is True


def test_tool_call_wire_arguments_prefers_raw() -> None:
    assert ToolCall(call_id="c", name="t", args={"a": 1}).wire_arguments() == '{"a":1}'
    assert ToolCall(call_id="c", name="t", args={}, raw_arguments='{"a": 1}').wire_arguments() == '{"a": 1}'


def test_tool_spec_to_openai_tool_shape() -> None:
    spec = ToolSpec(name="browser_open", description="open", parameters={"type": "object", "properties": {"url": {"type": "string"}}})
    tool = tool_spec_to_openai_tool(spec)
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "browser_open"
    assert tool["function"]["parameters"]["properties"]["url"]["type"] == "string"
