"""Tests for agents/protocol.py -- the tool-call wire protocol."""

from agents.protocol import (
    ToolCall,
    format_tool_call,
    format_tool_result,
    has_tool_calls,
    parse_plan_tag,
    parse_tool_calls,
    strip_tool_result,
)

import pytest


class TestParseToolCalls:
    def test_single_block(self) -> None:
        text = 'I will look.\n<tool_call>\n{"name": "list_files", "parameters": {"path": "."}}\n</tool_call>'
        assert parse_tool_calls(text) == [ToolCall("list_files", {"path": "."})]

    def test_blocks_in_document_order(self) -> None:
        text = (
            '<tool_call>{"name": "read_file", "parameters": {"path": "a.py"}}</tool_call>\n'
            "some prose\n"
            '<tool_call>{"name": "read_file", "parameters": {"path": "b.py"}}</tool_call>'
        )
        assert [c.parameters["path"] for c in parse_tool_calls(text)] == ["a.py", "b.py"]

    def test_malformed_block_skipped_siblings_kept(self) -> None:
        text = (
            '<tool_call>{"name": "read_file", "parameters": {"path": "a.py"}}</tool_call>'
            "<tool_call>{not json}</tool_call>"
            '<tool_call>{"name": "list_files"}</tool_call>'
        )
        calls = parse_tool_calls(text)
        assert [c.name for c in calls] == ["read_file", "list_files"]

    def test_missing_parameters_default_to_empty(self) -> None:
        assert parse_tool_calls('<tool_call>{"name": "get_git_context"}</tool_call>') == [
            ToolCall("get_git_context", {})
        ]

    def test_fenced_payload(self) -> None:
        text = '<tool_call>\n```json\n{"name": "search", "parameters": {"query": "TODO"}}\n```\n</tool_call>'
        assert parse_tool_calls(text) == [ToolCall("search", {"query": "TODO"})]

    @pytest.mark.parametrize(
        "payload",
        [
            '["read_file"]',
            '{"parameters": {}}',
            '{"name": "  "}',
            '{"name": "read_file", "parameters": "a.py"}',
        ],
    )
    def test_invalid_payload_shapes(self, payload: str) -> None:
        assert parse_tool_calls(f"<tool_call>{payload}</tool_call>") == []

    def test_no_blocks(self) -> None:
        assert parse_tool_calls("Just an answer.") == []
        assert not has_tool_calls("Just an answer.")

    def test_unterminated_block_ignored(self) -> None:
        assert parse_tool_calls('<tool_call>{"name": "read_file"}') == []

    def test_format_tool_call_parses_back(self) -> None:
        call = ToolCall("write_file", {"path": "x.txt", "content": "a\nb"})
        assert parse_tool_calls(format_tool_call(call)) == [call]


class TestToolResultEnvelope:
    def test_format(self) -> None:
        assert format_tool_result("ok") == "\n<tool_result>\nok\n</tool_result>\n"

    def test_strip_inverse(self) -> None:
        text = "line one\nline two"
        assert strip_tool_result(format_tool_result(text)) == text

    def test_strip_empty(self) -> None:
        assert strip_tool_result(format_tool_result("")) == ""

    def test_strip_rejects_other_text(self) -> None:
        with pytest.raises(ValueError):
            strip_tool_result("ok")


class TestToolCallDescribe:
    def test_run_cmd_shows_command(self) -> None:
        assert ToolCall("run_cmd", {"command": "cargo test"}).describe() == "cargo test"

    def test_content_hidden(self) -> None:
        described = ToolCall("write_file", {"path": "a.py", "content": "secret body"}).describe()
        assert described == "write_file(path='a.py')"


class TestParsePlanTag:
    def test_plan_tag(self) -> None:
        assert parse_plan_tag("<plan>\n1. read\n2. patch\n</plan>\nrest") == "1. read\n2. patch"

    def test_fallback_whole_response(self) -> None:
        assert parse_plan_tag("  just do it  ") == "just do it"
