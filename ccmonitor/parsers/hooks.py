"""Classify push records forwarded by Claude Code hooks."""
from __future__ import annotations

import json
from typing import Any

from ccmonitor import config
from ccmonitor.date_utils import normalize_timestamp, utc_now_iso
from ccmonitor.models import HookEvent, ToolCall
from ccmonitor.parsers.transcript import ClassifiedEntry, is_external_tool

SESSION_START = "SessionStart"
SESSION_END = "SessionEnd"
USER_PROMPT_SUBMIT = "UserPromptSubmit"
POST_TOOL_USE = "PostToolUse"


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def hook_content(event: HookEvent) -> str | None:
    if event.hook_event_name == USER_PROMPT_SUBMIT and event.prompt:
        return event.prompt
    if event.tool_input:
        return json.dumps(event.tool_input, default=str)[: config.HOOK_CONTENT_LIMIT]
    return None


def tool_response_failed(response: Any) -> bool:
    """A tool succeeded unless its response carries ``is_error: true``."""
    return isinstance(response, dict) and response.get("is_error") is True


def _tool_calls(event: HookEvent) -> list[ToolCall]:
    if event.hook_event_name != POST_TOOL_USE or not is_external_tool(event.tool_name):
        return []
    return [ToolCall(
        tool_use_id=event.tool_use_id or None,
        tool_name=event.tool_name,
        failed=tool_response_failed(event.tool_response),
    )]


def classify_hook_event(event: HookEvent) -> ClassifiedEntry:
    """Event row and session seed for one push record.

    Push records carry no token usage, so the session receives no additive
    deltas. ``SessionEnd`` also stamps the session's end time, and
    ``PostToolUse`` for an external tool counts one invocation.
    """
    timestamp = normalize_timestamp(event.timestamp) or utc_now_iso()
    session: dict[str, Any] = {"id": event.session_id, "started_at": timestamp}
    if event.hook_event_name == SESSION_END:
        session["ended_at"] = timestamp

    event_row = {
        "session_id": event.session_id,
        "event_type": "hook",
        "hook_event_name": event.hook_event_name,
        "entry_type": None,
        "tool_name": event.tool_name or None,
        "tool_input": _dumps(event.tool_input),
        "tool_response": _dumps(event.tool_response),
        "content": hook_content(event),
        "timestamp": timestamp,
        "uuid": None,
        "parent_uuid": None,
        "raw_data": event.model_dump_json(),
    }
    tool_names = [event.tool_name] if event.tool_name else []
    return ClassifiedEntry(
        event=event_row,
        session=session,
        tool_names=tool_names,
        tool_calls=_tool_calls(event),
    )
