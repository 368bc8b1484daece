"""Turn Claude Code transcript records into event rows and session deltas.

One JSONL line is decoded by ``parse_line``, validated into a typed record by
``parse_entry`` and classified by ``classify_entry``. Classification is pure:
it never touches storage, so the caller decides whether the result is stored.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ccmonitor import config
from ccmonitor.date_utils import normalize_timestamp, utc_now_iso
from ccmonitor.models import (
    AssistantEntry,
    ContentBlock,
    ToolCall,
    TranscriptEntry,
    UnknownEntry,
    UserEntry,
)
from ccmonitor.pricing import UsageBreakdown, calculate_cost, extract_usage

_ENTRY_TYPES: dict[str, type] = {
    "user": UserEntry,
    "assistant": AssistantEntry,
}

_FRAGMENT_SEPARATOR = "\n---\n"


class MalformedEntryError(ValueError):
    """A line that is not a JSON object or does not fit its record shape."""


def is_external_tool(name: str | None) -> bool:
    prefix = config.EXTERNAL_TOOL_PREFIX
    return bool(name and prefix and name.startswith(prefix))


@dataclass
class ClassifiedEntry:
    """Storage-ready form of one record."""

    event: dict[str, Any]
    session: dict[str, Any]
    tool_names: list[str] = field(default_factory=list)
    usage: UsageBreakdown | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def external_tools(self) -> list[str]:
        return [name for name in self.tool_names if is_external_tool(name)]


def parse_line(line: str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEntryError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedEntryError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_entry(data: dict[str, Any]) -> TranscriptEntry:
    """Validate a decoded record into the variant selected by its ``type``."""
    entry_type = data.get("type")
    model = _ENTRY_TYPES.get(entry_type) if isinstance(entry_type, str) else None
    try:
        if model is None:
            return UnknownEntry.model_validate({**data, "type": str(entry_type or "")})
        return model.model_validate(data)
    except ValidationError as exc:
        raise MalformedEntryError(f"Invalid {entry_type!r} record: {exc.error_count()} errors") from exc


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        if chunks and len(chunks) == len(content):
            return "\n".join(chunks)
    return json.dumps(content)


def _summarize_user(entry: UserEntry) -> tuple[str, str]:
    """Returns ``(entry_type, content)``."""
    content = entry.message.content
    if isinstance(content, str):
        return "user", content

    results = [block for block in content if block.type == "tool_result"]
    if results:
        fragments = [
            f"{'[Error] ' if block.is_error else ''}{_tool_result_text(block.content)}"
            for block in results
        ]
        return "tool_result", _FRAGMENT_SEPARATOR.join(fragments)

    texts = [block.text for block in content if block.type == "text" and block.text]
    return "user", "\n".join(texts)


def _failed_results(entry: UserEntry) -> list[ToolCall]:
    """Error outcomes, matched to their invocation by ``tool_use_id``."""
    content = entry.message.content
    if isinstance(content, str):
        return []
    return [
        ToolCall(tool_use_id=block.tool_use_id, failed=True)
        for block in content
        if block.type == "tool_result" and block.is_error and block.tool_use_id
    ]


def _render_tool_use(block: ContentBlock) -> str:
    if block.input is None:
        return ""
    rendered = json.dumps(block.input, indent=2)[: config.TOOL_INPUT_PREVIEW]
    return f"[Tool: {block.name}] {rendered}\n"


def _summarize_assistant(entry: AssistantEntry) -> tuple[str, list[str]]:
    """Returns ``(content, tool_names)``."""
    parts: list[str] = []
    tool_names: list[str] = []
    for block in entry.message.content:
        if block.type == "text":
            parts.append(block.text or "")
        elif block.type == "thinking":
            if block.thinking:
                parts.append(f"[Thinking] {block.thinking}\n")
        elif block.type == "tool_use" and block.name:
            tool_names.append(block.name)
            parts.append(_render_tool_use(block))
    return "".join(parts), tool_names


def _base_event(entry: TranscriptEntry, session_id: str, raw: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "session_id": session_id,
        "event_type": "transcript",
        "hook_event_name": None,
        "timestamp": normalize_timestamp(entry.timestamp) or utc_now_iso(),
        "uuid": entry.uuid or None,
        "parent_uuid": entry.parentUuid or None,
        "raw_data": json.dumps(raw if raw is not None else entry.model_dump(mode="json")),
    }


def _session_seed(entry: TranscriptEntry, session_id: str) -> dict[str, Any]:
    return {
        "id": session_id,
        "project_path": entry.cwd,
        "git_branch": entry.gitBranch,
        "version": entry.version,
        "started_at": normalize_timestamp(entry.timestamp),
    }


def classify_entry(
    entry: TranscriptEntry,
    session_id: str,
    raw: dict[str, Any] | None = None,
) -> ClassifiedEntry | None:
    """Build the event row and session deltas for one record.

    Returns None for record types that carry no event.
    """
    limit = config.CONTENT_LIMIT
    event = _base_event(entry, session_id, raw)
    session = _session_seed(entry, session_id)

    if isinstance(entry, UserEntry):
        entry_type, content = _summarize_user(entry)
        event.update({
            "entry_type": entry_type,
            "tool_name": None,
            "tool_input": None,
            "tool_response": content[:limit] if entry_type == "tool_result" else None,
            "content": content[:limit],
        })
        return ClassifiedEntry(event=event, session=session, tool_calls=_failed_results(entry))

    if isinstance(entry, AssistantEntry):
        message = entry.message
        content, tool_names = _summarize_assistant(entry)
        tool_calls = [
            ToolCall(tool_use_id=block.id or None, tool_name=block.name)
            for block in message.content
            if block.type == "tool_use" and is_external_tool(block.name)
        ]
        usage = extract_usage(message.usage)
        cost = calculate_cost(message.model, message.usage)
        event.update({
            "entry_type": "assistant",
            "tool_name": ", ".join(tool_names) if tool_names else None,
            "tool_input": None,
            "tool_response": None,
            "content": content[:limit],
            "tokens_input": usage.total_input,
            "tokens_output": usage.output,
            "cache_read_tokens": usage.cache_read,
            "cache_write_tokens": usage.cache_write,
            "cost": cost,
            "model": message.model or None,
        })
        session.update({
            "total_input_tokens": usage.total_input,
            "total_output_tokens": usage.output,
            "total_cache_read_tokens": usage.cache_read,
            "total_cache_write_tokens": usage.cache_write,
            "total_cost_usd": cost,
        })
        return ClassifiedEntry(
            event=event,
            session=session,
            tool_names=tool_names,
            usage=usage,
            tool_calls=tool_calls,
        )

    return None
