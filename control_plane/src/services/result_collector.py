"""Turn the agent server's message history into a session's structured output."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Iterable, Optional, Sequence

from ..models.agent_server import FileDiff, Message, MessagePart, ReasoningPart, TextPart, Todo, ToolPart
from ..models.session import SessionOutput, TodoItem, ToolCallRecord

logger = logging.getLogger(__name__)

TOOL_RESULT_LIMIT = 500
TRACE_PREVIEW_LIMIT = 100


def looks_like_system_prompt(text: str, system_prompt: Optional[str] = None) -> bool:
    """True when ``text`` is the system prompt echoed back by the model."""
    stripped = text.strip()
    if system_prompt and stripped == system_prompt.strip():
        return True
    return stripped.startswith("# ") and "## Context" in stripped and "## Rules" in stripped


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


@dataclass
class CollectedResult:
    response: str = ""
    thinking: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    changed_files: list[str] = field(default_factory=list)

    def to_output(self, source: str = "poll") -> SessionOutput:
        return SessionOutput(
            response=self.response,
            thinking=list(self.thinking),
            tool_calls=list(self.tool_calls),
            todos=list(self.todos),
            changed_files=list(self.changed_files),
            source=source,
        )


def collect_result(
    messages: Sequence[Message],
    todos: Iterable[Todo] = (),
    diffs: Iterable[FileDiff] = (),
    system_prompt: Optional[str] = None,
) -> CollectedResult:
    """Split the conversation into the final answer and the work that led to it.

    The last text part of the last non-user message is the response. Every
    earlier text, reasoning and tool part goes to the thinking trace. When
    the last part is not text, the latest trace entry is promoted to the
    response.
    """
    result = CollectedResult()
    replies = [message for message in messages if message.role != "user"]

    for index, message in enumerate(replies):
        is_last_message = index == len(replies) - 1
        for part_index, part in enumerate(message.parts):
            is_last_part = part_index == len(message.parts) - 1
            if isinstance(part, TextPart):
                if not part.text:
                    continue
                if looks_like_system_prompt(part.text, system_prompt):
                    logger.debug(f"Skipping system prompt echo ({len(part.text)} chars)")
                    continue
                if is_last_message and is_last_part:
                    result.response = part.text
                else:
                    result.thinking.append(part.text)
            elif isinstance(part, ReasoningPart):
                if part.text:
                    result.thinking.append(f"💭 {part.text}")
            elif isinstance(part, ToolPart):
                state = part.state
                output = state.error if state.status == "error" else state.output
                result_text = _stringify(output)
                result.tool_calls.append(
                    ToolCallRecord(
                        name=part.tool,
                        status=state.status,
                        args=state.input,
                        result=result_text[:TOOL_RESULT_LIMIT] if result_text else None,
                    )
                )
                preview = json.dumps(state.input or {}, default=str)[:TRACE_PREVIEW_LIMIT]
                result.thinking.append(f"🔧 {part.tool}({preview})")

    if not result.response and result.thinking:
        result.response = result.thinking.pop()

    result.todos = [
        TodoItem(id=todo.id, content=todo.content, status=todo.status, priority=todo.priority)
        for todo in todos
    ]
    result.changed_files = list(dict.fromkeys(diff.path for diff in diffs))

    logger.info(
        f"Extracted: thinking={len(result.thinking)} parts, "
        f"response={len(result.response)} chars, tools={len(result.tool_calls)}"
    )
    return result


# ---------------------------------------------------------------------------
# Progress log lines
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")


def humanize_tool_name(raw: str) -> str:
    """``automation.saveArtifact`` -> ``Save Artifact``; ``read_file`` -> ``Read file``."""
    if not raw or raw == "unknown":
        return "Tool"
    name = raw.split(".")[-1] or raw
    name = name.replace("_", " ")
    name = _CAMEL_BOUNDARY.sub(r" \1", name).strip()
    return name[:1].upper() + name[1:]


def _task_action(raw: str) -> Optional[str]:
    for verb, label in (("create", "Creating"), ("close", "Completing"), ("update", "Updating")):
        if f"beads.{verb}" in raw:
            return label
    return None


def format_tool_line(part: ToolPart) -> Optional[str]:
    raw = part.tool
    name = humanize_tool_name(raw)
    status = part.state.status

    if status == "error":
        return f"❌ {name} failed"
    if status == "completed":
        if "saveArtifact" in raw:
            saved = part.state.output if isinstance(part.state.output, dict) else {}
            return f"✅ Saved: {saved.get('saved') or saved.get('name') or 'artifact'}"
        if "completeStage" in raw:
            return "✅ Stage completed"
        if "beads.create" in raw:
            created = part.state.output if isinstance(part.state.output, dict) else {}
            return f"✅ Created: {created.get('title') or 'task'}"
        if "beads.close" in raw:
            return "✅ Task completed"
        return f"✅ {name}"

    if "saveArtifact" in raw:
        return "📄 Saving artifact..."
    if "completeStage" in raw:
        return "🏁 Completing stage..."
    action = _task_action(raw)
    if action:
        return f"📋 {action} task..."
    return f"🔧 {name}..."


def format_log_lines(parts: Iterable[MessagePart]) -> list[str]:
    """Readable progress lines for newly seen message parts.

    Only tool activity is logged; text, reasoning and structural parts are
    left to the final output.
    """
    lines: list[str] = []
    for part in parts:
        if isinstance(part, ToolPart) and part.tool:
            line = format_tool_line(part)
            if line:
                lines.append(line)
    return lines


def flatten_parts(messages: Sequence[Message]) -> list[MessagePart]:
    """All parts of all messages in conversation order."""
    return [part for message in messages for part in message.parts]


__all__ = [
    "CollectedResult",
    "collect_result",
    "format_log_lines",
    "format_tool_line",
    "flatten_parts",
    "humanize_tool_name",
    "looks_like_system_prompt",
    "TOOL_RESULT_LIMIT",
]
