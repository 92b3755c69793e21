"""Interactive prompt detection in assistant output.

Scans text for the prompt shapes the assistant prints when it wants a
human decision and parses them into a ``Prompt``. Pattern families are
tried in a fixed order and the first match wins:

    tool usage  ->  permission question  ->  multiple choice  ->  file selection

Partial matches return None; a Prompt is never produced with an
incomplete option list.
"""
from __future__ import annotations

import re

from .models import Prompt, PromptOption, PromptType

TOOL_USAGE_RE = re.compile(
    r"Tool use\s*\n(?P<body>[\s\S]*?)Do you want to proceed\?[ \t]*\n(?P<options>[\s\S]*)",
    re.IGNORECASE,
)
PERMISSION_RE = re.compile(
    r"^(?:Can I|May I|Should I)\s+(?P<action>.+?)\?\s*$",
    re.IGNORECASE | re.MULTILINE,
)
MULTIPLE_CHOICE_RE = re.compile(
    r"(?:Choose one(?:\s+\w+)*|Select an option|Which would you prefer|Here are your options?)"
    r"[^\n]*?:[ \t]*\n(?P<options>(?:[ \t]*(?:>[ \t]*)?\d+\.?[ \t]*.+\n?)+)",
    re.IGNORECASE,
)
FILE_SELECTION_RE = re.compile(
    r"(?:Which file|Select a file|Choose from)[^\n]*\n"
    r"(?P<options>(?:[ \t]*(?:>[ \t]*)?\d+\.?[ \t]*.+\n?)+)",
    re.IGNORECASE,
)

_NUMBERED_LINE_RE = re.compile(r"^\s*(?:>\s*)?(?P<num>\d+)\.?\s*(?P<label>.+?)\s*$")
_TRAILING_ANNOTATION_RE = re.compile(r"\s*\(esc\)\s*$", re.IGNORECASE)
_TOOL_NAME_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][\w:.-]*)")
_DONT_ASK_RE = re.compile(r"^yes\b.*don['’]?t ask", re.IGNORECASE)
_DIFFERENTLY_RE = re.compile(r"^no\b.*differently", re.IGNORECASE)


def _numbered_lines(block: str) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    for line in block.splitlines():
        if not line.strip():
            continue
        match = _NUMBERED_LINE_RE.match(line)
        if not match:
            break
        label = _TRAILING_ANNOTATION_RE.sub("", match.group("label")).strip()
        if label:
            entries.append((match.group("num"), label))
    return entries


def _slug(label: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")


def parse_option(number: str, label: str) -> PromptOption:
    """Classify a yes/no style option by its keywords."""
    lowered = label.lower()
    if lowered == "yes":
        return PromptOption(id=number, label=label, value="yes", is_default=True)
    if _DONT_ASK_RE.search(label):
        return PromptOption(
            id=number, label=label, value="yes_dont_ask", is_recommended=True,
        )
    if _DIFFERENTLY_RE.search(label):
        return PromptOption(id=number, label=label, value="no_explain")
    if lowered == "no":
        return PromptOption(id=number, label=label, value="no")
    return PromptOption(id=number, label=label, value=_slug(label))


def parse_numbered_options(block: str, *, keep_labels: bool = False) -> list[PromptOption]:
    options: list[PromptOption] = []
    for index, (number, label) in enumerate(_numbered_lines(block)):
        options.append(PromptOption(
            id=number,
            label=label,
            value=label if keep_labels else _slug(label),
            is_default=index == 0,
        ))
    return options


def _detect_tool_usage(text: str) -> Prompt | None:
    match = TOOL_USAGE_RE.search(text)
    if not match:
        return None
    entries = _numbered_lines(match.group("options"))
    if [num for num, _ in entries] != ["1", "2", "3"]:
        return None
    options = [parse_option(num, label) for num, label in entries]

    body = match.group("body").strip()
    tool_name = ""
    if body:
        name_match = _TOOL_NAME_RE.match(body.splitlines()[0])
        if name_match:
            tool_name = name_match.group("name")
    return Prompt(
        type=PromptType.TOOL_USAGE,
        title="Tool Usage Confirmation",
        message=f"Claude wants to use {tool_name}" if tool_name else "Claude wants to use a tool",
        options=options,
        context={
            "toolName": tool_name,
            "toolDescription": body,
            "fullMessage": text,
        },
    )


def _detect_permission(text: str) -> Prompt | None:
    match = PERMISSION_RE.search(text)
    if not match:
        return None
    return Prompt(
        type=PromptType.PERMISSION,
        title="Permission Request",
        message=match.group(0).strip(),
        options=[
            PromptOption(id="1", label="Yes", value="yes", is_default=True),
            PromptOption(id="2", label="No", value="no"),
        ],
        context={"action": match.group("action"), "fullMessage": text},
    )


def _detect_block(
    text: str,
    pattern: re.Pattern[str],
    prompt_type: PromptType,
    title: str,
    *,
    keep_labels: bool = False,
) -> Prompt | None:
    match = pattern.search(text)
    if not match:
        return None
    options = parse_numbered_options(match.group("options"), keep_labels=keep_labels)
    if not options:
        return None
    return Prompt(
        type=prompt_type,
        title=title,
        message=text,
        options=options,
        context={"fullMessage": text},
    )


def detect_prompt(
    text: str,
    *,
    conversation_id: str | None = None,
    session_id: str | None = None,
) -> Prompt | None:
    """Return the first interactive prompt found in *text*, or None."""
    if not text or not text.strip():
        return None
    cleaned = text.strip() + "\n"

    # A tool-usage header with a broken option list is not retried as
    # another family.
    if TOOL_USAGE_RE.search(cleaned):
        prompt = _detect_tool_usage(cleaned)
    else:
        prompt = (
            _detect_permission(cleaned)
            or _detect_block(
                cleaned, MULTIPLE_CHOICE_RE, PromptType.MULTIPLE_CHOICE,
                "Multiple Choice Selection",
            )
            or _detect_block(
                cleaned, FILE_SELECTION_RE, PromptType.FILE_SELECTION,
                "File Selection", keep_labels=True,
            )
        )
    if prompt is None:
        return None
    prompt.conversation_id = conversation_id
    prompt.session_id = session_id
    return prompt
