"""Tag extraction from free-form model output.

TOLERANT MODE: malformed or unterminated tags never raise. They come back as
``Unrecognized`` entries (and are logged) so a single bad block cannot kill a loop.

Recognized blocks:
    <use_tool><server>git</server><tool>git_status</tool><arguments>{}</arguments></use_tool>
    <hypothesis>...</hypothesis>
    <report>HYPOTHESIS: ... CONFIRMED: ... </report>   (or a JSON object body)
    <solution confidence="97">...</solution>
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from bugsquad.core.errors import ParseError
from bugsquad.core.models import Report

logger = logging.getLogger(__name__)

TAG_NAMES = ("use_tool", "hypothesis", "report", "solution")

_OPEN_TAG = re.compile(r"<(use_tool|hypothesis|report|solution)(\s[^>]*)?>", re.IGNORECASE)
_FIELD_PATTERNS = {
    name: re.compile(rf"<{name}>\s*([\s\S]*?)\s*</{name}>", re.IGNORECASE)
    for name in ("server", "tool", "arguments")
}
_JSON_FENCE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$")
_ATTR_CONFIDENCE = re.compile(r"confidence\s*=\s*[\"']?\s*(\d+(?:\.\d+)?)\s*%?\s*[\"']?", re.IGNORECASE)
_LINE_CONFIDENCE = re.compile(r"^\s*confidence\s*[:=]\s*(\d+(?:\.\d+)?)\s*%?", re.IGNORECASE | re.MULTILINE)
_REPORT_SECTION = re.compile(
    r"^\s*(HYPOTHESIS|CONFIRMED|INVESTIGATION|CHANGES MADE|CHANGES|CONFIDENCE)\s*:[ \t]*",
    re.IGNORECASE | re.MULTILINE,
)

_CONFIRMED_TRUE = {"yes", "true", "confirmed", "y"}
_CONFIRMED_FALSE = {"no", "false", "refuted", "rejected", "disproved", "n"}
_CONFIDENCE_WORDS = {"high": 85.0, "medium": 60.0, "low": 30.0}


# --- Tagged variants ---


class ToolCall(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    server: str
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.server}.{self.tool}"


class Hypothesis(BaseModel):
    kind: Literal["hypothesis"] = "hypothesis"
    text: str


class ReportTag(BaseModel):
    kind: Literal["report"] = "report"
    report: Report


class Solution(BaseModel):
    kind: Literal["solution"] = "solution"
    text: str
    confidence: float | None = None


class Unrecognized(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    raw: str
    reason: str


Tag = ToolCall | Hypothesis | ReportTag | Solution | Unrecognized


@dataclass
class ParsedReply:
    """Tags from one model reply, grouped by kind (document order kept per kind)."""

    tags: list[Tag] = field(default_factory=list)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [t for t in self.tags if isinstance(t, ToolCall)]

    @property
    def hypotheses(self) -> list[Hypothesis]:
        return [t for t in self.tags if isinstance(t, Hypothesis)]

    @property
    def reports(self) -> list[ReportTag]:
        return [t for t in self.tags if isinstance(t, ReportTag)]

    @property
    def solutions(self) -> list[Solution]:
        return [t for t in self.tags if isinstance(t, Solution)]

    @property
    def skipped(self) -> list[Unrecognized]:
        return [t for t in self.tags if isinstance(t, Unrecognized)]

    @property
    def is_actionable(self) -> bool:
        """True if the reply contains at least one well-formed tag."""
        return any(not isinstance(t, Unrecognized) for t in self.tags)


# --- Block parsers ---


def _strip_fence(body: str) -> str:
    match = _JSON_FENCE.match(body.strip())
    return match.group(1) if match else body.strip()


def _parse_tool_call(body: str) -> ToolCall:
    fields: dict[str, str] = {}
    for name, pattern in _FIELD_PATTERNS.items():
        match = pattern.search(body)
        if match:
            fields[name] = match.group(1).strip()

    if not fields.get("server") or not fields.get("tool"):
        raise ParseError("tool call is missing <server> or <tool>")

    arguments: dict[str, Any] = {}
    raw_args = fields.get("arguments")
    if raw_args:
        try:
            arguments = json.loads(_strip_fence(raw_args))
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid JSON in <arguments>: {e}")
        if not isinstance(arguments, dict):
            raise ParseError("<arguments> must be a JSON object")

    return ToolCall(server=fields["server"], tool=fields["tool"], arguments=arguments)


def parse_confirmed(value: Any) -> bool | None:
    """Map free-form confirmation values to True/False/None (unknown)."""
    if isinstance(value, bool) or value is None:
        return value
    words = re.findall(r"[a-z]+", str(value).lower())
    if not words:
        return None
    if words[0] in _CONFIRMED_TRUE:
        return True
    if words[0] in _CONFIRMED_FALSE:
        return False
    return None


def parse_confidence(value: Any) -> float:
    """Map '87%', '87', 0.87-style or high/medium/low values to 0..100."""
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value or "").strip().lower()
        match = re.search(r"\d+(?:\.\d+)?", text)
        if match:
            number = float(match.group(0))
        else:
            return next((v for k, v in _CONFIDENCE_WORDS.items() if k in text), 0.0)
    if isinstance(value, float) and 0.0 < number <= 1.0:
        number *= 100.0
    return max(0.0, min(100.0, number))


def _parse_report(body: str) -> Report:
    text = _strip_fence(body)

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid JSON report: {e}")
        if not isinstance(data, dict):
            raise ParseError("JSON report must be an object")
        data["confirmed"] = parse_confirmed(data.get("confirmed"))
        data["confidence"] = parse_confidence(data.get("confidence"))
        data.setdefault("hypothesis", "")
        try:
            return Report.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"report does not match schema: {e}")

    sections: dict[str, str] = {}
    matches = list(_REPORT_SECTION.finditer(text))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        key = match.group(1).upper()
        if key == "CHANGES MADE":
            key = "CHANGES"
        sections[key] = text[match.end() : end].strip()

    if not sections:
        # Free text report: keep it as the investigation narrative
        return Report(hypothesis="", investigation=text)

    return Report(
        hypothesis=sections.get("HYPOTHESIS", ""),
        confirmed=parse_confirmed(sections.get("CONFIRMED")),
        investigation=sections.get("INVESTIGATION", ""),
        changes=sections.get("CHANGES", ""),
        confidence=parse_confidence(sections.get("CONFIDENCE")),
    )


def _parse_solution(body: str, attributes: str) -> Solution:
    text = body.strip()
    if not text:
        raise ParseError("empty <solution>")

    confidence: float | None = None
    match = _ATTR_CONFIDENCE.search(attributes or "")
    if match is None:
        match = _LINE_CONFIDENCE.search(text)
    if match:
        confidence = max(0.0, min(100.0, float(match.group(1))))
    return Solution(text=text, confidence=confidence)


def _parse_block(name: str, attributes: str, body: str) -> Tag:
    if name == "use_tool":
        return _parse_tool_call(body)
    if name == "hypothesis":
        text = body.strip()
        if not text:
            raise ParseError("empty <hypothesis>")
        return Hypothesis(text=text)
    if name == "report":
        return ReportTag(report=_parse_report(body))
    return _parse_solution(body, attributes)


def parse_tags(text: str) -> list[Tag]:
    """Extract all recognized blocks in document order.

    Never raises. A block is unterminated when its closing tag is missing or
    another opening tag of the same kind appears first; such blocks are
    reported as ``Unrecognized`` and scanning resumes after the opening tag.
    """
    tags: list[Tag] = []
    if not text:
        return tags

    pos = 0
    while True:
        match = _OPEN_TAG.search(text, pos)
        if match is None:
            break

        name = match.group(1).lower()
        attributes = match.group(2) or ""
        body_start = match.end()
        close = re.compile(rf"</{name}\s*>", re.IGNORECASE).search(text, body_start)
        reopen = re.compile(rf"<{name}(\s[^>]*)?>", re.IGNORECASE).search(text, body_start)

        if close is None or (reopen is not None and reopen.start() < close.start()):
            reason = f"unterminated <{name}>"
            logger.warning(f"Skipping malformed tag: {reason}")
            tags.append(Unrecognized(raw=text[match.start() : match.start() + 200], reason=reason))
            pos = body_start
            continue

        raw = text[match.start() : close.end()]
        try:
            tags.append(_parse_block(name, attributes, text[body_start : close.start()]))
        except ParseError as e:
            logger.warning(f"Skipping malformed <{name}> tag: {e}")
            tags.append(Unrecognized(raw=raw[:500], reason=str(e)))
        pos = close.end()

    return tags


def parse_reply(text: str) -> ParsedReply:
    """Parse one model reply into grouped tags."""
    return ParsedReply(tags=parse_tags(text))
