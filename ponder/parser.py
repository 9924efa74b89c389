"""Turn free-form ReAct text into reasoning steps and tool calls.

Parsing happens in three independent stages:

1. ``lex_sections`` splits the text into labelled sections (Thought, Action,
   Observation, Final Answer) on line boundaries.
2. ``fold_steps`` folds the ordered sections into ReasoningStep records.
3. ``parse_action`` turns one Action section into a ToolCall.

``parse_response`` glues the three together and applies the final-answer
heuristics.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable

from .models import ParsedResponse, ReasoningStep, ToolCall

logger = logging.getLogger(__name__)

THOUGHT = "thought"
ACTION = "action"
ACTION_INPUT = "action input"
OBSERVATION = "observation"
FINAL = "final answer"

CONCLUSIVE_LENGTH = 100

_MARKER = re.compile(
    r"^\s*(?:[#>*_`\-]+\s*)?"
    r"(?P<label>thought|action\s+input|action|observation|final\s+answer)"
    r"(?:\s*\d+)?\s*[*_]*\s*[:：]\s*[*_]*\s?(?P<rest>.*)$",
    re.IGNORECASE,
)

_CONCLUSIVE = re.compile(
    r"\b(?:in conclusion|to conclude|in summary|to summari[sz]e|overall|"
    r"therefore|the answer is|i have (?:completed|finished)|task (?:is )?complete)\b"
    r"|总结|结论|综上所述|因此|总之|答案是|已完成",
    re.IGNORECASE,
)

_NO_ACTION = {"none", "n/a", "na", "null", "nothing", "no action", "无"}


@dataclass
class Section:
    kind: str
    text: str


# -- Stage 1: sections -------------------------------------------------------


def lex_sections(text: str) -> list[Section]:
    """Split text into labelled sections, in encounter order.

    A section starts at a line beginning with a known label and runs until
    the next labelled line or the end of input. Text before the first label
    is dropped. An ``Action Input`` section directly after an ``Action`` is
    merged into it.
    """
    sections: list[Section] = []
    current: tuple[str, list[str]] | None = None

    def close():
        if current is None:
            return
        kind, lines = current
        body = "\n".join(lines).strip()
        if kind == ACTION_INPUT:
            if sections and sections[-1].kind == ACTION:
                sections[-1].text = f"{sections[-1].text}\n{body}".strip()
                return
            kind = ACTION
        sections.append(Section(kind, body))

    for line in (text or "").splitlines():
        m = _MARKER.match(line)
        if m:
            close()
            label = " ".join(m.group("label").lower().split())
            current = (label, [m.group("rest")])
        elif current is not None:
            current[1].append(line)
    close()
    return sections


# -- Stage 2: steps ----------------------------------------------------------


def fold_steps(
    sections: list[Section],
    action_parser: Callable[[str], ToolCall | None] | None = None,
) -> list[ReasoningStep]:
    """Fold an ordered section list into reasoning steps.

    A Thought opens a new step (closing the current one if it already has a
    thought). Actions and Observations attach only to a step that has a
    thought; an Observation closes its step. Final Answer sections are
    ignored here.
    """
    action_parser = action_parser or parse_action
    steps: list[ReasoningStep] = []
    current: ReasoningStep | None = None

    for section in sections:
        if section.kind == THOUGHT:
            if current is not None:
                steps.append(current)
            current = ReasoningStep(thought=section.text)
        elif section.kind == ACTION:
            if current is None:
                logger.debug("dropping action without a preceding thought: %r", section.text)
                continue
            call = action_parser(section.text)
            if call is None:
                logger.warning("could not parse action: %r", section.text[:200])
            current.action = call
        elif section.kind == OBSERVATION:
            if current is None:
                continue
            current.observation = section.text
            steps.append(current)
            current = None

    if current is not None:
        steps.append(current)
    return steps


# -- Final-answer extraction -------------------------------------------------


def extract_final_answer(sections: list[Section]) -> str | None:
    for section in sections:
        if section.kind == FINAL:
            return section.text
    return None


def looks_conclusive(text: str) -> bool:
    """Heuristic: a long thought, or one with a conclusion keyword, is an answer."""
    return len(text) > CONCLUSIVE_LENGTH or bool(_CONCLUSIVE.search(text))


def parse_response(
    text: str, primary_params: dict[str, str] | None = None
) -> ParsedResponse:
    """Parse one assistant message into steps and an optional final answer."""
    sections = lex_sections(text)
    final_answer = extract_final_answer(sections)
    steps = fold_steps(sections, lambda s: parse_action(s, primary_params))

    if final_answer is None and steps:
        last = steps[-1]
        if last.action is None and last.thought and looks_conclusive(last.thought):
            final_answer = last.thought
            last.finish = True

    requires_more = final_answer is None and bool(steps) and not steps[-1].finish
    return ParsedResponse(
        steps=steps, final_answer=final_answer, requires_more_actions=requires_more
    )


# -- Stage 3: actions --------------------------------------------------------


_IDENT = re.compile(r"[A-Za-z_][\w.\-]*")
_KEY = re.compile(r"([A-Za-z_][\w\-]*)\s*(?:=|:(?=\s|[\"']))\s*")
_NUMBER = re.compile(r"-?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_NEXT_KEY = re.compile(r"\s+(?=[A-Za-z_][\w\-]*\s*=)")
_URL = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_FENCE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?```$", re.DOTALL)


class _ScanError(ValueError):
    pass


def _clean_action_text(text: str) -> str:
    text = text.strip()
    m = _FENCE.match(text)
    if m:
        text = m.group(1).strip()
    text = text.strip("`").strip()
    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1].strip()
        if _IDENT.match(inner):
            text = inner
    return text


def _scan_quoted(s: str, pos: int) -> int:
    """Return the index just past the closing quote that matches s[pos]."""
    quote = s[pos]
    i = pos + 1
    while i < len(s):
        c = s[i]
        if c == "\\":
            i += 2
            continue
        if c == quote:
            return i + 1
        i += 1
    raise _ScanError(f"unterminated string at {pos}")


def _scan_balanced(s: str, pos: int) -> int:
    """Return the index just past the bracket that closes s[pos]."""
    pairs = {"(": ")", "[": "]", "{": "}"}
    stack = [pairs[s[pos]]]
    i = pos + 1
    while i < len(s):
        c = s[i]
        if c in "\"'":
            i = _scan_quoted(s, i)
            continue
        if c in pairs:
            stack.append(pairs[c])
        elif c == stack[-1]:
            stack.pop()
            if not stack:
                return i + 1
        i += 1
    raise _ScanError(f"unbalanced {s[pos]!r} at {pos}")


def split_call(text: str) -> tuple[str, str, str] | None:
    """Split ``name(args) rest`` into name, raw argument text and trailing text."""
    m = _IDENT.match(text)
    if not m:
        return None
    pos = m.end()
    while pos < len(text) and text[pos] in " \t":
        pos += 1
    if pos >= len(text) or text[pos] != "(":
        return None
    try:
        end = _scan_balanced(text, pos)
    except _ScanError:
        # Tolerate a missing closing parenthesis at end of text.
        return m.group(0), text[pos + 1 :].rstrip().rstrip(")"), ""
    return m.group(0), text[pos + 1 : end - 1], text[end:]


def coerce_scalar(token: str) -> Any:
    """Coerce a bare token to bool/None/number, else keep it as a string."""
    lowered = token.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "undefined"):
        return None
    if _NUMBER.fullmatch(token):
        value = float(token)
        if math.isfinite(value):
            if re.fullmatch(r"-?\d+", token):
                return int(token)
            return value
    return token


def _unquote_single(body: str) -> str:
    return re.sub(r"\\(['\\])", r"\1", body)


def _scan_value(s: str, pos: int) -> tuple[Any, int]:
    c = s[pos]
    if c == '"':
        end = _scan_quoted(s, pos)
        raw = s[pos:end]
        try:
            return json.loads(raw), end
        except json.JSONDecodeError:
            return raw[1:-1], end
    if c == "'":
        end = _scan_quoted(s, pos)
        return _unquote_single(s[pos + 1 : end - 1]), end
    if c in "[{":
        end = _scan_balanced(s, pos)
        raw = s[pos:end]
        try:
            return json.loads(raw), end
        except json.JSONDecodeError:
            return raw, end
    end = s.find(",", pos)
    if end == -1:
        end = len(s)
    chunk = s[pos:end]
    m = _NEXT_KEY.search(chunk)
    if m:
        end = pos + m.start()
        chunk = s[pos:end]
    return coerce_scalar(chunk.strip()), end


def _scan_arguments(s: str) -> tuple[dict, list]:
    """Scan ``key=value`` pairs, allowing one leading quoted positional value."""
    pairs: dict = {}
    positional: list = []
    pos, n = 0, len(s)
    while True:
        while pos < n and (s[pos].isspace() or s[pos] == ","):
            pos += 1
        if pos >= n:
            break
        m = _KEY.match(s, pos)
        if m:
            pos = m.end()
            if pos >= n:
                raise _ScanError(f"missing value for {m.group(1)!r}")
            pairs[m.group(1)], pos = _scan_value(s, pos)
        elif not pairs and not positional and s[pos] in "\"'[{":
            value, pos = _scan_value(s, pos)
            positional.append(value)
        else:
            raise _ScanError(f"unexpected text at {pos}")
    return pairs, positional


def _strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'`":
        return text[1:-1]
    return text


def guess_parameter_name(value: Any) -> str:
    """Name a lone positional value by its shape."""
    if not isinstance(value, str):
        return "query"
    if _URL.match(value):
        return "url"
    if any(c in value for c in "*?[") or ("{" in value and "," in value):
        return "pattern"
    if "/" in value or "\\" in value or "." in value:
        return "file_path"
    return "query"


def parse_arguments(text: str, primary: str | None = None) -> dict:
    """Parse the text between a call's parentheses into a parameter mapping.

    Tried in order: a JSON object (or array, returned as ``{"args": [...]}``),
    ``key=value`` pairs with scalar coercion, and finally the whole text as a
    single positional value named after *primary* or guessed from its shape.
    """
    s = (text or "").strip()
    if not s:
        return {}

    if (s[0] == "{" and s[-1] == "}") or (s[0] == "[" and s[-1] == "]"):
        try:
            decoded = json.loads(s)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
        if isinstance(decoded, list):
            return {"args": decoded}

    try:
        pairs, positional = _scan_arguments(s)
    except _ScanError:
        pairs, positional = {}, []
        value: Any = _strip_quotes(s)
    else:
        value = positional[0] if positional else None

    if value is not None:
        name = primary or guess_parameter_name(value)
        pairs.setdefault(name, value)
    return pairs


def _parse_line_form(text: str, primary_params: dict[str, str]) -> ToolCall | None:
    """Parse ``ToolName`` followed by JSON, ``key: value`` lines or one bare value."""
    first, _, rest = text.partition("\n")
    first = first.strip().rstrip(":").strip()
    rest = rest.strip()

    m = _IDENT.match(first)
    if not m:
        return None
    name = m.group(0)
    inline = first[m.end() :].strip().lstrip(":").strip()
    if inline:
        rest = f"{inline}\n{rest}".strip()
    if name.lower() in _NO_ACTION or first.lower() in _NO_ACTION:
        return None

    if not rest:
        return ToolCall(tool=name, parameters={})
    if rest.startswith("{"):
        try:
            decoded = json.loads(rest)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return ToolCall(tool=name, parameters=decoded)

    params: dict = {}
    for line in rest.splitlines():
        line = line.strip().lstrip("-*").strip()
        if not line:
            continue
        km = re.match(r"([A-Za-z_][\w\-]*)\s*[:=]\s*(.*)$", line)
        if not km:
            break
        raw = km.group(2).strip()
        if raw[:1] in "\"'" and raw[-1:] == raw[:1] and len(raw) >= 2:
            params[km.group(1)] = json.loads(raw) if raw[0] == '"' else raw[1:-1]
        else:
            params[km.group(1)] = coerce_scalar(raw)
    if params:
        return ToolCall(tool=name, parameters=params)

    # a single bare line under the tool name is its positional argument
    if "=" in rest or (not inline and "\n" not in rest):
        parsed = parse_arguments(rest, primary_params.get(name))
        if parsed:
            return ToolCall(tool=name, parameters=parsed)
    return None


def parse_action(text: str, primary_params: dict[str, str] | None = None) -> ToolCall | None:
    """Parse one Action section into a ToolCall, or None if it cannot be read.

    ``invoke(command=...)`` is treated as a shell call.
    """
    primary_params = primary_params or {}
    cleaned = _clean_action_text(text or "")
    if not cleaned:
        return None

    call = split_call(cleaned)
    if call is not None:
        name, raw_args, _ = call
        is_invoke = name.lower() == "invoke"
        primary = "command" if is_invoke else primary_params.get(name)
        params = parse_arguments(raw_args, primary)
        if is_invoke:
            if "command" not in params:
                return None
            return ToolCall(tool="shell", parameters={"command": params["command"]})
        return ToolCall(tool=name, parameters=params)

    try:
        return _parse_line_form(cleaned, primary_params)
    except (json.JSONDecodeError, ValueError):
        return None


# -- Rendering ---------------------------------------------------------------


def _render_value(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def render_action(tool: str, parameters: dict | None) -> str:
    """Render a tool call back into ``Tool(key=value, ...)`` form."""
    args = ", ".join(f"{k}={_render_value(v)}" for k, v in (parameters or {}).items())
    return f"{tool}({args})"


def render_step(step: ReasoningStep) -> str:
    parts = [f"Thought: {step.thought}"]
    if step.action is not None:
        parts.append(f"Action: {render_action(step.action.tool, step.action.parameters)}")
    if step.observation is not None:
        parts.append(f"Observation: {step.observation}")
    return "\n".join(parts)
