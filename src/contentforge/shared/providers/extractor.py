"""Structured-output recovery for noisy model responses.

Models asked for JSON still wrap it in fences, prepend "Here is the
result:", leave trailing commas, or stop mid-object when they hit the
output cap.  :class:`StructuredExtractor` runs an ordered list of
strategies, from strict to permissive, and returns the first candidate
that parses *and* has the top-level shape the caller asked for.

Order matters: later strategies are more likely to produce false
positives, so a candidate is only ever accepted from the earliest
strategy that yields one.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

import structlog

from contentforge.domain.exceptions import MalformedOutputError
from contentforge.shared.providers.types import MISSING

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\r?\n?(.*?)\r?\n?[ \t]*```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED_KEY_RE = re.compile(r"([{,]\s*)'([^'\\\n]+)'\s*:")
_SINGLE_QUOTED_VALUE_RE = re.compile(r"(:\s*)'([^'\\\n]*)'(\s*[,}\]])")

_CLOSERS = {"{": "}", "[": "]"}


class StructuredExtractor:
    """Ordered-strategy JSON recovery.

    Args:
        repair_truncated: Let the tolerant strategy close brackets left open
            by a response that was cut off at the output cap.
    """

    def __init__(self, *, repair_truncated: bool = True) -> None:
        self._repair_truncated = repair_truncated
        self._strategies: list[tuple[str, Callable[[str, type | None], list[str]]]] = [
            ("as_is", self._as_is),
            ("fenced_block", self._fenced_block),
            ("bracket_slice", self._bracket_slice),
            ("prose_stripped", self._prose_stripped),
            ("tolerant", self._tolerant),
        ]

    # ── Public API ───────────────────────────────────────────
    def extract(self, raw: str, *, expect: type | None = None, default: Any = MISSING) -> str:
        """Return text that ``json.loads`` accepts and whose top level is *expect*.

        Without *expect* the shape is fixed by the first bracket in the
        payload; a nested value of the other kind is never returned.
        Bare scalars are not structured output and are rejected.

        Raises:
            MalformedOutputError: every strategy failed and no *default* was given.
        """
        text = raw or ""
        shape = expect if expect is not None else _inferred_shape(text)
        for name, strategy in self._strategies:
            for candidate in strategy(text, shape):
                if self._accepts(candidate, shape):
                    if name != "as_is":
                        logger.debug("structured_output_recovered", strategy=name)
                    return candidate

        if default is not MISSING:
            if expect is not None and not isinstance(default, expect):
                raise TypeError(
                    f"default of type {type(default).__name__} does not match expected {expect.__name__}"
                )
            logger.warning("structured_output_defaulted", raw_preview=text[:200])
            return json.dumps(default)

        raise MalformedOutputError("AI returned invalid JSON after all recovery strategies", raw=text)

    def parse(self, raw: str, *, expect: type | None = None, default: Any = MISSING) -> Any:
        """Like :meth:`extract` but returns the decoded value."""
        return json.loads(self.extract(raw, expect=expect, default=default))

    # ── Validation ───────────────────────────────────────────
    @staticmethod
    def _accepts(candidate: str, expect: type | None) -> bool:
        if not candidate or not candidate.strip():
            return False
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            return False
        if expect is None:
            return isinstance(value, (dict, list))
        return isinstance(value, expect)

    # ── Strategies ───────────────────────────────────────────
    @staticmethod
    def _as_is(text: str, expect: type | None) -> list[str]:
        return [text]

    @staticmethod
    def _fenced_block(text: str, expect: type | None) -> list[str]:
        return [m.group(1).strip() for m in _FENCE_RE.finditer(text)]

    @staticmethod
    def _bracket_slice(text: str, expect: type | None) -> list[str]:
        candidates: list[str] = []
        for opener in _openers_for(text, expect):
            start = text.find(opener)
            end = text.rfind(_CLOSERS[opener])
            if start != -1 and end > start:
                candidates.append(text[start : end + 1])
        return candidates

    @staticmethod
    def _prose_stripped(text: str, expect: type | None) -> list[str]:
        lines = text.strip().splitlines()
        first = next(
            (i for i, line in enumerate(lines) if line.lstrip().startswith(("{", "["))),
            None,
        )
        last = next(
            (i for i in range(len(lines) - 1, -1, -1) if lines[i].rstrip().endswith(("}", "]"))),
            None,
        )
        if first is None or last is None or last < first:
            return []
        return ["\n".join(lines[first : last + 1]).strip()]

    def _tolerant(self, text: str, expect: type | None) -> list[str]:
        sources = self._fenced_block(text, expect) + self._bracket_slice(text, expect) + [text]
        candidates = [_fix_syntax(s) for s in sources]
        if self._repair_truncated:
            for source in sources:
                repaired = _close_truncated(_fix_syntax(source), expect)
                if repaired is not None:
                    candidates.append(repaired)
        return candidates


# ── Helpers ──────────────────────────────────────────────────
def _inferred_shape(text: str) -> type | None:
    """Top-level type implied by the first bracket of the payload.

    A fenced block wins over surrounding prose.  ``None`` when no bracket
    appears at all.
    """
    fence = _FENCE_RE.search(text)
    body = fence.group(1) if fence else text
    for ch in body:
        if ch == "{":
            return dict
        if ch == "[":
            return list
    return None


def _openers_for(text: str, expect: type | None) -> list[str]:
    if expect is dict:
        return ["{"]
    if expect is list:
        return ["["]
    positions = sorted((text.find(o), o) for o in _CLOSERS if text.find(o) != -1)
    return [o for _, o in positions]


def _fix_syntax(text: str) -> str:
    fixed = _TRAILING_COMMA_RE.sub(r"\1", text)
    fixed = _SINGLE_QUOTED_KEY_RE.sub(lambda m: f'{m.group(1)}{json.dumps(m.group(2))}:', fixed)
    fixed = _SINGLE_QUOTED_VALUE_RE.sub(
        lambda m: f"{m.group(1)}{json.dumps(m.group(2))}{m.group(3)}", fixed
    )
    return fixed.strip()


def _scan(body: str) -> tuple[list[str], bool, int | None]:
    """Return (open bracket stack, ends-inside-string, last top-level-safe comma)."""
    stack: list[str] = []
    in_string = False
    escaped = False
    last_comma: int | None = None
    for i, ch in enumerate(body):
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]") and stack:
            stack.pop()
        elif ch == "," and stack:
            last_comma = i
    return stack, in_string, last_comma


def _close_truncated(text: str, expect: type | None) -> str | None:
    """Close the brackets of a response cut off mid-payload.

    An incomplete trailing member (open string, dangling key or colon) is
    dropped back to the last comma before closing.
    """
    openers = _openers_for(text, expect)
    if not openers:
        return None
    start = text.find(openers[0])
    if start == -1:
        return None
    body = text[start:].rstrip()

    stack, in_string, last_comma = _scan(body)
    if not stack:
        return None
    dangling = body.endswith((":", ",")) or (
        body.endswith('"') and stack[-1] == "{" and _dangling_key(body)
    )
    if in_string or dangling:
        if last_comma is None:
            return None
        body = body[:last_comma].rstrip()
        stack, in_string, _ = _scan(body)
        if in_string or not stack:
            return None
    body = body.rstrip().rstrip(",")
    return body + "".join(_CLOSERS[o] for o in reversed(stack))


def _dangling_key(body: str) -> bool:
    """True when the text ends with a quoted key inside an object, e.g. ``{"a": 1, "b"``."""
    head = body[: body.rfind('"', 0, len(body) - 1)].rstrip()
    return head.endswith(",") or head.endswith("{")
