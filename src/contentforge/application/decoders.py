"""Per-schema decoders for AI JSON responses.

Model output is duck-typed: fields go missing, change type, or come back
out of range.  Each decoder here fills a missing or malformed field with a
safe default instead of raising, and reports whether it had to.  The result
is ``Ok(value)`` when the payload was fully valid and ``Default(value, reason)``
when anything was substituted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Default(Generic[T]):
    """A decoded value with at least one field substituted."""

    value: T
    reason: str


Decoded = Union[Ok[T], Default[T]]
Decoder = Callable[[Any], "Decoded[dict[str, Any]]"]

ENTITY_CATEGORIES = (
    "people",
    "organizations",
    "locations",
    "products",
    "concepts",
    "events",
    "technologies",
    "other",
)

GRAMMAR_FIELDS = (
    "proper_nouns",
    "common_nouns",
    "synonyms",
    "antonyms",
    "hyponyms",
    "hypernyms",
    "homonyms",
    "meronyms",
    "holonyms",
    "polysemy",
)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class _Reader:
    """Reads fields off a raw object, remembering every substitution."""

    data: dict[str, Any]
    defaulted: list[str] = field(default_factory=list)

    def string(self, key: str, default: str = "") -> str:
        value = self.data.get(key)
        if isinstance(value, str):
            return value
        self.defaulted.append(key)
        return default

    def strings(self, key: str) -> list[str]:
        value = self.data.get(key)
        if _is_str_list(value):
            return list(value)
        self.defaulted.append(key)
        return []

    def number(self, key: str, default: float, *, low: float, high: float) -> float:
        value = self.data.get(key)
        if not _is_number(value):
            self.defaulted.append(key)
            return default
        if value < low or value > high:
            self.defaulted.append(key)
        return max(low, min(high, value))

    def result(self, value: dict[str, Any]) -> Decoded[dict[str, Any]]:
        if self.defaulted:
            return Default(value, "defaulted: " + ", ".join(self.defaulted))
        return Ok(value)


def _not_an_object(empty: dict[str, Any]) -> Default[dict[str, Any]]:
    return Default(empty, "not an object")


# ── Outline ──────────────────────────────────────────────────
def decode_outline(data: Any) -> Decoded[dict[str, Any]]:
    """``{title, headings: [{level 1-6, text}], summary}``; empty headings are dropped."""
    if not isinstance(data, dict):
        return _not_an_object({"title": "Untitled", "headings": [], "summary": ""})
    reader = _Reader(data)
    title = reader.string("title", "Untitled")

    headings: list[dict[str, Any]] = []
    raw_headings = data.get("headings")
    if not isinstance(raw_headings, list):
        reader.defaulted.append("headings")
        raw_headings = []
    for i, heading in enumerate(raw_headings):
        if not isinstance(heading, dict):
            reader.defaulted.append(f"headings[{i}]")
            continue
        level = heading.get("level")
        if not (_is_number(level) and 1 <= level <= 6 and int(level) == level):
            reader.defaulted.append(f"headings[{i}].level")
            level = 2
        text = heading.get("text")
        if not isinstance(text, str) or not text:
            reader.defaulted.append(f"headings[{i}].text")
            continue
        headings.append({"level": int(level), "text": text})

    return reader.result({"title": title, "headings": headings, "summary": reader.string("summary")})


# ── N-grams ──────────────────────────────────────────────────
def decode_ngrams(data: Any) -> Decoded[dict[str, Any]]:
    if not isinstance(data, dict):
        return _not_an_object({"ngrams": []})
    reader = _Reader(data)
    return reader.result({"ngrams": reader.strings("ngrams")})


def decode_picked_ngrams(data: Any) -> Decoded[dict[str, Any]]:
    if not isinstance(data, dict):
        return _not_an_object({"picked": []})
    reader = _Reader(data)
    return reader.result({"picked": reader.strings("picked")})


# ── Skip-grams ───────────────────────────────────────────────
MAX_DERIVED_SKIP_GRAMS = 30


def decode_skip_grams(data: Any) -> Decoded[dict[str, Any]]:
    """Skip-gram analysis.

    When ``skipGrams`` is absent it is derived from adjacent pairs of the
    first sense's dominant words (at most 30 pairs).
    """
    empty = {
        "term": "",
        "word_sense_disambiguation": [],
        "document_summarization": [],
        "keyword_extraction": [],
        "skipGrams": [],
    }
    if not isinstance(data, dict):
        return _not_an_object(empty)
    reader = _Reader(data)

    senses: list[dict[str, Any]] = []
    raw_senses = data.get("word_sense_disambiguation")
    if isinstance(raw_senses, list):
        for i, sense in enumerate(raw_senses):
            if not isinstance(sense, dict) or not isinstance(sense.get("sense"), str) or not sense["sense"]:
                reader.defaulted.append(f"word_sense_disambiguation[{i}]")
                continue
            words = sense.get("dominant_words")
            if not _is_str_list(words):
                reader.defaulted.append(f"word_sense_disambiguation[{i}].dominant_words")
                words = []
            senses.append({"sense": sense["sense"], "dominant_words": list(words)})
    else:
        reader.defaulted.append("word_sense_disambiguation")

    skip_grams = data.get("skipGrams")
    if _is_str_list(skip_grams):
        skip_grams = list(skip_grams)
    else:
        reader.defaulted.append("skipGrams")
        skip_grams = []
        if senses:
            words = senses[0]["dominant_words"]
            skip_grams = [
                f"{a} + {b}" for a, b in zip(words, words[1:])
            ][:MAX_DERIVED_SKIP_GRAMS]

    return reader.result(
        {
            "term": reader.string("term"),
            "word_sense_disambiguation": senses,
            "document_summarization": reader.strings("document_summarization"),
            "keyword_extraction": reader.strings("keyword_extraction"),
            "skipGrams": skip_grams,
        }
    )


# ── Grammar ──────────────────────────────────────────────────
def decode_grammar(data: Any) -> Decoded[dict[str, Any]]:
    if not isinstance(data, dict):
        return _not_an_object({"term": "", **{name: [] for name in GRAMMAR_FIELDS}})
    reader = _Reader(data)
    value: dict[str, Any] = {"term": reader.string("term")}
    for name in GRAMMAR_FIELDS:
        value[name] = reader.strings(name)
    return reader.result(value)


# ── Entities ─────────────────────────────────────────────────
def _empty_categories() -> dict[str, list[str]]:
    return {c: [] for c in ENTITY_CATEGORIES}


def _categories(reader: _Reader, key: str) -> dict[str, list[str]]:
    raw = reader.data.get(key)
    if not isinstance(raw, dict) or not any(isinstance(raw.get(c), list) for c in ENTITY_CATEGORIES):
        reader.defaulted.append(key)
        return _empty_categories()
    out = _empty_categories()
    for category in ENTITY_CATEGORIES:
        values = raw.get(category)
        if _is_str_list(values):
            out[category] = list(values)
        elif values is not None:
            reader.defaulted.append(f"{key}.{category}")
    return out


def decode_entities(data: Any) -> Decoded[dict[str, Any]]:
    """Entity gap analysis: found vs. suggested entities, a 0-100 score, and critical gaps."""
    empty = {
        "title": "",
        "foundInContent": _empty_categories(),
        "suggestedToAdd": _empty_categories(),
        "contentScore": 50,
        "criticalGaps": [],
    }
    if not isinstance(data, dict):
        return _not_an_object(empty)
    reader = _Reader(data)
    return reader.result(
        {
            "title": reader.string("title"),
            "foundInContent": _categories(reader, "foundInContent"),
            "suggestedToAdd": _categories(reader, "suggestedToAdd"),
            "contentScore": reader.number("contentScore", 50, low=0, high=100),
            "criticalGaps": reader.strings("criticalGaps"),
        }
    )
