"""
normalizer.py — maps one provider's raw response onto the canonical fields.

Provider answers are free text (Claude), JSON (OpenAI, Gemini) or scored
labels (Cloud Vision). JSON is first flattened into "key: value" lines, one
paragraph per top-level key, so every provider goes through the same rules:

  category / material / condition
      ordered ExtractionRule tables; the first matching rule wins and no
      match leaves the field UNKNOWN. Each table lists the "labelled" form
      ("Window Type: casement") before the bare keyword form, so an explicit
      answer beats a passing mention.

  dimensions
      ordered numeric patterns; the first match with width in 6–120 and
      height in 6–144 inches wins. Implausible values are dropped, never
      clamped.

  confidence
      mean of the explicit confidence figures in the text, or else
      40 + field bonuses, capped at 95.

  recommendations
      the "Recommendations" section, split into sentence-like fragments,
      each tagged with a category and a priority by keyword.

normalize() is pure: the same raw response always yields an equal result.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from models import (
    Condition,
    Dimensions,
    Material,
    NormalizedResult,
    Recommendation,
    WindowCategory,
)
from providers.base import parse_json_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionRule:
    pattern: re.Pattern
    field: str
    value: Enum


@dataclass(frozen=True)
class DimensionRule:
    pattern: re.Pattern
    width_group: int
    height_group: int


# ── Rule tables ───────────────────────────────────────────────────────────────

_LABELS = {
    "category":  r"(?:window[\s_-]*)?type",
    "material":  r"(?:frame[\s_-]*)?material",
    "condition": r"(?:overall[\s_-]*)?condition",
}

# (value, keyword after a label, bare keyword anywhere) in priority order
_CATEGORY_WORDS = [
    (WindowCategory.DOUBLE_HUNG, r"double[- ]hung", r"\bdouble[- ]hung\b|\bsash window\b"),
    (WindowCategory.SINGLE_HUNG, r"single[- ]hung", r"\bsingle[- ]hung\b"),
    (WindowCategory.CASEMENT,    r"casement",       r"\bcasement\b"),
    (WindowCategory.SLIDING,     r"slid(?:ing|er)", r"\bslid(?:ing|er)\b"),
    (WindowCategory.PICTURE,     r"picture|fixed",  r"\bpicture[- ]window\b|\bfixed[- ](?:pane|window)\b"),
    (WindowCategory.BAY,         r"bay",            r"\bbay\b"),
    (WindowCategory.BOW,         r"bow",            r"\bbow\b"),
    (WindowCategory.AWNING,      r"awning",         r"\bawning\b"),
    (WindowCategory.HOPPER,      r"hopper",         r"\bhopper\b"),
    (WindowCategory.GARDEN,      r"garden",         r"\bgarden[- ]window\b"),
]

_MATERIAL_WORDS = [
    (Material.VINYL,      r"(?:u?pvc|vinyl)",  r"\bvinyl\b|\bu?pvc\b"),
    (Material.WOOD,       r"(?:wood|timber)",  r"\bwood(?:en)?\b|\btimber\b"),
    (Material.ALUMINUM,   r"alumini?um",       r"\balumini?um\b"),
    (Material.COMPOSITE,  r"composite",        r"\bcomposite\b"),
    (Material.FIBERGLASS, r"fib(?:er|re)glass", r"\bfib(?:er|re)glass\b"),
]

_CONDITION_WORDS = [
    (Condition.EXCELLENT, r"excellent", r"\bexcellent\b"),
    # "Good Faith" is a company name, not a condition
    (Condition.GOOD,      r"good",      r"\bgood\b(?!\s+faith)"),
    (Condition.FAIR,      r"fair",      r"\bfair\b"),
    (Condition.POOR,      r"poor",      r"\bpoor\b|\brott(?:ed|ing)\b|\bdeteriorat(?:ed|ing)\b"),
]


def _build_rules(field: str, words: list[tuple[Enum, str, str]]) -> list[ExtractionRule]:
    label = _LABELS[field]
    labelled = [
        ExtractionRule(
            re.compile(rf"\b{label}\W{{0,6}}(?:\w+\s+){{0,3}}?(?:{word})\b", re.IGNORECASE),
            field,
            value,
        )
        for value, word, _ in words
    ]
    bare = [
        ExtractionRule(re.compile(pattern, re.IGNORECASE), field, value)
        for value, _, pattern in words
    ]
    return labelled + bare


CATEGORY_RULES:  list[ExtractionRule] = _build_rules("category", _CATEGORY_WORDS)
MATERIAL_RULES:  list[ExtractionRule] = _build_rules("material", _MATERIAL_WORDS)
CONDITION_RULES: list[ExtractionRule] = _build_rules("condition", _CONDITION_WORDS)

_NUM = r"(\d+(?:\.\d+)?)"

DIMENSION_RULES: list[DimensionRule] = [
    # 30 x 48, 30" x 48", 30in × 48in
    DimensionRule(
        re.compile(rf"(?<!\d)(?<!\d\.){_NUM}\s*(?:\"|''|in(?:ches|\.)?)?\s*[x×]\s*{_NUM}(?!\d)(?!\.\d)",
                   re.IGNORECASE),
        1, 2,
    ),
    # 30 by 48
    DimensionRule(
        re.compile(rf"(?<!\d)(?<!\d\.){_NUM}\s*(?:\"|in(?:ches)?)?\s+by\s+{_NUM}(?!\d)(?!\.\d)", re.IGNORECASE),
        1, 2,
    ),
    # width: 30 ... height: 48
    DimensionRule(
        re.compile(rf"width\w*[^\d\n]{{0,20}}?{_NUM}[\s\S]{{0,80}}?height\w*[^\d\n]{{0,20}}?{_NUM}",
                   re.IGNORECASE),
        1, 2,
    ),
    # height: 48 ... width: 30
    DimensionRule(
        re.compile(rf"height\w*[^\d\n]{{0,20}}?{_NUM}[\s\S]{{0,80}}?width\w*[^\d\n]{{0,20}}?{_NUM}",
                   re.IGNORECASE),
        2, 1,
    ),
]

WIDTH_RANGE  = (6.0, 120.0)
HEIGHT_RANGE = (6.0, 144.0)

_CONFIDENCE_NUMBER = re.compile(
    r"confidence(?:[\s_-]*(?:score|level))?\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(%?)", re.IGNORECASE
)
_CONFIDENCE_WORD = re.compile(
    r"confidence(?:[\s_-]*level)?\s*[:=]\s*(high|medium|low)\b", re.IGNORECASE
)
_CONFIDENCE_WORD_VALUES = {"high": 85, "medium": 60, "low": 30}

# Scoring when the provider states no confidence of its own
BASE_CONFIDENCE = 40
CONFIDENCE_BONUSES = {
    "category": 15,
    "material": 15,
    "condition": 10,
    "dimensions": 10,
    "recommendations": 5,
}
MAX_DERIVED_CONFIDENCE = 95
MAX_DIMENSION_CONFIDENCE = 70

# ── Recommendations ───────────────────────────────────────────────────────────

_REC_HEADING = re.compile(
    r"^[^\w\n]*(?:\d+\.\s*)?[^\w\n]*recommendations?\b(?:[^\n:]{0,40}:)?[^\w\n]*",
    re.IGNORECASE | re.MULTILINE,
)
_REC_ANYWHERE = re.compile(r"recommendations?\b\W*", re.IGNORECASE)
# a blank line, or a markdown/numbered heading for another section
_NEXT_SECTION = re.compile(
    r"\n\s*\n|\n[ \t#*]*(?:\d+\.\s*)?[ \t*]*"
    r"(?:window[\s_-]*type|type|material|condition|measurements?|dimensions|"
    r"energy efficiency|confidence|notes|summary)\b[^\n]{0,20}:",
    re.IGNORECASE,
)
_FRAGMENT_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+|;\s*")
_BULLET = re.compile(r"^\s*(?:[-*•>#]+|\d+[.)])\s*")
MIN_RECOMMENDATION_LENGTH = 10

# first matching keyword group wins
_REC_CATEGORIES = [
    ("measurement",  ("measurement", "measure")),
    ("energy",       ("energy", "efficiency")),
    ("material",     ("material", "frame")),
    ("installation", ("installation", "install")),
    ("maintenance",  ("maintenance", "repair")),
]
_REC_PRIORITIES = [
    ("high",   ("urgent", "immediate")),
    ("medium", ("soon", "important")),
]


def categorize_recommendation(text: str) -> str:
    lower = text.lower()
    for category, keywords in _REC_CATEGORIES:
        if any(k in lower for k in keywords):
            return category
    return "general"


def recommendation_priority(text: str) -> str:
    lower = text.lower()
    for priority, keywords in _REC_PRIORITIES:
        if any(k in lower for k in keywords):
            return priority
    return "low"


# ── JSON flattening ───────────────────────────────────────────────────────────

_CONFIDENCE_KEYS = {"confidence", "score", "confidence_score"}
_IGNORED_KEYS = {"mid", "topicality", "boundingPoly", "locale", "languageCode"}


def _as_percent(value: float) -> float:
    return value * 100 if 0 < value <= 1 and not float(value).is_integer() else value


def _flatten(data: Any, key: Optional[str] = None) -> list[str]:
    if isinstance(data, dict):
        lines: list[str] = []
        for k, v in data.items():
            if k in _IGNORED_KEYS:
                continue
            lines.extend(_flatten(v, k))
        return lines
    if isinstance(data, list):
        if all(isinstance(item, str) for item in data):
            joined = " ".join(
                item.strip() if item.strip().endswith((".", "!", "?")) else f"{item.strip()}."
                for item in data if item.strip()
            )
            if not joined:
                return []
            return [f"{key}: {joined}" if key else joined]
        lines = []
        for item in data:
            lines.extend(_flatten(item, key))
        return lines
    if data is None or isinstance(data, bool):
        return []
    if isinstance(data, (int, float)):
        if key in _CONFIDENCE_KEYS:
            # Vision label scores are always 0–1 fractions
            value = float(data) * 100 if key == "score" and data <= 1 else _as_percent(float(data))
            return [f"confidence: {value:g}%"]
        return [f"{key}: {data:g}" if isinstance(data, float) else f"{key}: {data}"]
    return [f"{key}: {data}" if key else str(data)]


def response_text(raw: Union[str, dict, list]) -> str:
    """Turn any provider response into the text the rule tables run against."""
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = parse_json_response(raw, "normalizer")
        except ValueError:
            return raw
    if isinstance(data, dict):
        return "\n\n".join(
            "\n".join(_flatten(v, k)) for k, v in data.items() if k not in _IGNORED_KEYS
        )
    if isinstance(data, list):
        return "\n".join(_flatten(data))
    return raw if isinstance(raw, str) else str(raw)


# ── Extraction ────────────────────────────────────────────────────────────────

def first_match(text: str, rules: list[ExtractionRule], default: Enum) -> Enum:
    for rule in rules:
        if rule.pattern.search(text):
            return rule.value
    return default


def extract_dimensions(text: str) -> Optional[tuple[float, float]]:
    for rule in DIMENSION_RULES:
        for match in rule.pattern.finditer(text):
            width = float(match.group(rule.width_group))
            height = float(match.group(rule.height_group))
            if (WIDTH_RANGE[0] <= width <= WIDTH_RANGE[1]
                    and HEIGHT_RANGE[0] <= height <= HEIGHT_RANGE[1]):
                return width, height
            logger.debug("Discarding implausible dimensions %s x %s", width, height)
    return None


def extract_confidences(text: str) -> list[float]:
    figures: list[float] = []
    for match in _CONFIDENCE_NUMBER.finditer(text):
        value = float(match.group(1))
        if not match.group(2):
            value = _as_percent(value)
        figures.append(min(value, 100.0))
    for match in _CONFIDENCE_WORD.finditer(text):
        figures.append(float(_CONFIDENCE_WORD_VALUES[match.group(1).lower()]))
    return figures


def _recommendation_section(text: str) -> Optional[str]:
    heading = _REC_HEADING.search(text) or _REC_ANYWHERE.search(text)
    if heading is None:
        return None
    rest = text[heading.end():].lstrip()
    end = _NEXT_SECTION.search(rest)
    return rest[:end.start()] if end else rest


def extract_recommendations(text: str) -> list[Recommendation]:
    section = _recommendation_section(text)
    if not section:
        return []
    recommendations: list[Recommendation] = []
    seen: set[str] = set()
    for fragment in _FRAGMENT_SPLIT.split(section):
        cleaned = _BULLET.sub("", fragment.replace("**", "")).strip().rstrip(".").strip()
        if len(cleaned) <= MIN_RECOMMENDATION_LENGTH or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        recommendations.append(Recommendation(
            text=cleaned,
            category=categorize_recommendation(cleaned),
            priority=recommendation_priority(cleaned),
        ))
    return recommendations


def _round(value: float) -> int:
    return int(value + 0.5)


def normalize(provider_id: str, raw: Union[str, dict, list]) -> NormalizedResult:
    """Extract the canonical fields and a 0–100 confidence from one raw response."""
    text = response_text(raw)

    category = first_match(text, CATEGORY_RULES, WindowCategory.UNKNOWN)
    material = first_match(text, MATERIAL_RULES, Material.UNKNOWN)
    condition = first_match(text, CONDITION_RULES, Condition.UNKNOWN)
    dims = extract_dimensions(text)
    recommendations = extract_recommendations(text)

    figures = extract_confidences(text)
    if figures:
        confidence = _round(sum(figures) / len(figures))
    else:
        found = {
            "category": category is not WindowCategory.UNKNOWN,
            "material": material is not Material.UNKNOWN,
            "condition": condition is not Condition.UNKNOWN,
            "dimensions": dims is not None,
            "recommendations": bool(recommendations),
        }
        confidence = BASE_CONFIDENCE + sum(
            bonus for name, bonus in CONFIDENCE_BONUSES.items() if found[name]
        )
        confidence = min(confidence, MAX_DERIVED_CONFIDENCE)
    confidence = max(0, min(100, confidence))

    dimensions = None
    if dims is not None:
        dimensions = Dimensions(
            width=dims[0],
            height=dims[1],
            confidence=min(confidence, MAX_DIMENSION_CONFIDENCE),
        )

    result = NormalizedResult(
        provider_id=provider_id,
        category=category,
        material=material,
        condition=condition,
        dimensions=dimensions,
        recommendations=recommendations,
        confidence=confidence,
        explicit_confidence=bool(figures),
    )
    logger.debug(
        "[%s] normalized: type=%s material=%s condition=%s dims=%s confidence=%d",
        provider_id, category.value, material.value, condition.value, dims, confidence,
    )
    return result
