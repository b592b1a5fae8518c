"""
models.py — canonical records passed between the analysis components.

  AnalysisRequest      one logical "analyse this photo" request (immutable)
  ProviderCallAttempt  one call to one provider, appended by the retry executor
  NormalizedResult     one provider's answer mapped onto the canonical fields
  SynthesizedResult    the consensus of all normalized results for a request
  QueuedRequest        a request parked by the offline queue
"""
from __future__ import annotations

import base64
import binascii
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    """e.g. req_1718000000000_3f9a1c2b"""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


# ── Enums ─────────────────────────────────────────────────────────────────────

class WindowCategory(str, Enum):
    DOUBLE_HUNG = "double-hung"
    SINGLE_HUNG = "single-hung"
    CASEMENT    = "casement"
    SLIDING     = "sliding"
    PICTURE     = "picture"
    BAY         = "bay"
    BOW         = "bow"
    AWNING      = "awning"
    HOPPER      = "hopper"
    GARDEN      = "garden"
    UNKNOWN     = "unknown"


class Material(str, Enum):
    VINYL      = "vinyl"
    WOOD       = "wood"
    ALUMINUM   = "aluminum"
    COMPOSITE  = "composite"
    FIBERGLASS = "fiberglass"
    UNKNOWN    = "unknown"


class Condition(str, Enum):
    EXCELLENT = "excellent"
    GOOD      = "good"
    FAIR      = "fair"
    POOR      = "poor"
    UNKNOWN   = "unknown"


class CallOutcome(str, Enum):
    SUCCESS           = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    TIMEOUT           = "timeout"


class RequestStatus(str, Enum):
    PENDING  = "pending"
    RESOLVED = "resolved"
    FAILED   = "failed"


# ── Request ───────────────────────────────────────────────────────────────────

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


@dataclass(frozen=True)
class AnalysisRequest:
    """Created once by the caller; never mutated afterwards."""
    payload: bytes
    providers: tuple[str, ...]
    request_id: str = field(default_factory=new_request_id)
    session_id: Optional[str] = None
    locale: str = "en-US"
    custom_prompt: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    deadline: Optional[datetime] = None
    # Opt-in: wait for the local rate-limit window once instead of failing fast
    wait_on_rate_limit: bool = False

    def __post_init__(self) -> None:
        if not self.providers:
            raise ValueError("AnalysisRequest needs at least one provider")
        # Accept lists from callers but keep the frozen record hashable
        object.__setattr__(self, "providers", tuple(dict.fromkeys(self.providers)))

    @classmethod
    def from_data_url(cls, data_url: str, providers, **kwargs) -> "AnalysisRequest":
        """Build a request from a browser-style data URL or bare base64 string."""
        encoded = _DATA_URL_PREFIX.sub("", data_url.strip())
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 image data: {exc}") from exc
        return cls(payload=payload, providers=tuple(providers), **kwargs)


# ── Provider call attempt ─────────────────────────────────────────────────────

@dataclass
class ProviderCallAttempt:
    provider_id: str
    attempt: int                    # 1 .. max_retries + 1
    started_at: datetime
    outcome: CallOutcome
    latency_ms: int
    raw_response: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome.value,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


# ── Normalized result ─────────────────────────────────────────────────────────

@dataclass
class Dimensions:
    width: float
    height: float
    unit: str = "inches"
    note: str = "Estimated from image - physical measurement required for accuracy"
    confidence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "unit": self.unit,
            "note": self.note,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Dimensions":
        return cls(
            width=data["width"],
            height=data["height"],
            unit=data.get("unit", "inches"),
            note=data.get("note", ""),
            confidence=data.get("confidence", 0),
        )


@dataclass(frozen=True)
class Recommendation:
    text: str
    category: str                   # measurement|energy|material|installation|maintenance|general
    priority: str                   # high|medium|low
    provider_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "category": self.category,
            "priority": self.priority,
            "provider_id": self.provider_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        return cls(
            text=data["text"],
            category=data.get("category", "general"),
            priority=data.get("priority", "low"),
            provider_id=data.get("provider_id"),
        )


@dataclass
class NormalizedResult:
    """One provider's answer, mapped onto the canonical field set."""
    provider_id: str
    category: WindowCategory = WindowCategory.UNKNOWN
    material: Material = Material.UNKNOWN
    condition: Condition = Condition.UNKNOWN
    dimensions: Optional[Dimensions] = None
    recommendations: list[Recommendation] = field(default_factory=list)
    confidence: int = 0
    # True when the confidence was averaged from figures the provider stated
    explicit_confidence: bool = False

    # weighted completeness 0–100 (higher = more useful answer)
    quality_score: int = field(init=False)

    def __post_init__(self) -> None:
        self.confidence = max(0, min(100, int(self.confidence)))
        score = (
            0.25 * self.has_category
            + 0.25 * self.has_material
            + 0.10 * self.has_condition
            + 0.25 * self.has_dimensions
            + 0.15 * (self.confidence > 70)
        )
        self.quality_score = int(round(score * 100))

    @property
    def has_category(self) -> bool:
        return self.category is not WindowCategory.UNKNOWN

    @property
    def has_material(self) -> bool:
        return self.material is not Material.UNKNOWN

    @property
    def has_condition(self) -> bool:
        return self.condition is not Condition.UNKNOWN

    @property
    def has_dimensions(self) -> bool:
        return self.dimensions is not None

    @property
    def has_recommendations(self) -> bool:
        return bool(self.recommendations)

    @property
    def presence(self) -> dict[str, bool]:
        return {
            "category": self.has_category,
            "material": self.has_material,
            "condition": self.has_condition,
            "dimensions": self.has_dimensions,
            "recommendations": self.has_recommendations,
        }

    @property
    def contributes(self) -> bool:
        """A result counts towards synthesis if it carries any real signal."""
        return any(self.presence.values()) or self.explicit_confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "category": self.category.value,
            "material": self.material.value,
            "condition": self.condition.value,
            "dimensions": self.dimensions.to_dict() if self.dimensions else None,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "confidence": self.confidence,
            "explicit_confidence": self.explicit_confidence,
            "quality_score": self.quality_score,
            "presence": self.presence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedResult":
        dims = data.get("dimensions")
        return cls(
            provider_id=data["provider_id"],
            category=WindowCategory(data.get("category", "unknown")),
            material=Material(data.get("material", "unknown")),
            condition=Condition(data.get("condition", "unknown")),
            dimensions=Dimensions.from_dict(dims) if dims else None,
            recommendations=[Recommendation.from_dict(r) for r in data.get("recommendations", [])],
            confidence=data.get("confidence", 0),
            explicit_confidence=data.get("explicit_confidence", False),
        )


# ── Synthesized result ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FieldValue:
    """A synthesized field value plus the provider it was taken from."""
    value: Any
    provider_id: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Dimensions):
            value = value.to_dict()
        return {"value": value, "provider_id": self.provider_id}


@dataclass
class SynthesizedResult:
    request_id: str
    category: FieldValue
    material: FieldValue
    condition: FieldValue
    dimensions: Optional[FieldValue]
    recommendations: list[Recommendation]
    confidence: int
    requested_providers: list[str]
    contributing_providers: list[str]
    failed_providers: dict[str, str]
    partial: bool
    # Bookkeeping only: equal inputs synthesize to equal results
    resolved_at: datetime = field(default_factory=_utcnow, compare=False)
    provider_results: list[NormalizedResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "category": self.category.to_dict(),
            "material": self.material.to_dict(),
            "condition": self.condition.to_dict(),
            "dimensions": self.dimensions.to_dict() if self.dimensions else None,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "confidence": self.confidence,
            "requested_providers": list(self.requested_providers),
            "contributing_providers": list(self.contributing_providers),
            "failed_providers": dict(self.failed_providers),
            "partial": self.partial,
            "resolved_at": self.resolved_at.isoformat(),
            "provider_results": [r.to_dict() for r in self.provider_results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SynthesizedResult":
        dims = data.get("dimensions")
        return cls(
            request_id=data["request_id"],
            category=FieldValue(
                WindowCategory(data["category"]["value"]), data["category"]["provider_id"]
            ),
            material=FieldValue(
                Material(data["material"]["value"]), data["material"]["provider_id"]
            ),
            condition=FieldValue(
                Condition(data["condition"]["value"]), data["condition"]["provider_id"]
            ),
            dimensions=(
                FieldValue(Dimensions.from_dict(dims["value"]), dims["provider_id"])
                if dims else None
            ),
            recommendations=[Recommendation.from_dict(r) for r in data.get("recommendations", [])],
            confidence=data["confidence"],
            requested_providers=list(data.get("requested_providers", [])),
            contributing_providers=list(data.get("contributing_providers", [])),
            failed_providers=dict(data.get("failed_providers", {})),
            partial=bool(data.get("partial", False)),
            resolved_at=datetime.fromisoformat(data["resolved_at"]),
            provider_results=[
                NormalizedResult.from_dict(r) for r in data.get("provider_results", [])
            ],
        )


# ── Offline queue entry ───────────────────────────────────────────────────────

@dataclass
class QueuedRequest:
    request: AnalysisRequest
    enqueued_at: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    earliest_retry: float = 0.0     # time.monotonic() value

    @property
    def request_id(self) -> str:
        return self.request.request_id
