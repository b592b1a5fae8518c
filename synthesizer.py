"""
synthesizer.py — merges every provider's NormalizedResult into one answer.

Merging is decided by the configured provider priority, never by arrival
order, so the same set of results always produces the same SynthesizedResult.

  category / material / condition   first non-unknown value in priority order
  dimensions                        from the most confident provider, ties by priority
  recommendations                   merged in priority order, de-duplicated
  confidence                        mean over contributing providers only
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

import config
from errors import AllProvidersFailed
from models import (
    Condition,
    FieldValue,
    Material,
    NormalizedResult,
    Recommendation,
    SynthesizedResult,
    WindowCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATION = Recommendation(
    text="Schedule a professional measurement to confirm exact window dimensions",
    category="measurement",
    priority="high",
)


def priority_key(priority: Sequence[str]):
    """Sort key: configured providers first in their order, the rest by id."""
    index = {pid: i for i, pid in enumerate(priority)}

    def key(provider_id: str) -> tuple[int, str]:
        return (index.get(provider_id, len(index)), provider_id)

    return key


def _pick(results: list[NormalizedResult], attr: str, unknown) -> FieldValue:
    for result in results:
        value = getattr(result, attr)
        if value is not unknown:
            return FieldValue(value, result.provider_id)
    return FieldValue(unknown, None)


def _pick_dimensions(results: list[NormalizedResult]) -> Optional[FieldValue]:
    best: Optional[NormalizedResult] = None
    # Ranked by the provider result confidence, not the capped Dimensions.confidence.
    # results are in priority order, so strict > keeps the earlier one on a tie.
    for result in results:
        if result.dimensions is None:
            continue
        if best is None or result.confidence > best.confidence:
            best = result
    if best is None:
        return None
    return FieldValue(best.dimensions, best.provider_id)


def _merge_recommendations(results: list[NormalizedResult]) -> list[Recommendation]:
    merged: list[Recommendation] = []
    seen: set[str] = set()
    for result in results:
        for rec in result.recommendations:
            key = rec.text.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            merged.append(Recommendation(
                text=rec.text,
                category=rec.category,
                priority=rec.priority,
                provider_id=result.provider_id,
            ))
    return merged or [DEFAULT_RECOMMENDATION]


def synthesize(
    results: Iterable[NormalizedResult],
    *,
    request_id: str,
    requested: Sequence[str],
    priority: Optional[Sequence[str]] = None,
    failures: Optional[dict[str, str]] = None,
    resolved_at: Optional[datetime] = None,
) -> SynthesizedResult:
    """
    Build the consensus result for one request.

    Raises AllProvidersFailed when no result carries any usable signal.
    """
    order = priority_key(priority if priority is not None else config.PROVIDER_PRIORITY)
    ordered = sorted(results, key=lambda r: order(r.provider_id))
    failed = dict(sorted((failures or {}).items()))

    contributors = [r for r in ordered if r.contributes]
    for result in ordered:
        if not result.contributes:
            logger.info("[%s] returned nothing usable, excluded from synthesis", result.provider_id)
            failed.setdefault(result.provider_id, "no usable fields in response")

    if not contributors:
        raise AllProvidersFailed(request_id, failed)

    confidence = int(sum(r.confidence for r in contributors) / len(contributors) + 0.5)
    contributing_ids = [r.provider_id for r in contributors]

    synthesized = SynthesizedResult(
        request_id=request_id,
        category=_pick(contributors, "category", WindowCategory.UNKNOWN),
        material=_pick(contributors, "material", Material.UNKNOWN),
        condition=_pick(contributors, "condition", Condition.UNKNOWN),
        dimensions=_pick_dimensions(contributors),
        recommendations=_merge_recommendations(contributors),
        confidence=confidence,
        requested_providers=list(requested),
        contributing_providers=contributing_ids,
        failed_providers=dict(sorted(failed.items())),
        partial=len(contributors) < len(requested),
        provider_results=ordered,
    )
    if resolved_at is not None:
        synthesized.resolved_at = resolved_at

    logger.info(
        "Synthesized %s from %d/%d providers (%s): type=%s confidence=%d%s",
        request_id, len(contributors), len(requested), ", ".join(contributing_ids),
        synthesized.category.value.value, confidence,
        " [partial]" if synthesized.partial else "",
    )
    return synthesized
