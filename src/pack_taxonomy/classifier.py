"""Classification cascade for content packs.

``classify(pack, index, bundle_classification)`` runs an ordered list of
stage functions.  Each stage receives a :class:`CascadeContext` and
returns either a terminal result or ``None`` to hand over to the next
stage:

1. :func:`taxonomic_stage` - keyword scoring against the taxonomy;
   accepted outright at ``skip_confidence_threshold``.
2. :func:`bundle_stage` - inherit the bundle's classification verbatim
   when it is confident enough (``min_bundle_inheritance_confidence``).
3. :func:`ai_deferral_stage` - hand the pack to the AI fallback
   (returns :class:`NeedsAI`).
4. :func:`unassisted_stage` - with the AI disabled, accept a taxonomic
   candidate above the quarantine floor or quarantine the pack.

Packs that come back from the AI are settled by :func:`resolve_needs_ai`.
Quarantined packs always carry a readable reason and, where one exists,
the best low-confidence candidate.

Taxonomic scoring (per family): the sum of matched keyword weights, less
a penalty per exclusion hit.  ``confidence = min(0.95, score * 0.8)``;
a matched keyword of weight >= 0.9 marks a fast-pass and multiplies the
confidence by 1.2 (still capped at 0.95).  Families below a raw score of
0.3 never become candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import tuning
from .models import (
    CascadeResult,
    Classification,
    ClassificationMethod,
    NeedsAI,
    Pack,
    Quarantine,
)
from .taxonomy import TaxonomyFamily, TaxonomyIndex, keyword_in_text, normalize_search_text


@dataclass
class CascadeConfig:
    confidence_threshold: float = field(default_factory=lambda: tuning.CONFIDENCE_THRESHOLD)
    skip_confidence_threshold: float = field(default_factory=lambda: tuning.SKIP_CONFIDENCE_THRESHOLD)
    min_bundle_inheritance_confidence: float = field(
        default_factory=lambda: tuning.MIN_BUNDLE_INHERITANCE_CONFIDENCE
    )
    ai_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CascadeConfig":
        cfg = cls()
        for key, value in (data or {}).items():
            if hasattr(cfg, key):
                setattr(cfg, key, value)
        return cfg


@dataclass
class FamilyScore:
    family: TaxonomyFamily
    raw_score: float = 0.0
    confidence: float = 0.0
    fast_pass: bool = False
    matched: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    preset_guarded: bool = False


@dataclass
class TaxonomicMatch:
    search_text: str
    candidate: Optional[Classification] = None
    scores: List[FamilyScore] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return self.candidate.confidence if self.candidate else 0.0


def _score_family(family: TaxonomyFamily, text: str, pack: Pack) -> FamilyScore:
    params = tuning.TAXONOMIC_PARAMS
    result = FamilyScore(family=family)
    for term, weight in family.keywords:
        if keyword_in_text(term, text):
            result.raw_score += weight
            result.matched.append(term)
            if weight >= params["fast_pass_weight"]:
                result.fast_pass = True
    for term in family.exclusions:
        if keyword_in_text(term, text):
            result.raw_score -= params["exclusion_penalty"]
            result.excluded.append(term)
    result.raw_score = max(0.0, result.raw_score)

    confidence = min(params["max_confidence"], result.raw_score * params["score_scale"])
    if result.fast_pass:
        confidence = min(params["max_confidence"], confidence * params["fast_pass_multiplier"])

    # Preset families should not capture packs that are mostly audio
    guard = tuning.PRESET_GUARD
    if family.mentions("preset") and pack.file_count:
        if pack.audio_ratio > guard["audio_ratio_min"] and pack.preset_ratio < guard["preset_ratio_max"]:
            confidence *= guard["multiplier"]
            result.preset_guarded = True
    result.confidence = confidence
    return result


def _alternatives(scores: Sequence[FamilyScore], winner: Optional[TaxonomyFamily]) -> List[Dict[str, Any]]:
    params = tuning.ALTERNATIVE_PARAMS
    alternatives = []
    for score in scores:
        if winner is not None and score.family.id == winner.id:
            continue
        if not score.matched:
            continue
        alternatives.append(
            {
                "family": score.family.name,
                "style": score.family.styles[0] if score.family.styles else score.family.name,
                "confidence": round(min(params["cap"], params["per_keyword"] * len(score.matched)), 4),
                "matched_keywords": list(score.matched),
            }
        )
    alternatives.sort(key=lambda a: -a["confidence"])
    return alternatives[: int(params["limit"])]


def score_taxonomic(pack: Pack, index: TaxonomyIndex, extra_text: Sequence[str] = ()) -> TaxonomicMatch:
    """Score ``pack`` against every family and build the best candidate."""
    text = normalize_search_text(pack.name, pack.tags, pack.taxonomy_matches, list(extra_text))
    match = TaxonomicMatch(search_text=text)
    if not text:
        return match

    min_raw = tuning.TAXONOMIC_PARAMS["min_raw_score"]
    best: Optional[FamilyScore] = None
    for family in index.families:
        score = _score_family(family, text, pack)
        match.scores.append(score)
        if score.raw_score < min_raw:
            continue
        # Strict comparison keeps taxonomy order as the tie-breaker
        if best is None or score.confidence > best.confidence:
            best = score

    if best is None:
        return match

    label = "Fast-pass taxonomic match" if best.fast_pass else "Standard taxonomic match"
    reasoning = [f"{label}: {best.family.name}", f"Keywords: {', '.join(best.matched)}"]
    if best.excluded:
        reasoning.append(f"Exclusions hit: {', '.join(best.excluded)}")
    rules = ["taxonomic_fastpass" if best.fast_pass else "taxonomic_standard"]
    if best.preset_guarded:
        rules.append("preset_guard")
        reasoning.append("Preset family damped: pack is mostly audio")

    match.candidate = Classification(
        family=best.family.name,
        style=index.resolve_style(best.family, text),
        confidence=best.confidence,
        method=ClassificationMethod.TAXONOMIC,
        reasoning=reasoning,
        matched_keywords=list(best.matched),
        applied_rules=rules,
        alternatives=_alternatives(match.scores, best.family),
    )
    return match


def tempo_suggestions(pack: Pack) -> List[Dict[str, Any]]:
    """Suggest families from the pack's average tempo (for manual review)."""
    if not pack.bpm:
        return []
    suggestions = []
    for low, high, family, style in tuning.TEMPO_HINTS:
        if low <= pack.bpm <= high:
            suggestions.append(
                {"family": family, "style": style, "reason": f"Average tempo {pack.bpm:g} BPM in {low:g}-{high:g}"}
            )
    return suggestions


@dataclass
class CascadeContext:
    pack: Pack
    index: TaxonomyIndex
    config: CascadeConfig
    bundle_classification: Optional[Classification] = None
    match: Optional[TaxonomicMatch] = None
    steps: List[str] = field(default_factory=list)

    @property
    def candidate(self) -> Optional[Classification]:
        return self.match.candidate if self.match else None

    def pending_reasons(self) -> List[str]:
        reasons = []
        if self.candidate is None:
            reasons.append("no taxonomic match")
        if self.pack.bundle_info is not None and not self._bundle_usable():
            reasons.append("bundle unresolved")
        return reasons

    def _bundle_usable(self) -> bool:
        bundle = self.bundle_classification
        return bundle is not None and bundle.confidence >= self.config.min_bundle_inheritance_confidence


Stage = Callable[[CascadeContext], Optional[CascadeResult]]


def taxonomic_stage(ctx: CascadeContext) -> Optional[CascadeResult]:
    ctx.match = score_taxonomic(ctx.pack, ctx.index)
    candidate = ctx.candidate
    if candidate is not None and candidate.confidence >= ctx.config.skip_confidence_threshold:
        ctx.steps.append(f"taxonomic: accepted {candidate.family} ({candidate.confidence:.2f})")
        return candidate
    ctx.steps.append(f"taxonomic: {'best ' + format(ctx.match.confidence, '.2f') if candidate else 'no match'}")
    return None


def bundle_stage(ctx: CascadeContext) -> Optional[CascadeResult]:
    bundle = ctx.bundle_classification
    if ctx.pack.bundle_info is None or bundle is None:
        return None
    if bundle.confidence < ctx.config.min_bundle_inheritance_confidence:
        ctx.steps.append(f"bundle: {bundle.confidence:.2f} below inheritance bar")
        return None
    ctx.steps.append(f"bundle: inherited {bundle.family} from {ctx.pack.bundle_info.bundle_name}")
    return bundle.inherited(ctx.pack.bundle_info.bundle_name)


def ai_deferral_stage(ctx: CascadeContext) -> Optional[CascadeResult]:
    if not ctx.config.ai_enabled:
        return None
    ctx.steps.append("ai: queued")
    return NeedsAI(pack=ctx.pack, candidate=ctx.candidate, reasons=ctx.pending_reasons())


def unassisted_stage(ctx: CascadeContext) -> Optional[CascadeResult]:
    candidate = ctx.candidate
    if candidate is not None and candidate.confidence >= ctx.config.confidence_threshold:
        ctx.steps.append("taxonomic: accepted below skip bar")
        return _accept_below_skip(candidate)
    ctx.steps.append("quarantine")
    return build_quarantine(ctx.pack, ctx.pending_reasons() + ["AI disabled"], [candidate])


DEFAULT_STAGES: List[Stage] = [taxonomic_stage, bundle_stage, ai_deferral_stage, unassisted_stage]


def _accept_below_skip(candidate: Classification) -> Classification:
    if "taxonomic_below_skip" not in candidate.applied_rules:
        candidate.applied_rules.append("taxonomic_below_skip")
    return candidate


def build_quarantine(
    pack: Pack,
    reasons: Sequence[str],
    candidates: Sequence[Optional[Classification]] = (),
) -> Quarantine:
    present = [c for c in candidates if c is not None]
    best = max(present, key=lambda c: c.confidence) if present else None
    reasons = list(dict.fromkeys(r for r in reasons if r)) or ["no method succeeded"]
    return Quarantine(
        pack=pack,
        reason="; ".join(reasons),
        candidate=best,
        manual_review=True,
        suggestions=tempo_suggestions(pack),
    )


def classify(
    pack: Pack,
    index: TaxonomyIndex,
    bundle_classification: Optional[Classification] = None,
    config: Optional[CascadeConfig] = None,
    stages: Optional[Sequence[Stage]] = None,
    steps: Optional[List[str]] = None,
) -> CascadeResult:
    """Run the cascade for one pack.

    ``steps``, when given, receives a human-readable trail of what each
    stage decided.
    """
    ctx = CascadeContext(
        pack=pack,
        index=index,
        config=config or CascadeConfig(),
        bundle_classification=bundle_classification,
    )
    result: Optional[CascadeResult] = None
    for stage in stages or DEFAULT_STAGES:
        result = stage(ctx)
        if result is not None:
            break
    if result is None:
        result = build_quarantine(pack, ctx.pending_reasons(), [ctx.candidate])
    if steps is not None:
        steps.extend(ctx.steps)
    return result


def resolve_needs_ai(
    needs: NeedsAI,
    ai_result: Optional[Classification],
    failure: Optional[str] = None,
    fallback: Optional[Classification] = None,
    config: Optional[CascadeConfig] = None,
) -> CascadeResult:
    """Settle a pack once the AI batch it belonged to has come back."""
    config = config or CascadeConfig()
    threshold = config.confidence_threshold

    if ai_result is not None and ai_result.confidence >= threshold:
        ai_result.method = ClassificationMethod.AI_FALLBACK
        if needs.candidate is not None and not ai_result.alternatives:
            ai_result.alternatives = [
                {
                    "family": needs.candidate.family,
                    "style": needs.candidate.style,
                    "confidence": round(needs.candidate.confidence, 4),
                    "source": "taxonomic",
                }
            ]
        return ai_result

    candidate = needs.candidate
    if candidate is not None and candidate.confidence >= threshold:
        return _accept_below_skip(candidate)

    if fallback is not None and fallback.confidence >= threshold:
        return fallback

    reasons = list(needs.reasons)
    if ai_result is not None:
        reasons.append("AI confidence below threshold")
    else:
        reasons.append(failure or "AI failed")
    return build_quarantine(needs.pack, reasons, [candidate, ai_result, fallback])
