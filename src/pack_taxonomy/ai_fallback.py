"""AI fallback for packs the taxonomic stages could not settle.

The cascade talks to the AI through a small capability interface,
:class:`AIFallbackAdapter`: ``classify_batch(packs)`` returns one
classification per pack (``None`` where the model gave no answer) or
raises.  :func:`submit_in_batches` drives an adapter the way the
pipeline needs it:

* packs are chunked into bounded batches (``tuning.AI_BATCH_SIZE``),
* batches run strictly one after another with a short pause between
  them to stay inside external rate limits,
* a failed batch only affects its own packs: they fall back to a
  deterministic keyword rule set at reduced confidence,
* cancellation is cooperative; a batch already sent is allowed to
  finish but nothing further is submitted.

:class:`OpenAIChatAdapter` is a concrete adapter for OpenAI-compatible
chat-completion endpoints built on ``requests``.  Tests substitute fakes.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import requests

from . import tuning
from .errors import AIAdapterError
from .models import Classification, ClassificationMethod, Pack
from .taxonomy import clamp, keyword_in_text, normalize_search_text

logger = logging.getLogger(__name__)


class AIFallbackAdapter(Protocol):
    def classify_batch(self, packs: Sequence[Pack]) -> List[Optional[Classification]]:
        ...


_BRACKETS_RE = re.compile(r"[\(\[\{][^\)\]\}]*[\)\]\}]")
_VOLUME_RE = re.compile(r"\b(?:vol(?:ume)?|v)\.?\s*\d+\b", re.IGNORECASE)
_LABEL_PREFIX_RE = re.compile(r"^[^-–]{2,40}?\s+[-–]\s+")
_NOISE_WORDS_RE = re.compile(r"\b(?:wav|midi|serum|presets?|sample ?pack|pack)\b", re.IGNORECASE)


def clean_pack_name(name: str) -> str:
    """Strip label prefixes, volume numbers and bracketed notes from a pack name."""
    text = _BRACKETS_RE.sub(" ", name)
    text = _LABEL_PREFIX_RE.sub("", text.strip())
    text = _VOLUME_RE.sub(" ", text)
    text = _NOISE_WORDS_RE.sub(" ", text)
    text = re.sub(r"[_\.]+", " ", text)
    text = re.sub(r"\s+", " ", text).strip(" -–")
    return text or name.strip()


def keyword_fallback(pack: Pack) -> Classification:
    """Deterministic rule-based guess used when the AI could not answer."""
    text = normalize_search_text(pack.name, pack.tags)
    rules = tuning.AI_KEYWORD_FALLBACK
    for keywords, family, style, confidence in rules:
        matched = [k for k in keywords if keyword_in_text(k, text)]
        if matched:
            return Classification(
                family=family,
                style=style,
                confidence=float(confidence),
                method=ClassificationMethod.AI_FALLBACK,
                reasoning=[f"Keyword fallback: {', '.join(matched)}"],
                matched_keywords=matched,
                applied_rules=["ai_keyword_fallback"],
            )
    _, family, style, confidence = rules[-1]
    return Classification(
        family=family,
        style=style,
        confidence=float(confidence),
        method=ClassificationMethod.AI_FALLBACK,
        reasoning=["Keyword fallback: no indicator found"],
        applied_rules=["ai_keyword_fallback", "ai_keyword_default"],
    )


@dataclass
class AIBatchOutcome:
    """What came back from a sequence of AI batches."""

    results: Dict[str, Classification] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    fallbacks: Dict[str, Classification] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    requests_used: int = 0
    batches: List[Dict[str, Any]] = field(default_factory=list)


def _chunks(items: Sequence[Pack], size: int) -> List[List[Pack]]:
    size = max(1, int(size))
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def submit_in_batches(
    packs: Sequence[Pack],
    adapter: Optional[AIFallbackAdapter],
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AIBatchOutcome:
    """Send ``packs`` to ``adapter`` in sequential bounded batches."""
    outcome = AIBatchOutcome()
    if not packs:
        return outcome
    batch_size = batch_size or tuning.AI_BATCH_SIZE
    delay = tuning.AI_BATCH_DELAY_SECONDS if delay is None else delay

    if adapter is None:
        for pack in packs:
            outcome.failures[pack.id] = "AI unavailable"
            outcome.fallbacks[pack.id] = keyword_fallback(pack)
        return outcome

    chunks = _chunks(packs, batch_size)
    for number, chunk in enumerate(chunks):
        if cancel_event is not None and cancel_event.is_set():
            for remaining in chunks[number:]:
                outcome.cancelled.extend(p.id for p in remaining)
            logger.info("AI submission cancelled; %d packs not submitted", len(outcome.cancelled))
            break
        if number > 0 and delay > 0:
            sleep(delay)

        outcome.requests_used += 1
        batch_log: Dict[str, Any] = {"batch": number + 1, "size": len(chunk), "status": "ok"}
        try:
            results = adapter.classify_batch(chunk)
        except Exception as exc:
            logger.warning("AI batch %d failed: %s", number + 1, exc)
            results = None
            batch_log["status"] = "failed"
            batch_log["error"] = str(exc)

        if results is not None and not results:
            logger.warning("AI batch %d returned no classifications", number + 1)
            batch_log["status"] = "empty"
            results = None

        answered = 0
        for position, pack in enumerate(chunk):
            result = None
            if results is not None and position < len(results):
                result = results[position]
            if isinstance(result, Classification):
                outcome.results[pack.id] = result
                answered += 1
                continue
            outcome.failures[pack.id] = "AI failed" if batch_log["status"] != "ok" else "AI gave no answer"
            outcome.fallbacks[pack.id] = keyword_fallback(pack)
        if batch_log["status"] == "ok" and answered < len(chunk):
            batch_log["status"] = "partial"
        batch_log["answered"] = answered
        outcome.batches.append(batch_log)

    return outcome


@dataclass
class OpenAIChatAdapter:
    """Classify packs through an OpenAI-compatible chat completion endpoint."""

    endpoint: str
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    families: Dict[str, List[str]] = field(default_factory=dict)
    timeout: float = field(default_factory=lambda: tuning.AI_REQUEST_TIMEOUT_SECONDS)
    session: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.session is None:
            self.session = requests.Session()

    def _system_prompt(self) -> str:
        if self.families:
            catalogue = "\n".join(
                f"{family}: {', '.join(styles) or 'No styles'}" for family, styles in self.families.items()
            )
        else:
            catalogue = "Use well-known electronic music families and styles."
        return (
            "You classify audio sample packs by genre.\n"
            "AVAILABLE FAMILIES AND STYLES:\n"
            f"{catalogue}\n"
            "Return JSON only: {\"classifications\": [{\"name\", \"family\", \"style\", \"confidence\"}]}.\n"
            "Use confidence <= 0.45 when neither the name nor the subfolders indicate a style."
        )

    def _user_prompt(self, packs: Sequence[Pack]) -> str:
        lines = []
        for pack in packs:
            folders: List[str] = []
            if pack.internal_structure:
                folders = list(pack.internal_structure.subfolders)[:8]
            suffix = f" (subfolders: {', '.join(folders)})" if folders else ""
            lines.append(f"- {clean_pack_name(pack.name)}{suffix}")
        return "Classify these packs:\n" + "\n".join(lines)

    def classify_batch(self, packs: Sequence[Pack]) -> List[Optional[Classification]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": self._system_prompt()},
                {"role": "user", "content": self._user_prompt(packs)},
            ],
        }
        try:
            resp = self.session.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise AIAdapterError(f"AI request failed: {exc}") from exc

        try:
            content = body["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise AIAdapterError("Invalid JSON response from AI endpoint") from exc

        by_name: Dict[str, Dict[str, Any]] = {}
        for item in parsed.get("classifications") or []:
            if isinstance(item, dict) and item.get("name"):
                by_name[str(item["name"]).strip().lower()] = item

        results: List[Optional[Classification]] = []
        for pack in packs:
            item = by_name.get(clean_pack_name(pack.name).lower()) or by_name.get(pack.name.lower())
            if not item or not item.get("family"):
                results.append(None)
                continue
            try:
                confidence = clamp(float(item.get("confidence", 0.0)), 0.0, 1.0)
            except (TypeError, ValueError):
                confidence = 0.0
            results.append(
                Classification(
                    family=str(item["family"]),
                    style=str(item.get("style") or item["family"]),
                    confidence=confidence,
                    method=ClassificationMethod.AI_FALLBACK,
                    reasoning=[f"AI classification ({self.model})"],
                    applied_rules=["ai_batch"],
                )
            )
        return results
