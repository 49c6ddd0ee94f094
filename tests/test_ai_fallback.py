"""
AI fallback tests: batching, failure isolation, cancellation and the
HTTP adapter.

Run with: pytest tests/test_ai_fallback.py -v
"""

import json
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.ai_fallback import (
    OpenAIChatAdapter,
    clean_pack_name,
    keyword_fallback,
    submit_in_batches,
)
from pack_taxonomy.errors import AIAdapterError
from pack_taxonomy.models import Classification, ClassificationMethod, InternalStructure, Pack


def _packs(count: int):
    return [Pack(id=f"p{i}", name=f"Pack {i}") for i in range(count)]


def _answer(confidence: float = 0.8) -> Classification:
    return Classification(family="Electronic", style="Techno", confidence=confidence, method=ClassificationMethod.AI_FALLBACK)


class FakeAdapter:
    def __init__(self, fail_on=(), on_call=None):
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.batches = []

    def classify_batch(self, packs):
        self.batches.append([p.id for p in packs])
        if self.on_call:
            self.on_call(len(self.batches))
        if len(self.batches) in self.fail_on:
            raise AIAdapterError("rate limited")
        return [_answer() for _ in packs]


# ============================================================================
# NAME CLEANING AND KEYWORD FALLBACK
# ============================================================================

def test_clean_pack_name_strips_label_volume_and_brackets():
    assert clean_pack_name("Black Octopus - Hardstyle Euphoria Vol.3 (WAV)") == "Hardstyle Euphoria"


def test_clean_pack_name_keeps_plain_names():
    assert clean_pack_name("Techno Tools") == "Techno Tools"


def test_keyword_fallback_matches_rules():
    result = keyword_fallback(Pack(id="d", name="Heavy Dubstep Things"))
    assert (result.family, result.style) == ("Bass Music", "Dubstep")
    assert result.confidence == pytest.approx(0.6)
    assert result.method is ClassificationMethod.AI_FALLBACK


def test_keyword_fallback_matches_whole_words_only():
    result = keyword_fallback(Pack(id="e", name="Entrapment Cinematic Textures"))
    assert result.family == "Experimental / IDM / Noise"
    assert result.matched_keywords == []
    assert result.confidence < 0.6


def test_keyword_fallback_agrees_with_default_taxonomy():
    result = keyword_fallback(Pack(id="t", name="Dark_Trap_Melodies"))
    assert (result.family, result.style) == ("Hip Hop", "Trap")
    assert result.matched_keywords == ["trap"]


def test_keyword_fallback_default_is_low_confidence():
    result = keyword_fallback(Pack(id="r", name="Random Sounds"))
    assert result.family == "Experimental / IDM / Noise"
    assert result.confidence == pytest.approx(0.3)
    assert "ai_keyword_default" in result.applied_rules


# ============================================================================
# BATCH SUBMISSION
# ============================================================================

def test_batches_are_bounded_and_sequential():
    adapter = FakeAdapter()
    pauses = []
    outcome = submit_in_batches(_packs(5), adapter, batch_size=2, delay=0.1, sleep=pauses.append)

    assert adapter.batches == [["p0", "p1"], ["p2", "p3"], ["p4"]]
    assert outcome.requests_used == 3
    assert pauses == [0.1, 0.1]
    assert len(outcome.results) == 5
    assert not outcome.failures


def test_failed_batch_only_affects_its_own_packs():
    adapter = FakeAdapter(fail_on={2})
    outcome = submit_in_batches(_packs(4), adapter, batch_size=2, sleep=lambda _: None)

    assert set(outcome.results) == {"p0", "p1"}
    assert outcome.failures == {"p2": "AI failed", "p3": "AI failed"}
    assert set(outcome.fallbacks) == {"p2", "p3"}
    assert [b["status"] for b in outcome.batches] == ["ok", "failed"]


def test_cancellation_stops_further_submissions():
    event = threading.Event()
    adapter = FakeAdapter(on_call=lambda n: event.set())
    outcome = submit_in_batches(_packs(5), adapter, batch_size=2, cancel_event=event, sleep=lambda _: None)

    # The batch already sent completes; nothing further is submitted
    assert adapter.batches == [["p0", "p1"]]
    assert set(outcome.results) == {"p0", "p1"}
    assert outcome.cancelled == ["p2", "p3", "p4"]


def test_missing_adapter_uses_keyword_fallback():
    outcome = submit_in_batches([Pack(id="h", name="Rawstyle Kicks")], None)
    assert outcome.failures == {"h": "AI unavailable"}
    assert outcome.fallbacks["h"].family == "Hard Dance"
    assert outcome.requests_used == 0


def test_partial_answers_fall_back_per_pack():
    class PartialAdapter:
        def classify_batch(self, packs):
            return [_answer(), None]

    outcome = submit_in_batches(_packs(2), PartialAdapter(), sleep=lambda _: None)
    assert set(outcome.results) == {"p0"}
    assert outcome.failures == {"p1": "AI gave no answer"}
    assert outcome.batches[0]["status"] == "partial"


# ============================================================================
# HTTP ADAPTER
# ============================================================================

def _chat_response(payload):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"choices": [{"message": {"content": json.dumps(payload)}}]}
    return response


def test_openai_adapter_maps_answers_by_cleaned_name():
    session = MagicMock()
    session.post.return_value = _chat_response(
        {
            "classifications": [
                {"name": "Hardstyle Euphoria", "family": "Hard Dance", "style": "Hardstyle", "confidence": 1.4},
            ]
        }
    )
    adapter = OpenAIChatAdapter(endpoint="http://ai.local/v1/chat/completions", api_key="secret", session=session)
    packs = [
        Pack(
            id="bo",
            name="Black Octopus - Hardstyle Euphoria Vol.3",
            internal_structure=InternalStructure(subfolders=["Kicks", "Leads"]),
        ),
        Pack(id="x", name="Unknown Thing"),
    ]

    results = adapter.classify_batch(packs)

    assert results[0].family == "Hard Dance"
    assert results[0].confidence == pytest.approx(1.0)
    assert results[0].method is ClassificationMethod.AI_FALLBACK
    assert results[1] is None

    args, kwargs = session.post.call_args
    assert args[0] == "http://ai.local/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert "subfolders: Kicks, Leads" in kwargs["json"]["messages"][1]["content"]


def test_openai_adapter_wraps_transport_errors():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("connection refused")
    adapter = OpenAIChatAdapter(endpoint="http://ai.local", session=session)

    with pytest.raises(AIAdapterError):
        adapter.classify_batch([Pack(id="a", name="A")])


def test_openai_adapter_rejects_non_json_content():
    session = MagicMock()
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"choices": [{"message": {"content": "not json"}}]}
    session.post.return_value = response
    adapter = OpenAIChatAdapter(endpoint="http://ai.local", session=session)

    with pytest.raises(AIAdapterError):
        adapter.classify_batch([Pack(id="a", name="A")])
