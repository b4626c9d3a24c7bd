import pytest

from shield_chat.obs.tracing import GroundednessEvaluator, TraceStore, extract_citations


def _record(store: TraceStore, source: str = "extractive", status: str = "idle", **overrides):
    fields = {
        "query": "q",
        "answer": "Every session has a budget [#faq-2].",
        "source": source,
        "status": status,
        "citations": ["faq-2"],
        "source_snippets": ["Every session has a budget of 100000 tokens."],
        "guardrails": [],
        "cost_units": 10,
        "latency_ms": 5.0,
    }
    fields.update(overrides)
    return store.create_record(**fields)


def test_unsupported_sentences_are_listed() -> None:
    evaluator = GroundednessEvaluator()
    answer = "Lead-in:\n\nEvery session has a budget [#faq-2]. Pigs can fly."
    sources = ["Every session has a budget of 100000 tokens."]

    assert evaluator.score(answer, sources) == pytest.approx(0.5)
    assert evaluator.unsupported(answer, sources) == ["Pigs can fly."]
    assert evaluator.score("Lead-in:", []) == 1.0


def test_store_evicts_oldest_records() -> None:
    store = TraceStore(max_records=2)
    first = _record(store)
    _record(store)
    third = _record(store)

    assert len(store) == 2
    assert store.list_recent(limit=1) == [third]
    with pytest.raises(KeyError):
        store.get(first.trace_id)


def test_summary_splits_by_tier_status_and_guardrail() -> None:
    store = TraceStore()
    _record(store)
    _record(
        store,
        source="none",
        status="network_error",
        answer="",
        guardrails=["network_error"],
        cost_units=0,
        latency_ms=15.0,
    )

    summary = store.summary()

    assert summary["total_requests"] == 2
    assert summary["avg_latency_ms"] == pytest.approx(10.0)
    assert summary["avg_groundedness"] == pytest.approx(1.0)
    assert summary["total_cost_units"] == 10
    assert summary["by_source"] == {"extractive": 1, "none": 1}
    assert summary["by_status"] == {"idle": 1, "network_error": 1}
    assert summary["guardrails"] == {"network_error": 1}


def test_empty_summary() -> None:
    summary = TraceStore().summary()

    assert summary["total_requests"] == 0
    assert summary["p95_latency_ms"] == 0.0


def test_extract_citations_dedupes_in_order() -> None:
    assert extract_citations("a [#x] b [#y] c [#x]") == ["x", "y"]
    assert extract_citations("") == []
