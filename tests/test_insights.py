import json

import pytest

from conftest import TRANSCRIPT, ScriptedLLM, full_dashboard, make_settings, run
from core.categorize import KeywordCategorizer
from core.dashboard import (
    PARSE_WARNING,
    Dashboard,
    Summary,
    parse_chunk_response,
    repair_truncated_json,
    strip_code_fences,
)
from core.errors import APIError, ProcessingError
from core.llm import Completion
from core.process import InsightEngine, determine_processing_strategy, measure_coverage

WORDS = ("Alpha", "Bravo", "Delta", "Gamma")


def four_sentence_transcript() -> str:
    # each sentence is 104 characters, so a 60 token budget packs two per chunk
    return ". ".join((f"{word} topic sentence " * 5).strip() for word in WORDS) + "."


def chunked_engine(llm, **overrides):
    settings = make_settings(chunking_threshold_tokens=50, chunk_max_tokens=60, **overrides)
    return InsightEngine(llm, settings.processing)


def test_plain_fenced_and_truncated_replies_normalize():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert parse_chunk_response("```json\n" + full_dashboard() + "\n```").kind == "dashboard"

    truncated = ('{"summary": "Short", "topics": ["a", "b"], "insights": {"sections": '
                 '[{"title": "X", "items": [{"text": "y"}]}, {"title": "Z", "ite')
    analysis = parse_chunk_response(truncated)

    assert analysis.kind == "partial"
    assert analysis.summary == "Short"
    assert analysis.topics == ["a", "b"]
    assert [s.title for s in analysis.sections] == ["X"]


def test_repair_gives_up_without_any_object():
    assert repair_truncated_json("no json here") is None
    assert repair_truncated_json('{"open": "string') is None


def test_unparseable_reply_becomes_placeholder():
    analysis = parse_chunk_response("Sorry, I cannot produce JSON for this video.")

    assert analysis.kind == "placeholder"
    assert analysis.topics == ["transcript analysis"]
    assert analysis.warnings == [PARSE_WARNING]
    assert analysis.summary.startswith("Sorry")


def test_legacy_flat_shape_is_lifted():
    reply = json.dumps({
        "summary": "Flat summary",
        "topics": ["pricing", "growth"],
        "insights": ["Charge for outcomes", "Retention beats acquisition"],
    })

    analysis = parse_chunk_response(reply)

    assert analysis.kind == "partial"
    assert analysis.sections[0].title == "Key Insights"
    assert [i.text for i in analysis.sections[0].items] == [
        "Charge for outcomes", "Retention beats acquisition",
    ]
    assert [b.label for b in analysis.branches] == ["pricing", "growth"]


def test_single_chunk_dashboard_passes_through():
    llm = ScriptedLLM([full_dashboard(summary="Straight from the model")], tokens=1200)
    engine = InsightEngine(llm, make_settings().processing)

    result = run(engine.generate(TRANSCRIPT, duration=125))

    assert result.dashboard.summary.text == "Straight from the model"
    assert result.strategy.method == "single_pass"
    assert result.tokens_used == 1200
    assert result.llm_calls == 1
    assert len(llm.calls) == 1


def test_duplicate_sentences_are_removed_before_the_model_sees_them():
    llm = ScriptedLLM([full_dashboard()])
    run(InsightEngine(llm, make_settings().processing).generate(TRANSCRIPT))

    assert llm.calls[0]["user"].count("Pricing strategy matters") == 1


def test_empty_transcript_is_rejected():
    engine = InsightEngine(ScriptedLLM(), make_settings().processing)

    with pytest.raises(ProcessingError):
        run(engine.generate("Ok. Hi."))


def test_strategy_switches_to_chunked_above_threshold():
    settings = make_settings(chunking_threshold_tokens=50, chunk_max_tokens=60).processing
    text = four_sentence_transcript()

    assert determine_processing_strategy(text, settings).method == "chunked_concurrent"
    assert determine_processing_strategy("Tiny but fine.", settings).method == "single_pass"


def _legacy_reply(branch_labels):
    return json.dumps({
        "summary": "Part summary about " + ", ".join(branch_labels),
        "topics": list(branch_labels),
        "insights": [f"Market trend for {label}" for label in branch_labels],
    })


def _by_chunk(first_reply, second_reply):
    def respond(system_prompt, user_prompt):
        return first_reply if "Alpha topic" in user_prompt else second_reply
    return respond


def test_two_legacy_chunks_merge_without_consolidation_call():
    first, second = _legacy_reply(["alpha", "bravo"]), _legacy_reply(["delta", "gamma", "omega"])
    llm = ScriptedLLM([_by_chunk(first, second), _by_chunk(first, second)])
    engine = chunked_engine(llm)

    result = run(engine.generate(four_sentence_transcript(), duration=3725))
    dashboard = result.dashboard

    assert result.chunk_count == 2
    assert result.llm_calls == 2
    assert len(dashboard.mind_map.branches) == 2 + 3
    assert dashboard.summary.topics == ["alpha", "bravo", "delta", "gamma", "omega"]
    metrics = {m.label: m.value for m in dashboard.summary.metrics}
    assert metrics["Duration"] == "1:02:05"
    assert metrics["Key Insights"] == "5"
    assert [s.title for s in dashboard.insights.sections] == ["Market Insights"]


def test_failed_consolidation_call_falls_back_to_manual_merge():
    first, second = _legacy_reply(["alpha"]), _legacy_reply(["delta"])
    llm = ScriptedLLM([_by_chunk(first, second), _by_chunk(first, second),
                       APIError("rate limit")])
    engine = chunked_engine(llm, consolidation_enabled=True)

    result = run(engine.generate(four_sentence_transcript()))

    assert len(llm.calls) == 3
    assert len(result.dashboard.mind_map.branches) == 2


def test_consolidation_call_result_is_used_when_valid():
    first, second = _legacy_reply(["alpha"]), _legacy_reply(["delta"])
    llm = ScriptedLLM([_by_chunk(first, second), _by_chunk(first, second),
                       full_dashboard(summary="Consolidated by the model")])
    engine = chunked_engine(llm, consolidation_enabled=True)

    result = run(engine.generate(four_sentence_transcript()))

    assert result.dashboard.summary.text == "Consolidated by the model"
    assert result.llm_calls == 3


def test_chunk_retried_until_success():
    llm = ScriptedLLM([ProcessingError("boom"), APIError("timeout"), full_dashboard()])
    engine = InsightEngine(llm, make_settings(chunk_max_retries=3).processing)

    result = run(engine.generate(TRANSCRIPT))

    assert len(llm.calls) == 3
    assert result.llm_calls == 1
    assert result.dashboard.summary.text == "Pricing and retention drive growth"


def test_batch_resplit_after_chunk_exhausts_retries():
    llm = ScriptedLLM([ProcessingError("boom"), full_dashboard()])
    engine = InsightEngine(llm, make_settings(chunk_max_retries=1, max_batch_attempts=2).processing)

    result = run(engine.generate(TRANSCRIPT))

    assert len(llm.calls) == 2
    assert result.dashboard.summary.topics == ["pricing", "retention"]


def test_all_batches_failing_raises():
    llm = ScriptedLLM([ProcessingError("boom")] * 4)
    engine = InsightEngine(llm, make_settings(chunk_max_retries=2, max_batch_attempts=2).processing)

    with pytest.raises(ProcessingError):
        run(engine.generate(TRANSCRIPT))
    assert len(llm.calls) == 4


def test_token_usage_sums_every_successful_call():
    replies = [
        Completion(text=_legacy_reply(["alpha"]), input_tokens=300, output_tokens=100, total_tokens=400),
        Completion(text=_legacy_reply(["delta"]), input_tokens=200, output_tokens=50, total_tokens=250),
    ]
    llm = ScriptedLLM(replies)

    result = run(chunked_engine(llm).generate(four_sentence_transcript()))

    assert result.tokens_used == 650
    assert (result.input_tokens, result.output_tokens) == (500, 150)


@pytest.mark.parametrize("text, category", [
    ("Revenue and profit margins grew", "Financial Analysis"),
    ("Nothing to see", "Key Insights"),
    ("Market risk", "Market Insights"),
    ("Avoid this pitfall and manage the risk", "Risk Factors"),
])
def test_keyword_categorizer(text, category):
    assert KeywordCategorizer().categorize(text) == category


def test_coverage_counts_salient_source_words():
    dashboard = Dashboard(summary=Summary(text="Pricing matters"))
    source = "Pricing pricing strategy customers"

    assert measure_coverage(source, dashboard) == pytest.approx(1 / 3)
    assert measure_coverage("a b c", dashboard) == 1.0
