import json

import pytest

from app.models.discovery import LeadScore, TokenSafetyConfig
from app.services.discovery import analyzer as analyzer_module
from app.services.discovery.analyzer import (
    LeadAnalyzer,
    build_analysis_prompt,
    build_scoring_prompt,
    generate_basic_summary,
    parse_json_payload,
    rule_based_analysis,
    rule_based_scoring,
)
from app.services.discovery.errors import (
    AIProviderError,
    CircuitBreakerOpenError,
    TokenBudgetExceededError,
)
from app.services.discovery.providers import AIProvider, ProviderKind
from app.services.discovery.token_safety import CircuitBreaker, TokenBudget
from tests.helpers.factories import StubCompletionClient, make_business, make_criteria
from tests.helpers.metrics_stub import StubMetrics


@pytest.fixture(autouse=True)
def _stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(analyzer_module, "metrics", stub)
    return stub


def _openai_analyzer(client, **kwargs):
    return LeadAnalyzer(AIProvider(ProviderKind.OPENAI, client), **kwargs)


def _scores_payload(*scores):
    return json.dumps(
        [{"index": i, "score": score, "reasoning": f"reason {i}"} for i, score in enumerate(scores)]
    )


def test_parse_json_payload_strips_code_fences():
    assert parse_json_payload('```json\n[{"index": 0}]\n```') == [{"index": 0}]
    assert parse_json_payload("```\n[]\n```") == []
    with pytest.raises(ValueError):
        parse_json_payload("not json")
    with pytest.raises(ValueError):
        parse_json_payload("   ")


def test_rule_based_scoring_is_deterministic():
    criteria = make_criteria()
    leads = [
        make_business("Match All"),
        make_business(
            "Match None",
            industry="Bakery",
            city="Boise",
            state="ID",
            rating=None,
            website=None,
        ),
    ]

    first = rule_based_scoring(leads, criteria)
    second = rule_based_scoring(leads, criteria)

    assert first == second
    # 50 base + 20 industry + 15 city + 10 state + 10 rating + 5 website, clamped
    assert first[0].score == 100
    assert "Industry match" in first[0].reasoning
    assert first[1].score == 50
    assert first[1].reasoning == "Basic criteria match"


def test_rule_based_analysis_follows_templates():
    criteria = make_criteria()
    lead = make_business(rating=4.6, review_count=120)
    [analysis] = rule_based_analysis([lead], [LeadScore(lead_index=0, score=90, reasoning="")], criteria)

    assert analysis.match_reasons == [
        "In target industry (HVAC)",
        "Located in target city (Houston)",
        "High customer satisfaction (4.6★)",
        "Established market presence",
    ]
    assert analysis.pain_points_identified == ["High energy costs", "Aging equipment"]
    assert analysis.buying_signals == ["Strong market presence indicates growth"]
    assert analysis.summary == (
        "Acme HVAC is a HVAC business in Houston, TX. They have 4.6★ rating from 120 reviews. "
        "Shows alignment with your targeting criteria."
    )


def test_rule_based_analysis_without_signals():
    criteria = make_criteria(industries=["Dental"])
    lead = make_business(
        "Quiet Shop", industry=None, city=None, state=None, rating=None, review_count=None
    )
    [analysis] = rule_based_analysis([lead], [], criteria)

    assert analysis.score == 50
    assert analysis.match_reasons == ["Meets basic targeting criteria"]
    assert analysis.buying_signals == []
    assert analysis.summary.startswith(
        "Quiet Shop is a business in the target area. They have an active business presence."
    )


def test_generate_basic_summary_strength_bands():
    lead = make_business(rating=4.2, review_count=30)
    assert generate_basic_summary(lead, 75).endswith("Shows strong alignment with targeting criteria.")
    assert "moderate" in generate_basic_summary(lead, 55)
    assert "weak" in generate_basic_summary(lead, 10)
    assert "with 4.2★ rating from 30 reviews" in generate_basic_summary(lead, 10)


def test_prompts_include_criteria_and_truncated_descriptions():
    criteria = make_criteria()
    lead = make_business(description="x" * 900, website=None)

    scoring = build_scoring_prompt([lead], criteria)
    analysis = build_analysis_prompt([lead], criteria)

    assert "Target Industries: HVAC" in scoring
    assert '"website": "No"' in scoring
    assert "x" * 200 in scoring and "x" * 201 not in scoring
    assert "IDEAL CUSTOMER PROFILE:\nCommercial HVAC contractors in Texas." in analysis
    assert "x" * 500 in analysis and "x" * 501 not in analysis


def test_score_batch_without_provider_uses_rules():
    result = LeadAnalyzer().score_batch([make_business()], make_criteria())

    assert result.model == "rule-based"
    assert result.warning == "No AI API key configured. Using rule-based scoring."
    assert result.token_usage.tokens_used == 0


def test_score_batch_empty_input():
    result = LeadAnalyzer().score_batch([], make_criteria())

    assert result.scores == []
    assert result.model == "none"


def test_score_batch_clamps_and_ignores_invalid_entries():
    payload = json.dumps(
        [
            {"index": 0, "score": 140, "reasoning": "great"},
            {"index": 1, "score": -5},
            {"index": 7, "score": 80},
            {"index": "bad", "score": 80},
        ]
    )
    client = StubCompletionClient([payload])
    budget = TokenBudget("sweep-1", TokenSafetyConfig())
    result = _openai_analyzer(client, budget=budget).score_batch(
        [make_business("A"), make_business("B")], make_criteria()
    )

    assert [score.score for score in result.scores] == [100, 0]
    assert result.scores[1].reasoning == "Basic criteria match"
    assert result.model == "gpt-4o-mini"
    assert result.token_usage.tokens_used == 500
    assert budget.get_usage().api_calls == 1
    assert client.calls[0]["model"] == "gpt-4o-mini"


def test_score_batch_caps_leads_sent_to_provider():
    client = StubCompletionClient([_scores_payload(*([60] * 3))])
    leads = [make_business(f"Lead {i}") for i in range(5)]

    _openai_analyzer(client, max_leads_to_score=3).score_batch(leads, make_criteria())

    assert '"name": "Lead 2"' in client.calls[0]["prompt"]
    assert '"name": "Lead 3"' not in client.calls[0]["prompt"]


def test_analyze_all_leads_gates_deep_analysis_on_threshold():
    analysis_payload = json.dumps(
        [
            {
                "index": 0,
                "matchReasons": ["Top fit"],
                "painPointsIdentified": ["Energy"],
                "buyingSignals": ["Hiring"],
                "summary": "Best lead.",
            },
            {"index": 1, "matchReasons": ["Close fit"], "summary": "Second lead."},
        ]
    )
    client = StubCompletionClient([_scores_payload(72, 95, 69, 40), analysis_payload])
    leads = [make_business(f"Lead {i}") for i in range(4)]

    result = _openai_analyzer(client).analyze_all_leads(leads, make_criteria())

    # highest score is analyzed first, so index 0 of stage B maps to lead 1
    assert result.lead_analyses[1].summary == "Best lead."
    assert result.lead_analyses[1].match_score == 95
    assert result.lead_analyses[1].buying_signals == ["Hiring"]
    assert result.lead_analyses[0].summary == "Second lead."
    assert result.lead_analyses[0].match_score == 72
    assert result.lead_analyses[2].match_reasons == ["reason 2"]
    assert "Shows moderate alignment" in result.lead_analyses[2].summary
    assert "Shows weak alignment" in result.lead_analyses[3].summary
    assert '"name": "Lead 2"' not in client.calls[1]["prompt"]
    assert client.calls[1]["model"] == "gpt-4o"
    assert result.ai_provider == "openai"
    assert result.total_token_usage.api_calls == 2
    assert result.warnings == []


def test_analyze_all_leads_skips_stage_b_when_nobody_qualifies():
    client = StubCompletionClient([_scores_payload(30, 69)])

    result = _openai_analyzer(client).analyze_all_leads(
        [make_business("A"), make_business("B")], make_criteria()
    )

    assert len(client.calls) == 1
    assert result.analysis_model == "none"
    assert set(result.lead_analyses) == {0, 1}


def test_unparseable_scoring_falls_back_and_keeps_spent_usage():
    client = StubCompletionClient(["I cannot help with that."])
    breaker = CircuitBreaker(failure_threshold=5, cooldown_seconds=300)

    result = _openai_analyzer(client, circuit_breaker=breaker).score_batch(
        [make_business()], make_criteria()
    )

    assert result.model == "rule-based"
    assert "could not be parsed" in result.warning
    assert "I cannot help" not in result.warning
    assert result.token_usage.tokens_used == 500
    assert breaker.get_state().failure_count == 1


def test_provider_error_falls_back_with_sanitized_warning():
    client = StubCompletionClient(
        [AIProviderError("upstream said: secret details", code="502_AI_UPSTREAM")]
    )

    result = _openai_analyzer(client).analyze_all_leads([make_business()], make_criteria())

    assert result.ai_provider == "rule-based"
    assert result.warnings[0] == "AI scoring failed (502_AI_UPSTREAM). Using rule-based fallback."
    assert all("secret" not in warning for warning in result.warnings)


def test_low_budget_degrades_scoring_without_calling_provider():
    client = StubCompletionClient([])
    budget = TokenBudget("sweep-1", TokenSafetyConfig(max_tokens_per_sweep=10))

    result = _openai_analyzer(client, budget=budget).score_batch(
        [make_business()], make_criteria()
    )

    assert client.calls == []
    assert result.model == "rule-based"
    assert "Token budget" in result.warning


def test_partial_budget_limits_deep_analysis():
    leads = [make_business(f"Lead {i}", description="d" * 400) for i in range(4)]
    criteria = make_criteria()
    scores = [LeadScore(lead_index=i, score=90, reasoning="") for i in range(4)]
    full_estimate = analyzer_module.estimate_prompt_tokens(build_analysis_prompt(leads, criteria))
    two_estimate = analyzer_module.estimate_prompt_tokens(build_analysis_prompt(leads[:2], criteria))
    reserve = 50
    budget = TokenBudget(
        "sweep-1",
        TokenSafetyConfig(max_tokens_per_sweep=(two_estimate + full_estimate) // 2 + reserve),
    )
    payload = json.dumps([{"index": i, "summary": f"AI {i}"} for i in range(4)])
    client = StubCompletionClient([payload], input_tokens=10, output_tokens=10)

    result = _openai_analyzer(
        client, budget=budget, output_token_reserve=reserve
    ).analyze_leads(leads, scores, criteria)

    assert 0 < len(client.calls)
    assert "deep analysis skipped" in result.warning
    ai_indices = [item.lead_index for item in result.analyses if item.summary.startswith("AI ")]
    rule_indices = [item.lead_index for item in result.analyses if not item.summary.startswith("AI ")]
    assert ai_indices and rule_indices
    assert sorted(ai_indices + rule_indices) == [0, 1, 2, 3]


def test_budget_check_reserves_completion_tokens():
    criteria = make_criteria()
    prompt_estimate = analyzer_module.estimate_prompt_tokens(
        build_scoring_prompt([make_business()], criteria)
    )
    budget = TokenBudget(
        "sweep-1", TokenSafetyConfig(max_tokens_per_sweep=prompt_estimate + 100)
    )
    client = StubCompletionClient([_scores_payload(80)])

    result = _openai_analyzer(client, budget=budget, output_token_reserve=101).score_batch(
        [make_business()], criteria
    )

    assert client.calls == []
    assert result.model == "rule-based"


def test_budget_overrun_after_call_charges_billed_tokens():
    client = StubCompletionClient([_scores_payload(80)], input_tokens=900, output_tokens=900)
    budget = TokenBudget("sweep-1", TokenSafetyConfig(max_tokens_per_sweep=1_000))

    with pytest.raises(TokenBudgetExceededError):
        _openai_analyzer(client, budget=budget, output_token_reserve=0).score_batch(
            [make_business()], make_criteria()
        )

    usage = budget.get_usage()
    assert usage.tokens_used == 1_800
    assert usage.api_calls == 1
    assert usage.estimated_cost_usd == pytest.approx(900 / 1e6 * 0.15 + 900 / 1e6 * 0.60)
    assert budget.get_remaining() == 0
    assert budget.can_consume(1) is False


def test_open_circuit_stops_ai_calls():
    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=300)
    breaker.record_failure()
    client = StubCompletionClient([_scores_payload(80)])

    with pytest.raises(CircuitBreakerOpenError):
        _openai_analyzer(client, circuit_breaker=breaker).score_batch(
            [make_business()], make_criteria()
        )

    assert client.calls == []
