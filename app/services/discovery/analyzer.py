"""Two-stage lead scoring and analysis with a deterministic rule-based fallback.

Stage A scores every collected business in one cheap batched call. Stage B
runs a more expensive analysis only for leads that clear ``SCORE_THRESHOLD``.
Both stages degrade to rule-based output when no provider is configured, the
provider fails, the response cannot be parsed, or the sweep budget cannot
cover the prompt.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Final

from app.models.discovery import (
    DiscoveredLeadAIAnalysis,
    LeadAnalysis,
    LeadScore,
    RawBusinessData,
    TargetingCriteria,
    TokenUsage,
)
from app.observability.metrics import metrics
from app.services.discovery.errors import AIProviderError, TokenBudgetExceededError
from app.services.discovery.pricing import calculate_cost, estimate_prompt_tokens
from app.services.discovery.providers import (
    MAX_OUTPUT_TOKENS,
    RULE_BASED_MODEL,
    AIProvider,
    Completion,
    ModelTier,
    ProviderKind,
)
from app.services.discovery.token_safety import CircuitBreaker, TokenBudget

logger = logging.getLogger(__name__)

MAX_LEADS_TO_SCORE: Final[int] = 50
MAX_LEADS_TO_ANALYZE: Final[int] = 15
SCORE_THRESHOLD: Final[int] = 70
DEFAULT_SCORE: Final[int] = 50
NO_MODEL: Final[str] = "none"


@dataclass
class ScoringResult:
    scores: list[LeadScore]
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = NO_MODEL
    warning: str | None = None


@dataclass
class AnalysisResult:
    analyses: list[LeadAnalysis]
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = NO_MODEL
    warning: str | None = None


@dataclass
class FullAnalysisResult:
    lead_analyses: dict[int, DiscoveredLeadAIAnalysis]
    total_token_usage: TokenUsage
    warnings: list[str]
    ai_provider: str = RULE_BASED_MODEL
    scoring_model: str = NO_MODEL
    analysis_model: str = NO_MODEL


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _join_or(values: list[str], fallback: str) -> str:
    return ", ".join(values) or fallback


def _geography_text(criteria: TargetingCriteria) -> str:
    geography = criteria.geography
    return _join_or(geography.cities, "") or _join_or(geography.states, "Any")


def _location_text(lead: RawBusinessData) -> str:
    return ", ".join(part for part in (lead.city, lead.state) if part) or "Unknown"


def build_scoring_prompt(leads: list[RawBusinessData], criteria: TargetingCriteria) -> str:
    leads_json = [
        {
            "index": index,
            "name": lead.name,
            "industry": lead.industry or "Unknown",
            "location": _location_text(lead),
            "rating": lead.rating,
            "reviewCount": lead.review_count,
            "website": "Yes" if lead.website else "No",
            "description": (lead.description or "")[:200],
        }
        for index, lead in enumerate(leads)
    ]
    size = criteria.company_size
    return f"""You are a B2B lead scoring assistant. Score each business 0-100 based on how well they match the targeting criteria.

TARGETING CRITERIA:
- Target Industries: {_join_or(criteria.industries, "Any")}
- Target Company Size: {size.min}-{size.max} employees
- Target Geography: {_geography_text(criteria)}
- Pain Points to Look For: {_join_or(criteria.pain_points, "None specified")}
- Buying Signals: {_join_or(criteria.buying_signals, "None specified")}
- Exclude Keywords: {_join_or(criteria.exclude_keywords, "None")}

BUSINESSES TO SCORE:
{json.dumps(leads_json, indent=2)}

SCORING GUIDE:
- 90-100: Perfect match (right industry, location, shows buying signals)
- 70-89: Strong match (most criteria met)
- 50-69: Moderate match (some criteria met)
- 30-49: Weak match (few criteria met)
- 0-29: Poor match (doesn't fit)

Respond with ONLY valid JSON array, no other text:
[
  {{"index": 0, "score": 85, "reasoning": "Brief 1-line reason"}},
  ...
]"""


def build_analysis_prompt(leads: list[RawBusinessData], criteria: TargetingCriteria) -> str:
    leads_json = [
        {
            "index": index,
            "name": lead.name,
            "industry": lead.industry or "Unknown",
            "location": {"address": lead.address, "city": lead.city, "state": lead.state},
            "contact": {"phone": lead.phone, "email": lead.email, "website": lead.website},
            "metrics": {"rating": lead.rating, "reviewCount": lead.review_count},
            "description": (lead.description or "")[:500],
        }
        for index, lead in enumerate(leads)
    ]
    size = criteria.company_size
    return f"""You are a B2B sales intelligence analyst. Analyze each business and identify opportunities.

IDEAL CUSTOMER PROFILE:
{criteria.ideal_customer_profile or "Not specified"}

TARGET CRITERIA:
- Industries: {_join_or(criteria.industries, "Any")}
- Company Size: {size.min}-{size.max} employees
- Geography: {_geography_text(criteria)}
- Pain Points: {_join_or(criteria.pain_points, "None specified")}
- Buying Signals: {_join_or(criteria.buying_signals, "None specified")}

BUSINESSES TO ANALYZE:
{json.dumps(leads_json, indent=2)}

For each business, provide:
1. matchReasons: 2-4 specific reasons why they match (concrete, not generic)
2. painPointsIdentified: Potential pain points they might have (infer from industry/size)
3. buyingSignals: Any indicators they might be ready to buy
4. summary: 2-3 sentence sales-ready summary

Respond with ONLY valid JSON array, no other text:
[
  {{
    "index": 0,
    "matchReasons": ["Reason 1", "Reason 2"],
    "painPointsIdentified": ["Pain point 1"],
    "buyingSignals": ["Signal 1"],
    "summary": "2-3 sentence summary"
  }},
  ...
]"""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def parse_json_payload(text: str) -> Any:
    """Strip Markdown code fences and decode JSON; raises ``ValueError`` on bad input."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()
    if not cleaned:
        raise ValueError("Empty model response.")
    return json.loads(cleaned)


def _clamp_score(value: Any) -> int:
    score = float(value)
    if math.isnan(score):
        raise ValueError("score is NaN")
    return int(round(max(0.0, min(100.0, score))))


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _coerce_scores(payload: Any, count: int) -> list[LeadScore]:
    if not isinstance(payload, list):
        raise ValueError("Scoring response must be a JSON array.")
    scores: dict[int, LeadScore] = {}
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        try:
            index = int(entry["index"])
            score = _clamp_score(entry["score"])
        except (KeyError, TypeError, ValueError):
            continue
        if 0 <= index < count and index not in scores:
            reasoning = str(entry.get("reasoning") or "").strip() or "Basic criteria match"
            scores[index] = LeadScore(lead_index=index, score=score, reasoning=reasoning)
    return [scores[index] for index in sorted(scores)]


def _coerce_analyses(payload: Any, scores: list[LeadScore]) -> list[LeadAnalysis]:
    if not isinstance(payload, list):
        raise ValueError("Analysis response must be a JSON array.")
    analyses: dict[int, LeadAnalysis] = {}
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        try:
            index = int(entry["index"])
        except (KeyError, TypeError, ValueError):
            continue
        if not 0 <= index < len(scores) or index in analyses:
            continue
        analyses[index] = LeadAnalysis(
            lead_index=index,
            score=scores[index].score,
            match_reasons=_string_list(entry.get("matchReasons")),
            pain_points_identified=_string_list(entry.get("painPointsIdentified")),
            buying_signals=_string_list(entry.get("buyingSignals")),
            summary=str(entry.get("summary") or ""),
        )
    return [analyses[index] for index in sorted(analyses)]


# ---------------------------------------------------------------------------
# Rule-based fallback
# ---------------------------------------------------------------------------


def _format_number(value: float) -> str:
    return f"{value:g}"


def _industry_matches(industry: str | None, targets: list[str]) -> bool:
    if not industry:
        return False
    lowered = industry.lower()
    return any(
        target.lower() in lowered or lowered in target.lower() for target in targets if target
    )


def _equals_any(value: str | None, candidates: list[str]) -> bool:
    if not value:
        return False
    lowered = value.lower()
    return any(candidate.lower() == lowered for candidate in candidates)


def rule_based_score(lead: RawBusinessData, criteria: TargetingCriteria) -> tuple[int, str]:
    """Deterministic score and reasoning for a single lead."""
    score = 50
    reasons: list[str] = []
    if _industry_matches(lead.industry, criteria.industries):
        score += 20
        reasons.append("Industry match")
    if _equals_any(lead.city, criteria.geography.cities):
        score += 15
        reasons.append("City match")
    if _equals_any(lead.state, criteria.geography.states):
        score += 10
        reasons.append("State match")
    if lead.rating:
        if lead.rating >= 4.5:
            score += 10
            reasons.append("Excellent rating")
        elif lead.rating >= 4.0:
            score += 5
            reasons.append("Good rating")
    if lead.website:
        score += 5
        reasons.append("Has website")
    return max(0, min(100, score)), ", ".join(reasons) or "Basic criteria match"


def rule_based_scoring(
    leads: list[RawBusinessData], criteria: TargetingCriteria
) -> list[LeadScore]:
    scores: list[LeadScore] = []
    for index, lead in enumerate(leads):
        score, reasoning = rule_based_score(lead, criteria)
        scores.append(LeadScore(lead_index=index, score=score, reasoning=reasoning))
    return scores


def rule_based_analysis(
    leads: list[RawBusinessData],
    scores: list[LeadScore],
    criteria: TargetingCriteria,
    *,
    start_index: int = 0,
) -> list[LeadAnalysis]:
    """Templated analysis; ``scores`` is aligned positionally with ``leads``."""
    analyses: list[LeadAnalysis] = []
    for offset, lead in enumerate(leads):
        score = scores[offset].score if offset < len(scores) else DEFAULT_SCORE

        match_reasons: list[str] = []
        if lead.industry and any(
            target.lower() in lead.industry.lower() for target in criteria.industries if target
        ):
            match_reasons.append(f"In target industry ({lead.industry})")
        if _equals_any(lead.city, criteria.geography.cities):
            match_reasons.append(f"Located in target city ({lead.city})")
        if lead.rating and lead.rating >= 4.0:
            match_reasons.append(f"High customer satisfaction ({_format_number(lead.rating)}★)")
        if lead.review_count and lead.review_count >= 50:
            match_reasons.append("Established market presence")
        if not match_reasons:
            match_reasons.append("Meets basic targeting criteria")

        buying_signals: list[str] = []
        if lead.rating and lead.rating >= 4.5 and lead.review_count and lead.review_count >= 100:
            buying_signals.append("Strong market presence indicates growth")

        location = ", ".join(part for part in (lead.city, lead.state) if part)
        industry = f" {lead.industry}" if lead.industry else ""
        presence = (
            f"They have {_format_number(lead.rating)}★ rating"
            if lead.rating
            else "They have an active business presence"
        )
        reviews = f" from {lead.review_count} reviews" if lead.review_count else ""
        summary = (
            f"{lead.name} is a{industry} business in {location or 'the target area'}. "
            f"{presence}{reviews}. Shows alignment with your targeting criteria."
        )

        analyses.append(
            LeadAnalysis(
                lead_index=start_index + offset,
                score=score,
                match_reasons=match_reasons,
                pain_points_identified=list(criteria.pain_points[:2]),
                buying_signals=buying_signals,
                summary=summary,
            )
        )
    return analyses


def generate_basic_summary(lead: RawBusinessData, score: int) -> str:
    """One-line summary for leads that did not receive deep analysis."""
    if score >= 70:
        strength = "strong"
    elif score >= 50:
        strength = "moderate"
    else:
        strength = "weak"
    location = ", ".join(part for part in (lead.city, lead.state) if part)
    summary = f"{lead.name} is a{f' {lead.industry}' if lead.industry else ''} business"
    if location:
        summary += f" in {location}"
    if lead.rating and lead.review_count:
        summary += f" with {_format_number(lead.rating)}★ rating from {lead.review_count} reviews"
    return f"{summary}. Shows {strength} alignment with targeting criteria."


def _sum_usage(*usages: TokenUsage) -> TokenUsage:
    return TokenUsage(
        tokens_used=sum(usage.tokens_used for usage in usages),
        api_calls=sum(usage.api_calls for usage in usages),
        estimated_cost_usd=sum(usage.estimated_cost_usd for usage in usages),
    )


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class LeadAnalyzer:
    """Runs stage A scoring and stage B analysis against one provider."""

    def __init__(
        self,
        provider: AIProvider | None = None,
        *,
        budget: TokenBudget | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        max_leads_to_score: int = MAX_LEADS_TO_SCORE,
        max_leads_to_analyze: int = MAX_LEADS_TO_ANALYZE,
        score_threshold: int = SCORE_THRESHOLD,
        output_token_reserve: int = MAX_OUTPUT_TOKENS,
    ) -> None:
        self._provider = provider or AIProvider.rule_based()
        self._budget = budget
        self._breaker = circuit_breaker
        self._max_score = max_leads_to_score
        self._max_analyze = max_leads_to_analyze
        self._threshold = score_threshold
        # pre-call checks reserve room for the capped completion as well as the prompt
        self._output_reserve = max(0, output_token_reserve)

    @property
    def provider(self) -> AIProvider:
        return self._provider

    def score_batch(
        self, leads: list[RawBusinessData], criteria: TargetingCriteria
    ) -> ScoringResult:
        """Stage A: score up to ``max_leads_to_score`` leads in a single call."""
        batch = leads[: self._max_score]
        if not batch:
            return ScoringResult(scores=[])

        if not self._provider.uses_ai:
            return ScoringResult(
                scores=rule_based_scoring(batch, criteria),
                model=RULE_BASED_MODEL,
                warning="No AI API key configured. Using rule-based scoring.",
            )

        prompt = build_scoring_prompt(batch, criteria)
        if not self._budget_allows(prompt):
            return ScoringResult(
                scores=rule_based_scoring(batch, criteria),
                model=RULE_BASED_MODEL,
                warning="Token budget too low for AI scoring. Using rule-based scoring.",
            )

        usage = TokenUsage()
        try:
            completion, usage = self._call(prompt, ModelTier.SCORING, stage="scoring")
            scores = _coerce_scores(parse_json_payload(completion.text), len(batch))
        except AIProviderError as exc:
            return ScoringResult(
                scores=rule_based_scoring(batch, criteria),
                model=RULE_BASED_MODEL,
                warning=f"AI scoring failed ({exc.code}). Using rule-based fallback.",
            )
        except ValueError:
            self._record_failure("scoring")
            return ScoringResult(
                scores=rule_based_scoring(batch, criteria),
                token_usage=usage,
                model=RULE_BASED_MODEL,
                warning="AI scoring response could not be parsed. Using rule-based fallback.",
            )

        self._record_success()
        return ScoringResult(
            scores=scores,
            token_usage=usage,
            model=self._provider.model_for(ModelTier.SCORING),
        )

    def analyze_leads(
        self,
        leads: list[RawBusinessData],
        scores: list[LeadScore],
        criteria: TargetingCriteria,
    ) -> AnalysisResult:
        """Stage B: deep analysis; ``scores`` is aligned positionally with ``leads``."""
        batch = leads[: self._max_analyze]
        batch_scores = scores[: len(batch)]
        if not batch:
            return AnalysisResult(analyses=[])

        if not self._provider.uses_ai:
            return AnalysisResult(
                analyses=rule_based_analysis(batch, batch_scores, criteria),
                model=RULE_BASED_MODEL,
                warning="No AI API key configured. Using rule-based analysis.",
            )

        ai_count = self._affordable_analysis_count(batch, criteria)
        overflow_warning = None
        if ai_count < len(batch):
            skipped = len(batch) - ai_count
            overflow_warning = (
                f"Token budget exhausted: deep analysis skipped for {skipped} lead(s). "
                "Using rule-based analysis for them."
            )
            logger.warning(
                "discovery.analysis.budget_limited",
                extra={"requested": len(batch), "affordable": ai_count},
            )
            metrics.increment("analysis.budget_limited", tags={"skipped": skipped})

        overflow = rule_based_analysis(
            batch[ai_count:], batch_scores[ai_count:], criteria, start_index=ai_count
        )
        if ai_count == 0:
            return AnalysisResult(
                analyses=overflow, model=RULE_BASED_MODEL, warning=overflow_warning
            )

        ai_batch = batch[:ai_count]
        ai_scores = batch_scores[:ai_count]
        prompt = build_analysis_prompt(ai_batch, criteria)
        usage = TokenUsage()
        try:
            completion, usage = self._call(prompt, ModelTier.ANALYSIS, stage="analysis")
            analyses = _coerce_analyses(parse_json_payload(completion.text), ai_scores)
        except AIProviderError as exc:
            return AnalysisResult(
                analyses=rule_based_analysis(batch, batch_scores, criteria),
                model=RULE_BASED_MODEL,
                warning=f"AI analysis failed ({exc.code}). Using rule-based fallback.",
            )
        except ValueError:
            self._record_failure("analysis")
            return AnalysisResult(
                analyses=rule_based_analysis(batch, batch_scores, criteria),
                token_usage=usage,
                model=RULE_BASED_MODEL,
                warning="AI analysis response could not be parsed. Using rule-based fallback.",
            )

        self._record_success()
        return AnalysisResult(
            analyses=analyses + overflow,
            token_usage=usage,
            model=self._provider.model_for(ModelTier.ANALYSIS),
            warning=overflow_warning,
        )

    def analyze_all_leads(
        self, leads: list[RawBusinessData], criteria: TargetingCriteria
    ) -> FullAnalysisResult:
        """Score every lead, deep-analyze the high scorers, and build a per-lead map."""
        warnings: list[str] = []
        scoring = self.score_batch(leads, criteria)
        if scoring.warning:
            warnings.append(scoring.warning)

        scores_by_index = {score.lead_index: score for score in scoring.scores}
        high_scorers = sorted(
            (score for score in scoring.scores if score.score >= self._threshold),
            key=lambda score: (-score.score, score.lead_index),
        )[: self._max_analyze]

        analysis = AnalysisResult(analyses=[])
        if high_scorers:
            analysis = self.analyze_leads(
                [leads[score.lead_index] for score in high_scorers], high_scorers, criteria
            )
            if analysis.warning:
                warnings.append(analysis.warning)

        # stage B indices are positions within high_scorers
        deep: dict[int, LeadAnalysis] = {
            high_scorers[item.lead_index].lead_index: item
            for item in analysis.analyses
            if item.lead_index < len(high_scorers)
        }

        lead_analyses: dict[int, DiscoveredLeadAIAnalysis] = {}
        for index, lead in enumerate(leads):
            score_data = scores_by_index.get(index)
            score = score_data.score if score_data else DEFAULT_SCORE
            detail = deep.get(index)
            if detail is not None:
                lead_analyses[index] = DiscoveredLeadAIAnalysis(
                    match_score=score,
                    match_reasons=detail.match_reasons,
                    pain_points_identified=detail.pain_points_identified,
                    buying_signals=detail.buying_signals,
                    summary=detail.summary,
                )
            else:
                lead_analyses[index] = DiscoveredLeadAIAnalysis(
                    match_score=score,
                    match_reasons=[score_data.reasoning if score_data else "Basic criteria match"],
                    summary=generate_basic_summary(lead, score),
                )

        total = _sum_usage(scoring.token_usage, analysis.token_usage)
        used_ai = any(
            model not in (RULE_BASED_MODEL, NO_MODEL) for model in (scoring.model, analysis.model)
        )
        ai_provider = self._provider.kind.value if used_ai else ProviderKind.RULE_BASED.value
        metrics.increment(
            "analysis.completed",
            tags={"provider": ai_provider, "high_scorers": len(high_scorers)},
        )
        logger.info(
            "discovery.analysis.completed",
            extra={
                "leads": len(leads),
                "high_scorers": len(high_scorers),
                "scoring_model": scoring.model,
                "analysis_model": analysis.model,
                "tokens_used": total.tokens_used,
                "cost_usd": round(total.estimated_cost_usd, 6),
            },
        )
        return FullAnalysisResult(
            lead_analyses=lead_analyses,
            total_token_usage=total,
            warnings=warnings,
            ai_provider=ai_provider,
            scoring_model=scoring.model,
            analysis_model=analysis.model,
        )

    def _budget_allows(self, prompt: str) -> bool:
        if self._budget is None:
            return True
        return self._budget.can_consume(estimate_prompt_tokens(prompt) + self._output_reserve)

    def _affordable_analysis_count(
        self, batch: list[RawBusinessData], criteria: TargetingCriteria
    ) -> int:
        if self._budget is None:
            return len(batch)
        estimate = estimate_prompt_tokens(build_analysis_prompt(batch, criteria))
        if self._budget.can_consume(estimate + self._output_reserve):
            return len(batch)
        per_lead = max(1, math.ceil(estimate / len(batch)))
        count = self._budget.calculate_batch_size(per_lead, len(batch))
        while count > 0 and not self._budget_allows(build_analysis_prompt(batch[:count], criteria)):
            count -= 1
        return count

    def _call(self, prompt: str, tier: ModelTier, *, stage: str) -> tuple[Completion, TokenUsage]:
        """Invoke the provider, charge the sweep budget, and return raw output.

        ``CircuitBreakerOpenError`` and ``TokenBudgetExceededError`` propagate to
        the caller so the sweep stops spending.
        """
        if self._breaker is not None:
            self._breaker.ensure_closed()
        client = self._provider.client
        model = self._provider.model_for(tier)
        if client is None:  # pragma: no cover - guarded by uses_ai
            raise AIProviderError("No AI client configured.")
        try:
            completion = client.complete(prompt, model=model)
        except AIProviderError as exc:
            self._record_failure(stage, code=exc.code)
            raise

        usage = TokenUsage(
            tokens_used=completion.total_tokens,
            api_calls=1,
            estimated_cost_usd=calculate_cost(
                model, completion.input_tokens, completion.output_tokens
            ),
        )
        metrics.increment("ai.tokens", usage.tokens_used, tags={"stage": stage, "model": model})
        if self._budget is not None:
            try:
                self._budget.consume(usage.tokens_used, usage.estimated_cost_usd)
            except TokenBudgetExceededError:
                self._budget.record_overrun(usage.tokens_used, usage.estimated_cost_usd)
                metrics.increment("analysis.budget_overrun", tags={"stage": stage})
                raise
        return completion, usage

    def _record_failure(self, stage: str, *, code: str = "PARSE_ERROR") -> None:
        metrics.increment("ai.errors", tags={"stage": stage, "code": code})
        logger.error("discovery.ai.failed", extra={"stage": stage, "code": code})
        if self._breaker is not None:
            self._breaker.record_failure()

    def _record_success(self) -> None:
        if self._breaker is not None:
            self._breaker.record_success()
