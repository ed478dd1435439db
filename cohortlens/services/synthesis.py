"""
Narrative Synthesizer.

Turns a GroupAnalysisResult into an overview, key insights,
recommendations and four narrative sections, by one of two strategies:

- remote: prompt the language model through the circuit breaker, retry
  transient failures (1s, 2s, 4s), parse and validate a JSON reply.
  A reply that fails parsing or validation raises SynthesisFailure.
- template: deterministic text built from the numeric insights. Used when
  remote synthesis is disabled or the breaker is open.

A group whose own remote synthesis failed during the current outage does
not get the template while the breaker stays open: its retries raise
SynthesisFailure until a remote call succeeds again. That keeps a failed
job from later completing on fallback text.
"""

import asyncio
import json
import re
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from cohortlens.config import settings
from cohortlens.exceptions import RemoteRequestError, SynthesisFailure, TransientRemoteError
from cohortlens.schemas.analysis import GroupAnalysisResult, NarrativeSynthesis, Narratives, Severity
from cohortlens.services.llm_gateway import LLMGateway
from cohortlens.services.resilience import CircuitBreaker, CircuitOpenError, retry_with_backoff

logger = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


# ── Prompt ────────────────────────────────────────────────────────────────


def _label(name: str) -> str:
    return name.replace("_", " ")


def _level(avg: float) -> str:
    if avg >= 0.7:
        return "strong"
    if avg >= 0.5:
        return "moderate"
    return "developing"


def build_prompt(result: GroupAnalysisResult) -> str:
    """Natural-language prompt summarising the aggregated insights."""
    insights = result.insights
    lines = [
        "You are analysing the relationship dynamics of a small group.",
        f"Members: {result.member_count}. Data completeness: {round(result.data_completeness * 100)}%. "
        f"Analysis confidence: {round(result.metadata.overall_confidence * 100)}%.",
    ]

    if insights.compatibility is not None:
        matrix = insights.compatibility
        lines.append(
            f"Average pairwise compatibility is {round(matrix.average_compatibility * 100)}% "
            f"across {matrix.pair_count} pairs; {len(matrix.clusters)} highly compatible cluster(s); "
            f"group cohesion {round(matrix.cohesion * 100)}%."
        )
    if insights.strengths:
        top = ", ".join(
            f"{_label(s.name)} ({round(s.prevalence * 100)}% of members)"
            for s in insights.strengths[:3]
        )
        lines.append(f"Collective strengths: {top}.")
    if insights.risks:
        top = ", ".join(
            f"{_label(r.type)} ({r.severity.value}, probability {r.probability:.2f})"
            for r in insights.risks[:3]
        )
        lines.append(f"Conflict risks: {top}.")
    if insights.goal_alignment is not None:
        goals = insights.goal_alignment
        lines.append(
            f"Goal alignment is {round(goals.overall_alignment * 100)}%; "
            f"shared goals: {', '.join(goals.shared_goals) or 'none'}."
        )

    lines.append(
        "Respond with a single JSON object with keys: overview (string), "
        "key_insights (list of strings), recommendations (list of strings), "
        "narratives (object with string keys compatibility, strengths, challenges, opportunities)."
    )
    return "\n".join(lines)


def parse_response(text: str) -> NarrativeSynthesis:
    """Parse and validate the model reply. Raises SynthesisFailure."""
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise SynthesisFailure("Synthesis reply contains no JSON object")
    try:
        data = json.loads(match.group(0))
    except ValueError as exc:
        raise SynthesisFailure(f"Synthesis reply is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SynthesisFailure("Synthesis reply is not a JSON object")

    if "keyInsights" in data and "key_insights" not in data:
        data["key_insights"] = data.pop("keyInsights")
    data["source"] = "remote"
    try:
        return NarrativeSynthesis.model_validate(data)
    except ValidationError as exc:
        missing = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise SynthesisFailure(
            "Synthesis reply is missing required fields",
            details={"fields": missing},
        ) from exc


# ── Deterministic template ────────────────────────────────────────────────


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def template_synthesis(result: GroupAnalysisResult, source: str = "template") -> NarrativeSynthesis:
    insights = result.insights
    matrix = insights.compatibility
    strengths = insights.strengths or []
    risks = insights.risks or []
    goals = insights.goal_alignment
    critical = [r for r in risks if r.severity == Severity.CRITICAL]

    # Overview
    avg = matrix.average_compatibility if matrix else 0.0
    overview = (
        f"This {result.member_count}-member group analysis reveals {_level(avg)} "
        f"interpersonal compatibility"
    )
    if strengths:
        overview += f" with {_plural(len(strengths), 'identified collective strength')}"
    if risks:
        overview += f" and {_plural(len(risks), 'potential conflict area')}"
        if critical:
            overview += f" ({len(critical)} requiring immediate attention)"
    else:
        overview += " and healthy group dynamics with no significant conflict risks detected"
    overview += (
        f". Analysis confidence: {round(result.metadata.overall_confidence * 100)}% based on "
        f"{round(result.data_completeness * 100)}% data completeness."
    )

    # Key insights
    key_insights = []
    if matrix is not None:
        if avg >= 0.7:
            key_insights.append(
                f"High group compatibility ({round(avg * 100)}%) creates strong foundation for collaboration"
            )
        elif avg < 0.5:
            key_insights.append(
                "Moderate compatibility challenges suggest need for structured communication protocols"
            )
    if strengths:
        top = strengths[0]
        key_insights.append(
            f'Collective strength in "{top.name}" present in {round(top.prevalence * 100)}% of members'
        )
    if risks:
        top_risk = risks[0]
        key_insights.append(
            f"Primary conflict risk: {_label(top_risk.type)} ({top_risk.severity.value} severity)"
        )
    if goals is not None:
        alignment = round(goals.overall_alignment * 100)
        if alignment >= 70:
            key_insights.append(f"Strong goal alignment ({alignment}%) indicates shared vision and purpose")
        elif alignment < 40:
            key_insights.append(f"Goal alignment needs attention ({alignment}%) - clarify shared objectives")
    if not key_insights:
        key_insights.append("Group analysis complete - review detailed sections for specific insights")

    # Recommendations
    recommendations = []
    if risks:
        if critical:
            recommendations.append(
                "Address critical conflict risks immediately through facilitated group discussion"
            )
        if risks[0].mitigation_strategies:
            recommendations.append(risks[0].mitigation_strategies[0])
    if matrix is not None and avg < 0.6:
        recommendations.append("Invest in team-building activities to improve interpersonal compatibility")
    if strengths:
        top = strengths[0]
        use = top.applications[0] if top.applications else "group success"
        recommendations.append(f'Leverage collective strength in "{top.name}" for {use}')
    if not recommendations:
        recommendations.append("Continue fostering open communication and mutual understanding")
        recommendations.append("Schedule regular group check-ins to maintain healthy dynamics")

    return NarrativeSynthesis(
        overview=overview,
        key_insights=key_insights,
        recommendations=recommendations,
        narratives=Narratives(
            compatibility=_compatibility_narrative(result),
            strengths=_strengths_narrative(result),
            challenges=_challenges_narrative(result),
            opportunities=_opportunities_narrative(result),
        ),
        source=source,
    )


def _compatibility_narrative(result: GroupAnalysisResult) -> str:
    matrix = result.insights.compatibility
    if matrix is None:
        return "Compatibility analysis pending - awaiting member data."
    avg = matrix.average_compatibility
    if avg >= 0.7:
        outlook = "natural alignment that will facilitate smooth collaboration and mutual understanding."
    elif avg >= 0.5:
        outlook = "solid foundation with some areas requiring conscious effort to bridge differences."
    else:
        outlook = "significant differences that will benefit from structured communication and team-building efforts."
    return (
        f"Compatibility analysis across {_plural(matrix.pair_count, 'member pair')} reveals an average "
        f"compatibility score of {round(avg * 100)}%. This {_level(avg)} compatibility level suggests {outlook}"
    )


def _strengths_narrative(result: GroupAnalysisResult) -> str:
    strengths = result.insights.strengths
    if not strengths:
        return "Collective strength analysis pending - awaiting sufficient member data."
    top = strengths[0]
    uses = " and ".join(top.applications[:2]) or "collaborative success"
    text = (
        f"The group demonstrates notable collective strength in {top.name}, present in "
        f"{round(top.prevalence * 100)}% of members. This shared capability creates opportunities for {uses}."
    )
    if len(strengths) > 1:
        others = " and ".join(s.name for s in strengths[1:3])
        text += f" Additional strengths include {others}."
    return text


def _challenges_narrative(result: GroupAnalysisResult) -> str:
    risks = result.insights.risks
    if not risks:
        return "No significant conflict risks identified - group shows healthy dynamics."
    top = risks[0]
    trigger = top.triggers[0] if top.triggers else "group activities"
    approach = (
        f"Recommended approach: {top.mitigation_strategies[0]}"
        if top.mitigation_strategies
        else "Proactive intervention recommended."
    )
    return (
        f"The primary challenge area involves {_label(top.type)} with {top.severity.value} severity. "
        f"This affects {_plural(len(top.affected_members), 'member')} and may surface during "
        f"{trigger}. {approach}"
    )


def _opportunities_narrative(result: GroupAnalysisResult) -> str:
    strengths = result.insights.strengths or []
    goals = result.insights.goal_alignment
    if not strengths and goals is None:
        return "Opportunities analysis pending - awaiting comprehensive member data."

    parts = []
    if goals is not None and goals.overall_alignment >= 0.6:
        parts.append(
            f"Strong goal alignment ({round(goals.overall_alignment * 100)}%) presents opportunities "
            f"for unified action toward shared objectives."
        )
    if strengths:
        applications = list(dict.fromkeys(a for s in strengths for a in s.applications))[:3]
        if applications:
            parts.append(
                f"The group's collective strengths create natural opportunities in {', '.join(applications)}."
            )
    if not parts:
        return "The group shows potential for growth through continued collaboration and mutual support."
    return " ".join(parts)


# ── Synthesizer ───────────────────────────────────────────────────────────


class NarrativeSynthesizer:
    """Chooses between remote and template synthesis for each result."""

    algorithm = "narrative_synthesis_v1"

    def __init__(
        self,
        breaker: CircuitBreaker,
        gateway: Optional[LLMGateway] = None,
        enabled: Optional[bool] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.breaker = breaker
        self.gateway = gateway
        self.enabled = settings.synthesis_enabled if enabled is None else enabled
        self.max_retries = settings.synthesis_max_retries if max_retries is None else max_retries
        self.base_delay = settings.synthesis_retry_base_delay if base_delay is None else base_delay
        self.max_tokens = max_tokens or settings.synthesis_max_tokens
        self.temperature = settings.synthesis_temperature if temperature is None else temperature
        self._sleep = sleep
        # groups whose remote call failed since the last remote success
        self._failed_groups: set[str] = set()

    @property
    def mode(self) -> str:
        return "remote" if self.enabled and self.gateway is not None else "template"

    async def synthesize(self, result: GroupAnalysisResult) -> NarrativeSynthesis:
        if self.mode == "template":
            return template_synthesis(result)

        if self.breaker.is_open():
            if result.group_id in self._failed_groups:
                logger.warning(
                    "synthesis_refused_circuit_open",
                    group_id=result.group_id,
                    breaker=self.breaker.name,
                )
                raise SynthesisFailure(
                    f"Remote synthesis for group {result.group_id} failed and "
                    f"circuit '{self.breaker.name}' is still open",
                    details={"group_id": result.group_id, "breaker": self.breaker.name},
                )
            logger.warning(
                "synthesis_fallback_circuit_open",
                group_id=result.group_id,
                breaker=self.breaker.name,
            )
            return template_synthesis(result, source="template_fallback")

        text = await self._call_remote(result)
        self._failed_groups.clear()
        synthesis = parse_response(text)
        logger.info(
            "synthesis_completed",
            group_id=result.group_id,
            analysis_id=result.analysis_id,
            key_insights=len(synthesis.key_insights),
            recommendations=len(synthesis.recommendations),
        )
        return synthesis

    async def _call_remote(self, result: GroupAnalysisResult) -> str:
        prompt = build_prompt(result)

        async def attempt() -> str:
            return await self.breaker.call(
                self.gateway.complete, prompt, self.max_tokens, self.temperature
            )

        try:
            return await retry_with_backoff(
                attempt,
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                jitter=0.0,
                retry_on=(TransientRemoteError,),
                operation_name="narrative_synthesis",
                sleep=self._sleep,
            )
        except TransientRemoteError as exc:
            self._failed_groups.add(result.group_id)
            raise SynthesisFailure(
                f"Remote synthesis failed after {self.max_retries + 1} attempts: {exc.message}",
                details={"group_id": result.group_id, "status_code": exc.status_code},
            ) from exc
        except RemoteRequestError as exc:
            raise SynthesisFailure(
                f"Remote synthesis rejected: {exc.message}",
                details={"group_id": result.group_id, "status_code": exc.status_code},
            ) from exc
        except CircuitOpenError as exc:
            self._failed_groups.add(result.group_id)
            raise SynthesisFailure(
                f"Remote synthesis aborted: {exc.message}",
                details={"group_id": result.group_id, "breaker": self.breaker.name},
            ) from exc

    def health(self) -> dict:
        return {"mode": self.mode, **self.breaker.snapshot()}
