from __future__ import annotations

from typing import Any

from research_engine.models.events import EventType, ProgressEvent
from research_engine.models.research import ResearchPlan, Reflection, RoundResult, SelectionResult


def planning_started(query: str) -> ProgressEvent:
    return ProgressEvent(event=EventType.PLANNING_STARTED, data={"query": query})


def planning_complete(plan: ResearchPlan, max_rounds: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.PLANNING_COMPLETE,
        data={"plan": plan.model_dump(), "max_rounds": max_rounds},
    )


def round_started(round_number: int, query: str, estimated_sources: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.ROUND_STARTED,
        data={"round": round_number, "query": query, "estimated_sources": estimated_sources},
    )


def round_complete(round_result: RoundResult) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.ROUND_COMPLETE,
        data={
            "round": round_result.round_number,
            "source_count": round_result.unique_source_count,
            "duplicates_filtered": round_result.duplicates_filtered,
            "duration_ms": round_result.duration_ms,
            "by_provenance": round_result.counts_by_provenance(),
            "provider_errors": dict(round_result.provider_errors),
        },
    )


def api_started(api: str, count: int) -> ProgressEvent:
    return ProgressEvent(event=EventType.API_STARTED, data={"api": api, "count": count})


def api_completed(api: str, count: int, duration_ms: int, success: bool, **kwargs: Any) -> ProgressEvent:
    data: dict[str, Any] = {
        "api": api,
        "count": count,
        "duration_ms": duration_ms,
        "success": success,
    }
    data.update(kwargs)
    return ProgressEvent(event=EventType.API_COMPLETED, data=data)


def source_found(title: str, source_type: str) -> ProgressEvent:
    return ProgressEvent(event=EventType.SOURCE_FOUND, data={"title": title, "source_type": source_type})


def reflection_started(round_number: int) -> ProgressEvent:
    return ProgressEvent(event=EventType.REFLECTION_STARTED, data={"round": round_number})


def reflection_complete(round_number: int, reflection: Reflection) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.REFLECTION_COMPLETE,
        data={"round": round_number, "reflection": reflection.model_dump(mode="json")},
    )


def decision_made(round_number: int, should_stop: bool, reasons: list[str], overrides: list[str]) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.DECISION_MADE,
        data={
            "round": round_number,
            "should_stop": should_stop,
            "reasons": list(reasons),
            "overrides": list(overrides),
        },
    )


def source_selection_started(total_sources: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.SOURCE_SELECTION_STARTED,
        data={"total_sources": total_sources},
    )


def selection_complete(selection: SelectionResult) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.SELECTION_COMPLETE,
        data={
            "selected_count": selection.selected_count,
            "deduplicated_count": selection.deduplicated_count,
            "total_tokens": selection.total_token_estimate,
            "selection_strategy": selection.selection_strategy,
        },
    )


def session_complete(summary: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(event=EventType.SESSION_COMPLETE, data=summary)
