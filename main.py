"""Research Engine - multi-round evidence research

Simple CLI for running research sessions.
"""

import argparse
import asyncio

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.agents.strategist import LLMStrategist
from research_engine.models.events import ProgressEvent
from research_engine.models.research import SessionConfig
from research_engine.services.progress import ProgressChannel, Subscription
from research_engine.services.selector import format_session_for_synthesis


def print_event(event: ProgressEvent) -> None:
    event_type = event.event.value
    data = event.data

    if event_type == "planning_complete":
        plan = data.get("plan", {})
        print(f"\n[*] Research Plan ({data.get('max_rounds')} rounds): {plan.get('strategy', '')}")
        for area in plan.get("focus_areas", []):
            print(f"  - {area}")

    elif event_type == "round_started":
        print(f"\n[~] Round {data.get('round')}: {data.get('query', '')[:80]}")

    elif event_type == "api_completed":
        status = "+" if data.get("success") else "!"
        print(f"  [{status}] {data.get('api')}: {data.get('count')} sources ({data.get('duration_ms')}ms)")

    elif event_type == "round_complete":
        print(
            f"  [+] Round {data.get('round')} complete: {data.get('source_count')} new sources, "
            f"{data.get('duplicates_filtered')} duplicates"
        )

    elif event_type == "reflection_complete":
        reflection = data.get("reflection", {})
        print(
            f"  [?] Evidence quality: {reflection.get('evidence_quality')}, "
            f"gaps: {len(reflection.get('gaps', []))}"
        )

    elif event_type == "decision_made":
        verdict = "stop" if data.get("should_stop") else "continue"
        print(f"  [>] Decision: {verdict} {data.get('reasons') or ''} {data.get('overrides') or ''}")

    elif event_type == "selection_complete":
        print(
            f"\n[+] Selected {data.get('selected_count')} sources "
            f"({data.get('total_tokens')} tokens, {data.get('selection_strategy')})"
        )


async def print_progress(subscription: Subscription) -> None:
    async for event in subscription:
        print_event(event)


async def run_research(query: str, model: str | None = None, max_rounds: int | None = None):
    """Run a research session on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    config = SessionConfig()
    if max_rounds is not None:
        config = SessionConfig(max_rounds_ceiling=max_rounds)

    channel = ProgressChannel()
    subscription = channel.subscribe()
    orchestrator = ResearchOrchestrator(
        strategist=LLMStrategist(model=model),
        progress=channel,
        config=config,
    )

    printer = asyncio.create_task(print_progress(subscription))
    try:
        result = await orchestrator.run_research_session(query)
    finally:
        channel.close()
        await printer

    print(f"\n\n[*] Research Complete!")
    print(f"   Runtime: {result.total_duration_ms}ms")
    print(f"   Rounds: {len(result.rounds)}")
    print(f"   Sources: {result.total_unique_sources}")
    print(f"   Completeness: {result.completeness_score:.2f}")
    print(f"\n{'='*50}")
    print("SYNTHESIS CONTEXT:")
    print(f"{'='*50}")
    print(format_session_for_synthesis(result))


def main():
    parser = argparse.ArgumentParser(description="Multi-round evidence research engine")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument("--model", "-m", help="Strategist model to use (default: from config)")
    parser.add_argument("--max-rounds", type=int, help="Hard ceiling on research rounds (1-4)")

    args = parser.parse_args()

    asyncio.run(run_research(args.query, args.model, args.max_rounds))


if __name__ == "__main__":
    main()
