"""ResearchFlow - multi-agent deep research

Simple CLI for running one research thread in-process.
"""

import argparse
import asyncio
import json

from app.config import settings
from app.models.state import InterruptPayload, InterruptResponse, Strategy, ThreadMode
from app.services.checkpointer import build_checkpointer
from app.services.engine import ResearchEngine


def ask(interrupt: InterruptPayload) -> InterruptResponse:
    """Prompt for an interrupt answer on stdin."""
    meta = interrupt.metadata
    if meta.get("totalQuestions"):
        print(f"\n[?] Question {meta.get('currentQuestion')}/{meta.get('totalQuestions')}: {interrupt.question_text}")
    else:
        print(f"\n[?] {interrupt.question_text}")
    for i, option in enumerate(interrupt.options, 1):
        suffix = f" - {option.description}" if option.description else ""
        print(f"  {i}. {option.label}{suffix}")
    raw = input("Choose a number or type your own answer: ").strip()
    if raw.isdigit() and 1 <= int(raw) <= len(interrupt.options):
        return InterruptResponse(question_id=interrupt.question_id, selected_option=interrupt.options[int(raw) - 1].value)
    return InterruptResponse(question_id=interrupt.question_id, custom_answer=raw)


def print_event(event_type: str, data: dict) -> None:
    if event_type == "node":
        print(f"\n[~] {data.get('node')} done")
    elif event_type == "queries":
        round_label = f" (round {data['round']})" if "round" in data else ""
        print(f"  [q]{round_label} " + "; ".join(data.get("queries", [])))
    elif event_type == "evidence":
        print(f"  [+] {len(data.get('sources', []))} sources, {data.get('notes', 0)} notes")
    elif event_type == "custom":
        print(f"  [{data.get('type')}] {data.get('content', '')[:120]}")
    elif event_type == "issues":
        for issue in data.get("issues", []):
            print(f"  [!] {issue}")
    elif event_type == "llm_token":
        print(data.get("token", ""), end="", flush=True)
    elif event_type == "draft":
        print(f"\n{'=' * 50}")
        print("REPORT:" if data.get("kind") == "report" else f"{str(data.get('kind', '')).upper()}:")
        print(f"{'=' * 50}")
        print(data.get("text", ""))
    elif event_type == "error":
        print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


async def run_research(query: str, mode: str, strategy: str | None) -> None:
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    engine = ResearchEngine(build_checkpointer(settings))
    try:
        checkpoint = await engine.start(
            query,
            mode=ThreadMode(mode),
            strategy=Strategy(strategy) if strategy else None,
        )
        thread_id = checkpoint.thread.thread_id
        while checkpoint.state.interrupt is not None:
            checkpoint = await engine.resume(thread_id, ask(checkpoint.state.interrupt))

        async for payload in await engine.open_stream(thread_id):
            if payload["event"] == "keepalive":
                continue
            print_event(payload["event"], json.loads(payload["data"]))
    finally:
        await engine.close()


def main():
    parser = argparse.ArgumentParser(description="ResearchFlow deep research")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument("--mode", choices=["auto", "plan"], default="auto", help="plan asks scoping questions first")
    parser.add_argument("--strategy", "-s", choices=["supervisor", "iterative"], help="Research strategy")

    args = parser.parse_args()

    asyncio.run(run_research(args.query, args.mode, args.strategy))


if __name__ == "__main__":
    main()
