"""Evolve - chat assistant with web search and long-term memory

Simple CLI for running a single chat turn.
"""

import argparse
import asyncio

from evolve.agents.orchestrator import ChatOrchestrator, ChatTurn
from evolve.services import logger as _log_setup  # noqa: F401


async def run_chat(query: str, model: str | None = None, *, auto_search: bool = True, use_memory: bool = True):
    """Run one chat turn and print its progress."""
    print(f"Message: {query}")
    print("-" * 50)

    orchestrator = ChatOrchestrator(model=model)
    turn = ChatTurn(message=query, model=model, auto_search=auto_search, use_memory=use_memory)
    streaming_answer = False

    async for event in orchestrator.run(turn):
        event_type = event.event.value
        data = event.data

        if event_type == "thinking_start":
            print(f"\n[~] {data.get('message')}...")

        elif event_type == "thinking_update":
            for thought in data.get("thoughts", []):
                marker = "!" if thought["type"] == "error" else "-"
                print(f"  [{marker}] {thought['content'][:200]}")
            if data.get("queries"):
                for i, q in enumerate(data["queries"], 1):
                    print(f"  {i}. {q}")

        elif event_type == "search_start":
            print(f"\n[*] Search round {data.get('round')}: {data.get('query')}")

        elif event_type == "search_results":
            print(f"  [+] {data.get('newResults')} new results ({data.get('totalResults')} total)")

        elif event_type == "content_processing":
            print(f"\n[+] Extracted content from {data.get('extracted')}/{data.get('attempted')} pages")

        elif event_type == "response_generation":
            print(f"\n[+] Answering ({data.get('sourceCount')} sources)")
            print(f"{'='*50}")
            streaming_answer = True

        elif event_type == "response_chunk":
            print(data.get("chunk", ""), end="", flush=True)

        elif event_type == "response_complete":
            if streaming_answer:
                print(f"\n{'='*50}")

        elif event_type == "complete":
            print(f"\n[*] Done in {data.get('elapsedMs')}ms")
            print(f"   Used search: {data.get('usedSearch')}")
            print(f"   Memory added: {data.get('memoryItemsAdded')}")
            for source in data.get("sources", []):
                print(f"   [#{source['idx']}] {source['title']} - {source['url']}")

        elif event_type == "error":
            print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


def main():
    parser = argparse.ArgumentParser(description="Evolve chat assistant")
    parser.add_argument("--query", "-q", required=True, help="Message to send")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--no-search", action="store_true", help="Never search the web")
    parser.add_argument("--no-memory", action="store_true", help="Do not read or write long-term memory")

    args = parser.parse_args()

    asyncio.run(
        run_chat(args.query, args.model, auto_search=not args.no_search, use_memory=not args.no_memory)
    )


if __name__ == "__main__":
    main()
