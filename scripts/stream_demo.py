#!/usr/bin/env python3
"""
Streaming Copilot Demo

Seeds a Connection and a Chat into the in-memory repository, sends one
message and prints every stream event as it arrives. Proposed queries can be
confirmed interactively once the stream ends.

Example:
    python scripts/stream_demo.py --engine postgresql --host localhost \
        --database shop --user app --password secret \
        --message "How many orders were placed yesterday?" --auto-execute
"""

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dbcopilot.api.main import build_components
from dbcopilot.config import get_settings
from dbcopilot.models.chat import Chat, Message
from dbcopilot.models.database import Connection
from dbcopilot.models.stream import EventType


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Streaming copilot demo")
    parser.add_argument(
        "--engine", choices=["postgresql", "mysql", "clickhouse", "mongodb"], required=True
    )
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--database", required=True)
    parser.add_argument("--user", default=None)
    parser.add_argument("--password", default=None)
    parser.add_argument("--message", required=True, help="Question to ask the copilot")
    parser.add_argument("--auto-execute", action="store_true", help="Run read-only proposals")
    parser.add_argument("--share-rows", action="store_true", help="Share result rows with the AI")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    components = build_components(get_settings())
    repository = components["repository"]
    orchestrator = components["orchestrator"]
    hub = components["hub"]
    pool = components["pool"]

    connection = Connection(
        owner_id="demo",
        engine=args.engine,
        host=args.host,
        port=args.port,
        database=args.database,
        username=args.user,
        credentials_ref=components["vault"].seal(args.password) if args.password else None,
    )
    await repository.add_connection(connection)
    chat = Chat(
        owner_id="demo",
        connection_id=connection.connection_id,
        auto_execute=args.auto_execute,
        share_with_ai=args.share_rows,
    )
    await repository.add_chat(chat)

    await pool.start()
    try:
        await orchestrator.start(chat, Message(chat_id=chat.chat_id, role="user", content=args.message))
        proposals = []
        async for event in hub.subscribe(chat.chat_id):
            if event.type == EventType.TEXT_DELTA:
                print(event.data["text"], end="", flush=True)
                continue
            print(f"\n[{event.sequence}] {event.type.value}: {event.data}")
            if event.type == EventType.QUERY_PROPOSED:
                proposals.append(event.data["proposal"])

        for proposal in proposals:
            stored = await repository.find_proposal(chat.chat_id, proposal["proposal_id"])
            if stored.is_terminal:
                continue
            answer = input(f"\nRun {stored.classification.value} query?\n{stored.query}\n[y/N] ")
            if answer.strip().lower() == "y":
                settled = await orchestrator.execute_proposal(
                    chat.chat_id, stored.proposal_id, "demo"
                )
                print(f"{settled.status.value}: {settled.result or settled.error}")
    finally:
        await orchestrator.close()
        await pool.close()
        if components["provider"] is not None:
            await components["provider"].close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBye!")
