"""
Run one query through the grounded response pipeline from the command line.

- Optionally registers local text files as retrieval documents
- Prints the FinalResult as JSON
- Operator flags can be overridden per run

Usage:
  groundgate "How do I rotate the deploy keys?" --doc runbooks/keys.md --strict-refusal
  groundgate --describe
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from agentcore.llm.generation import GenerationBackend
from agentcore.orchestrators.query_orchestrator import QueryOrchestrator
from agentcore.schemas.agent_state import ProcessOptions
from agentcore.tools.embeddings import HashingEmbedder
from agentcore.tools.retrieval import InMemoryRetrievalAdapter
from libs.caching.redis_client import close_redis_client
from libs.common.logging import configure_logging
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="groundgate", description="Grounded response orchestration")
    parser.add_argument("query", nargs="?", help="User query to process")
    parser.add_argument("--user", default="cli-user")
    parser.add_argument("--conversation", default="cli-conversation")
    parser.add_argument("--mode", choices=["fastest", "cheapest", "balanced"], default="balanced")
    parser.add_argument("--budget", type=float, default=None, help="Cost budget for this request")
    parser.add_argument("--doc", action="append", default=[], help="Text file to index (repeatable)")
    parser.add_argument(
        "--grounded-on",
        action="append",
        default=[],
        help="Document id the answer must be grounded in (file name of a --doc)",
    )
    parser.add_argument("--deadline", type=float, default=None, help="Seconds before the run is stopped")
    parser.add_argument("--strict-refusal", action="store_true")
    parser.add_argument("--shadow", action="store_true")
    parser.add_argument("--describe", action="store_true", help="Print the routing table and exit")
    return parser


async def main(argv: Optional[List[str]] = None, backend: Optional[GenerationBackend] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.query and not args.describe:
        parser.error("a query is required unless --describe is given")

    settings = get_settings()
    configure_logging(settings)

    retrieval = InMemoryRetrievalAdapter(HashingEmbedder())
    for doc in args.doc:
        path = Path(doc)
        if not path.exists():
            raise SystemExit(f"Document not found: {path}")
        await retrieval.add_document(path.name, path.read_text(encoding="utf-8"))
        logger.info("Indexed document", document_id=path.name)

    orchestrator = await QueryOrchestrator.create(settings, backend=backend, retrieval=retrieval)
    try:
        if args.describe:
            print(orchestrator.describe_graph())
            return 0

        flags = {}
        if args.strict_refusal:
            flags["strict_refusal"] = True
        if args.shadow:
            flags["shadow_mode"] = True
        if flags:
            orchestrator.controls.set_flags(**flags)

        options = ProcessOptions(
            chat_mode=args.mode,
            cost_budget=args.budget,
            document_ids=args.grounded_on,
            deadline_seconds=args.deadline,
        )
        result = await orchestrator.process(args.conversation, args.user, args.query, options)
        print(result.model_dump_json(indent=2))
        return 0
    finally:
        await close_redis_client()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
