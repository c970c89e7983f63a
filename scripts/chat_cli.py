#!/usr/bin/env python3
"""
Terminal chat against a knowledge base file.

The knowledge base is a JSON array of items ({"id", "title", "content", "tags", ...})
or a JSONL file with one item per line. Embeddings computed during the session
are written back with --save.

Usage:
    python scripts/chat_cli.py kb.json "如何安装？"
    python scripts/chat_cli.py kb.json --retrieve-only "安装步骤"
    python scripts/chat_cli.py kb.json            # interactive
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from support_rag.config import ProviderConfig
from support_rag.logging_config import setup_logging
from support_rag.models import KnowledgeItem, ProjectConfig
from support_rag.orchestrator import ChatOrchestrator
from support_rag.providers.registry import close_providers


def load_knowledge_base(path: Path) -> List[KnowledgeItem]:
    """Load items from a JSON array or JSONL file."""
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".jsonl":
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    else:
        rows = json.loads(text)
    return [KnowledgeItem.model_validate(row) for row in rows]


def save_knowledge_base(path: Path, items: List[KnowledgeItem]) -> None:
    rows = [item.model_dump(by_alias=True, exclude_none=True, mode="json") for item in items]
    if path.suffix == ".jsonl":
        text = "".join(json.dumps(row, ensure_ascii=False) + "\n" for row in rows)
    else:
        text = json.dumps(rows, ensure_ascii=False, indent=2)
    path.write_text(text, encoding="utf-8")


def print_chunk(text: str, is_done: bool, finish_reason: Optional[str]) -> None:
    sys.stdout.write(text)
    if is_done:
        sys.stdout.write("\n")
    sys.stdout.flush()


async def ask(orchestrator: ChatOrchestrator, question: str, kb: List[KnowledgeItem],
              config: ProviderConfig, project: ProjectConfig, retrieve_only: bool) -> None:
    if retrieve_only:
        result = await orchestrator.retriever.retrieve_scored(
            question, kb, config, threshold=project.search_threshold, top_k=project.max_context_items
        )
        print(f"strategy: {result.strategy}")
        for i, scored in enumerate(result.scored, 1):
            print(f"  {i}. [{scored.score:.3f}] {scored.item.title}")
        if not result.scored:
            print("  (no matches)")
        return

    result = await orchestrator.respond(question, kb, config, on_chunk=print_chunk, project=project)
    if result.sources:
        print(f"\nsources: {', '.join(result.sources)}")
    print(f"[{result.path.value}{' / ' + result.error_kind if result.error_kind else ''}]")


async def run(args: argparse.Namespace) -> int:
    kb_path = Path(args.knowledge_base)
    if not kb_path.exists():
        print(f"Knowledge base not found: {kb_path}", file=sys.stderr)
        return 1

    kb = load_knowledge_base(kb_path)
    config = ProviderConfig.from_env(session_key=args.api_key)
    project = ProjectConfig(search_threshold=args.threshold, max_context_items=args.top_k)
    orchestrator = ChatOrchestrator()

    print(f"Loaded {len(kb)} knowledge items; credential={'yes' if config.has_credential else 'no'}")
    try:
        if args.question:
            await ask(orchestrator, args.question, kb, config, project, args.retrieve_only)
        else:
            while True:
                try:
                    question = input("\n> ").strip()
                except (EOFError, KeyboardInterrupt):
                    print()
                    break
                if question in {"exit", "quit"}:
                    break
                if question:
                    await ask(orchestrator, question, kb, config, project, args.retrieve_only)
    finally:
        await close_providers()

    if args.save:
        save_knowledge_base(kb_path, kb)
        print(f"Saved {len(kb)} items to {kb_path}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Chat with a product knowledge base")
    parser.add_argument("knowledge_base", help="Path to a .json or .jsonl knowledge base")
    parser.add_argument("question", nargs="?", help="Ask one question and exit")
    parser.add_argument("--api-key", default=None, help="Overrides ZHIPU_API_KEY for this run")
    parser.add_argument("--retrieve-only", action="store_true", help="Print ranked items instead of answering")
    parser.add_argument("--threshold", type=float, default=ProjectConfig().search_threshold)
    parser.add_argument("--top-k", type=int, default=ProjectConfig().max_context_items)
    parser.add_argument("--save", action="store_true", help="Write computed embeddings back to the file")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    setup_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
