"""Entrypoint: generate flashcards or inspect stored usage."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from flashcard_ai.config import load_settings
from flashcard_ai.generation import GenerationService, GenerationServiceError, http_status_for
from flashcard_ai.llm.client import ChatCompletionClient
from flashcard_ai.llm.types import ServiceError
from flashcard_ai.models import apply_migrations, get_connection, get_usage_summary
from flashcard_ai.validators import RequestValidationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AI flashcard generator backed by OpenRouter")
    parser.add_argument("--settings", default="config/settings.yaml", help="Path to settings.yaml")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Apply SQLite migrations only")

    generate = subparsers.add_parser("generate", help="Generate flashcard proposals from a text file")
    generate.add_argument("--file", required=True, help="Path to the study material")
    generate.add_argument("--user", required=True, help="Owning user id")

    ping = subparsers.add_parser("ping", help="Send a short completion to verify credentials")
    ping.add_argument("--message", default="Say 'test successful' in 3 words")

    usage = subparsers.add_parser("usage", help="Show recorded token usage")
    usage.add_argument("--user", default=None, help="Limit to one user id")
    return parser


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "info").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args()
    command = args.command or "init-db"

    config = load_settings(args.settings)
    db_path = config["database"]["path"]
    apply_migrations(db_path)

    if command == "init-db":
        print(f"Database initialized at {db_path}")
        return 0

    if command == "usage":
        with get_connection(db_path) as conn:
            summary = get_usage_summary(conn, args.user)
        print(
            f"calls={summary['calls']} prompt_tokens={summary['prompt_tokens']} "
            f"completion_tokens={summary['completion_tokens']} total_tokens={summary['total_tokens']}"
        )
        return 0

    client = ChatCompletionClient.from_settings(config)

    if command == "ping":
        try:
            result = client.send_chat_message(args.message)
        except ServiceError as exc:
            print(f"ping failed [{exc.kind.value}] status={exc.status}: {exc}")
            return 1
        print(f"model={result.model} finish_reason={result.finish_reason}")
        print(result.content)
        return 0

    try:
        source_text = Path(args.file).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"cannot read {args.file}: {exc}")
        return 1
    with get_connection(db_path) as conn:
        service = GenerationService(conn, client, config)
        try:
            result = service.create_generation(source_text, user_id=args.user)
        except (RequestValidationError, GenerationServiceError) as exc:
            print(f"generation failed (HTTP {http_status_for(exc)}): {exc}")
            for issue in getattr(exc, "issues", []):
                print(f"- {issue}")
            return 1

    print(f"generation_id={result['generation_id']} generated_count={result['generated_count']}")
    for index, proposal in enumerate(result["flashcards_proposals"], start=1):
        print(f"\n[{index}] {proposal['front']}\n    {proposal['back']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
