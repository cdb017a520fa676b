"""
Interactive CLI and maintenance commands for the tutor pipeline.

Architectural role:
- `chat`: terminal interaction over `TurnPipeline.process_turn`.
- `sweep`: one memory sweep at an explicit cutoff.
- `rollover`: one quota rollover at an explicit timestamp.
- `serve`: run the HTTP API with uvicorn; maintenance jobs run on the app
  lifespan scheduler.

Request lifecycle (per user turn, `chat`):
1. Read stdin.
2. Handle local control commands (`exit`/`quit`, `clear chat`, `/scope`,
   `/stats`).
3. Route normal text prompts to the pipeline with the active scope.
4. Print the answer, followed by tier/cost when `--verbose`.

Error handling strategy:
- EOF and keyboard interrupts terminate the loop without traceback output.
- Quota denials are printed as the denial message.
"""

from dotenv import load_dotenv

load_dotenv()

import argparse
import asyncio
import json
import logging
import sys
import time

from tutor_pipeline.core.engine import TurnPipeline, TurnRequest, build_pipeline
from tutor_pipeline.core.jobs import run_memory_sweep, run_quota_rollover


logger = logging.getLogger(__name__)


# =========================================================
# UTF-8 SAFE OUTPUT
# =========================================================

def _reconfigure_stdout() -> None:
    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8", errors="ignore")
        except (OSError, ValueError):
            pass


# =========================================================
# COMMANDS
# =========================================================

async def chat_loop(pipeline: TurnPipeline, user_id: str, scope: str, verbose: bool = False) -> None:
    conversation_id = f"cli-{int(time.time())}"

    print("AI Tutor started. (Type 'exit' to quit)")
    print(f"Active scope: {scope}")
    print("-" * 60)

    while True:
        try:
            question = (await asyncio.to_thread(input, "Question: ")).strip()
        except EOFError:
            print("\nSession ended (EOF received).")
            break
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.")
            break

        if not question:
            continue

        lowered = question.lower()
        if lowered in ("exit", "quit"):
            print("Shutting down.")
            break

        if lowered in ("empty chat", "clear chat"):
            await pipeline.context_builder.end_session(user_id, conversation_id)
            conversation_id = f"cli-{int(time.time())}"
            print("Chat cleared.")
            continue

        if lowered.startswith("/scope"):
            parts = question.split()
            if len(parts) == 1:
                print(f"\nCurrent scope: {scope}\nUsage: /scope <name>\n")
            else:
                scope = parts[1]
                print(f"\nSwitched to scope: {scope}\n")
            continue

        if lowered == "/stats":
            print(json.dumps(pipeline.stats(), indent=2, default=str))
            continue

        response = await pipeline.process_turn(
            TurnRequest(user_id=user_id, text=question, conversation_id=conversation_id, scope=scope)
        )
        print("\nResponse:\n")
        print(response.answer)
        if verbose:
            tier = response.tier.value if response.tier else "-"
            intent = response.intent.value if response.intent else "-"
            print(f"\n[intent={intent} tier={tier} cost={response.estimated_cost:.5f}]")
        print()


async def _run_chat(args) -> int:
    pipeline = build_pipeline(ledger_path=args.ledger, retrieval_dir=args.retrieval_dir)
    await pipeline.start()
    try:
        await chat_loop(pipeline, args.user, args.scope, verbose=args.verbose)
    finally:
        await pipeline.close()
    return 0


async def _run_sweep(args) -> int:
    pipeline = build_pipeline(ledger_path=args.ledger, retrieval_dir=args.retrieval_dir)
    cutoff = args.cutoff if args.cutoff is not None else time.time()
    report = await run_memory_sweep(pipeline.ledger, cutoff)
    print(
        f"sweep cutoff={cutoff:.0f} examined={report.examined} "
        f"rescored={report.rescored} archived={report.archived}"
    )
    return 0


async def _run_rollover(args) -> int:
    pipeline = build_pipeline(ledger_path=args.ledger, retrieval_dir=args.retrieval_dir)
    await pipeline.store.start()
    try:
        now = args.now if args.now is not None else time.time()
        rolled = await run_quota_rollover(pipeline.quota, now)
    finally:
        await pipeline.store.close()
    print(f"rollover now={now:.0f} rolled={rolled}")
    return 0


def _run_serve(args) -> int:
    import uvicorn

    from tutor_pipeline.api.http_api import create_app

    pipeline = build_pipeline(ledger_path=args.ledger, retrieval_dir=args.retrieval_dir)
    uvicorn.run(create_app(pipeline), host=args.host, port=args.port)
    return 0


# =========================================================
# MAIN
# =========================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tutor", description="AI tutor turn pipeline")
    parser.add_argument("--ledger", default=None, help="memory ledger JSON path")
    parser.add_argument("--retrieval-dir", default=None, help="retrieval index directory")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="interactive chat loop")
    chat.add_argument("--user", default="cli-user")
    chat.add_argument("--scope", default="global")
    chat.add_argument("--verbose", action="store_true")

    sweep = sub.add_parser("sweep", help="run the memory sweep once")
    sweep.add_argument("--cutoff", type=float, default=None, help="unix timestamp")

    rollover = sub.add_parser("rollover", help="run quota rollover once")
    rollover.add_argument("--now", type=float, default=None, help="unix timestamp")

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _reconfigure_stdout()

    if args.command == "serve":
        return _run_serve(args)
    runners = {"chat": _run_chat, "sweep": _run_sweep, "rollover": _run_rollover}
    return asyncio.run(runners[args.command](args))


if __name__ == "__main__":
    sys.exit(main())
