"""Interactive CLI for the workflow deployment agent.

Drives a conversation session directly in the terminal, no HTTP server
required. The runtime uses STORE_URL (memory:// by default), so sessions
and slot assignments only outlive the process with a sqlite or postgres store.

Usage:
    workflow-agent-cli chat --tenant acme
    workflow-agent-cli chat --tenant acme --topic nightly-report \
        "Every day at 9am fetch https://api.example.com/report and post it to #reports on Slack"
    workflow-agent-cli claim acme
    workflow-agent-cli release acme
    workflow-agent-cli stats
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser

from dotenv import load_dotenv

from workflow_deploy_agent.errors import SlotExhaustionError


# ---------------------------------------------------------------------------
# Core interactive session runner
# ---------------------------------------------------------------------------


async def _run_chat(tenant_id: str, topic: str, first_message: str | None = None) -> None:
    """Run one session to a terminal phase, prompting the requester each turn."""
    from workflow_deploy_agent.agent.graph import create_runtime

    runtime = await create_runtime()
    orchestrator = runtime.orchestrator
    session = await orchestrator.start_session(tenant_id, topic)

    print(f"\nSession : {session.id}")
    print(f"Tenant  : {tenant_id}   Topic: {topic}   Phase: {session.phase.value}")
    print("Type 'reset' to start over or 'cancel' to abandon.")
    print("-" * 60)

    try:
        message = first_message or _prompt("\nWhat would you like to automate? ")
        while True:
            if not message:
                message = _prompt("> ")
                continue
            result = await orchestrator.handle_message(session.id, message)
            print(f"\n[{result.phase.value}] {result.reply}")

            if result.terminal_result is not None:
                print(f"\n{'=' * 60}")
                print("RESULT")
                print("=" * 60)
                print(json.dumps(result.terminal_result, indent=2))
                break
            message = _prompt("\n> ")

    except KeyboardInterrupt:
        print("\n\nInterrupted. Session ID for later reference:")
        print(f"  {session.id}")
    finally:
        await runtime.close()


async def _run_claim(tenant_id: str) -> None:
    from workflow_deploy_agent.agent.graph import create_runtime

    runtime = await create_runtime()
    try:
        slot = await runtime.allocator.claim_slot(tenant_id)
        print(json.dumps(slot.to_dict(), indent=2))
    except SlotExhaustionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        await runtime.close()


async def _run_release(tenant_id: str) -> None:
    from workflow_deploy_agent.agent.graph import create_runtime

    runtime = await create_runtime()
    try:
        slot = await runtime.allocator.release_slot(tenant_id)
        if slot is None:
            print(f"Tenant {tenant_id!r} has no slot.", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(slot.to_dict(), indent=2))
    finally:
        await runtime.close()


async def _run_stats() -> None:
    from workflow_deploy_agent.agent.graph import create_runtime

    runtime = await create_runtime()
    try:
        print(json.dumps(await runtime.allocator.stats(), indent=2))
    finally:
        await runtime.close()


def _prompt(label: str) -> str:
    """Read a line from stdin, stripping whitespace. Exits on EOF."""
    try:
        return input(label).strip()
    except EOFError:
        print("\n(EOF received, exiting)")
        sys.exit(0)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = ArgumentParser(
        prog="workflow-agent-cli",
        description="Workflow deployment agent: interactive terminal client",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    chat_p = sub.add_parser("chat", help="Describe a workflow and deploy it interactively")
    chat_p.add_argument("--tenant", required=True, help="Tenant id the workflow is deployed for")
    chat_p.add_argument("--topic", default="default", help="Conversation topic (default: default)")
    chat_p.add_argument("message", nargs="?", help="Optional first message")

    claim_p = sub.add_parser("claim", help="Claim (or show) a tenant's isolation slot")
    claim_p.add_argument("tenant", help="Tenant id")

    release_p = sub.add_parser("release", help="Return a deactivated tenant's slot to the pool")
    release_p.add_argument("tenant", help="Tenant id")

    sub.add_parser("stats", help="Show slot pool utilisation")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")
    load_dotenv()

    if args.command == "chat":
        asyncio.run(_run_chat(args.tenant, args.topic, args.message))
    elif args.command == "claim":
        asyncio.run(_run_claim(args.tenant))
    elif args.command == "release":
        asyncio.run(_run_release(args.tenant))
    elif args.command == "stats":
        asyncio.run(_run_stats())
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
