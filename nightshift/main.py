"""
Nightshift - Command Line Entry Point
=====================================

    nightshift run [--dry-run]
    nightshift enqueue research|prototype SUBJECT [-c CONSTRAINT ...]
    nightshift enqueue-text "research rate limiting tonight"
    nightshift tasks
    nightshift proposals list|approve ID|reject ID [--reason TEXT]
    nightshift accounts
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import structlog

from nightshift.core.config import Settings, settings
from nightshift.core.database import AsyncSessionLocal, close_db, init_db
from nightshift.core.executors.accounts import AccountRegistry
from nightshift.core.executors.router import ExecutorRouter
from nightshift.core.models import OvernightTaskType
from nightshift.core.night.context import FileContextProvider
from nightshift.core.night.lock import LockHeldError, SupervisorLock
from nightshift.core.night.proposals import InvalidTransitionError, ProposalService
from nightshift.core.night.supervisor import NightSupervisor
from nightshift.core.notifications import WebhookNotificationSink
from nightshift.core.overnight.intent import parse_overnight_intent
from nightshift.core.overnight.store import SqlTaskStore


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if config.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


# ==========================================================================
# Commands
# ==========================================================================

async def cmd_run(config: Settings, store: SqlTaskStore, dry_run: bool) -> int:
    notifier = WebhookNotificationSink(config=config)
    supervisor = NightSupervisor(
        config=config,
        router=ExecutorRouter.from_settings(config),
        context_provider=FileContextProvider(
            config.memory_path,
            config.output_path,
            daily_log_days=config.CONTEXT_DAILY_LOG_DAYS,
            max_pending_ideas=config.CONTEXT_MAX_PENDING_IDEAS,
        ),
        store=store,
        notifier=notifier,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, supervisor.shutdown)

    try:
        session = await supervisor.run(dry_run=dry_run)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await notifier.close()

    print(json.dumps(session.to_dict(), indent=2, default=str))
    return 1 if session.error else 0


async def cmd_enqueue(
    store: SqlTaskStore,
    task_type: OvernightTaskType,
    subject: str,
    constraints: list[str],
    project: Optional[str],
    priority: int,
) -> int:
    task = await store.create_task(
        task_type,
        subject,
        constraints,
        project_path=project,
        priority=priority,
    )
    print(f"Queued {task.task_type.value} task {task.id}: {task.subject}")
    return 0


async def cmd_enqueue_text(config: Settings, store: SqlTaskStore, message: str, project: Optional[str]) -> int:
    intent = parse_overnight_intent(message, threshold=config.INTENT_CLARIFICATION_THRESHOLD)
    if not intent.is_overnight:
        print("Not an overnight request; nothing queued.")
        return 1
    if intent.clarification is not None or intent.task_type is None:
        question = intent.clarification.question if intent.clarification else "What type of work?"
        print(f"{question} (confidence {intent.confidence:.2f})")
        for option in intent.clarification.options if intent.clarification else []:
            print(f"  [{option.value}] {option.label}: {option.description}")
        return 2

    task = await store.create_task(
        intent.task_type,
        intent.subject,
        intent.constraints,
        source_message=intent.raw_message,
        intent_confidence=intent.confidence,
        project_path=project,
    )
    print(f"Queued {task.task_type.value} task {task.id}: {task.subject} (confidence {intent.confidence:.2f})")
    return 0


async def cmd_tasks(store: SqlTaskStore, limit: int) -> int:
    tasks = await store.list_tasks(limit=limit)
    if not tasks:
        print("No tasks.")
    for task in tasks:
        print(f"{task.id}  {task.status.value:<12} {task.task_type.value:<15} {task.subject[:60]}")
    return 0


async def cmd_proposals(
    store: SqlTaskStore,
    action: str,
    proposal_id: Optional[str],
    reason: str,
    hours: int = 24,
) -> int:
    service = ProposalService(store)
    if action == "list":
        proposals = await service.list_open()
        if not proposals:
            print("No open proposals.")
        for proposal in proposals:
            print(
                f"{proposal.id}  {proposal.stage.value:<9} {proposal.risk.value:<6} "
                f"{proposal.approval_status.value:<9} {proposal.title[:60]}"
            )
        return 0

    try:
        if action == "approve":
            proposal = await service.approve(proposal_id)
        elif action == "snooze":
            proposal = await service.snooze(proposal_id, hours)
        else:
            proposal = await service.reject(proposal_id, reason)
    except (KeyError, InvalidTransitionError) as e:
        print(f"Error: {e}")
        return 1
    print(f"{proposal.id} -> {proposal.stage.value} ({proposal.approval_status.value})")
    return 0


def cmd_accounts(config: Settings) -> int:
    print(json.dumps(AccountRegistry.from_settings(config).status(), indent=2, default=str))
    return 0


# ==========================================================================
# Entry Point
# ==========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nightshift", description="Personal overnight agent orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one night session")
    run.add_argument("--dry-run", action="store_true", help="Plan only; run no tasks or jobs")

    enqueue = sub.add_parser("enqueue", help="Queue an overnight task")
    enqueue.add_argument("task_type", choices=["research", "prototype"])
    enqueue.add_argument("subject")
    enqueue.add_argument("-c", "--constraint", action="append", default=[], dest="constraints")
    enqueue.add_argument("--project", help="Source directory for prototype workspaces")
    enqueue.add_argument("--priority", type=int, default=0)

    text = sub.add_parser("enqueue-text", help="Queue a task from a natural-language request")
    text.add_argument("message")
    text.add_argument("--project")

    tasks = sub.add_parser("tasks", help="List recent overnight tasks")
    tasks.add_argument("--limit", type=int, default=20)

    proposals = sub.add_parser("proposals", help="Review proposals")
    proposals.add_argument("action", choices=["list", "approve", "reject", "snooze"])
    proposals.add_argument("proposal_id", nargs="?")
    proposals.add_argument("--reason", default="")
    proposals.add_argument("--hours", type=int, default=24, help="Snooze duration")

    sub.add_parser("accounts", help="Show executor account status")
    return parser


async def _dispatch(args: argparse.Namespace, config: Settings) -> int:
    await init_db()
    store = SqlTaskStore(AsyncSessionLocal)
    try:
        if args.command == "run":
            return await cmd_run(config, store, args.dry_run)
        if args.command == "enqueue":
            task_type = {
                "research": OvernightTaskType.RESEARCH_DIVE,
                "prototype": OvernightTaskType.PROTOTYPE_WORK,
            }[args.task_type]
            return await cmd_enqueue(store, task_type, args.subject, args.constraints, args.project, args.priority)
        if args.command == "enqueue-text":
            return await cmd_enqueue_text(config, store, args.message, args.project)
        if args.command == "tasks":
            return await cmd_tasks(store, args.limit)
        return await cmd_proposals(store, args.action, args.proposal_id, args.reason, args.hours)
    finally:
        await close_db()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings)

    if args.command == "accounts":
        return cmd_accounts(settings)
    if args.command == "proposals" and args.action != "list" and not args.proposal_id:
        print("Error: proposal_id is required")
        return 2

    if args.command != "run":
        return asyncio.run(_dispatch(args, settings))

    try:
        with SupervisorLock(settings.lock_path):
            return asyncio.run(_dispatch(args, settings))
    except LockHeldError as e:
        logger.error("Supervisor already running", path=str(e.path), holder=e.holder)
        return 3


if __name__ == "__main__":
    sys.exit(main())
