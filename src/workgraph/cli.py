from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import load_engine_config
from .constants import STATE_DIR_NAME, VERIFY_KIND_CHECK, VERIFY_KIND_COMMAND, VERIFY_KIND_MANUAL
from .errors import RecoveryDiscontinuity, ValidationError, WorkgraphError
from .io_utils import _load_data_with_error
from .logging_utils import configure_logging
from .orchestrator import Orchestrator
from .parallel import WorkerPool, describe_plan
from .server import create_app
from .task_engine.model import Task, TaskPriority, TaskStatus
from .verification import Evidence, run_command_check

_STATUS_STYLE = {
    "todo": "white",
    "doing": "yellow",
    "done": "green",
    "blocked": "red",
    "skipped": "dim",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> Orchestrator:
    return Orchestrator(_resolve_project_dir(args.project_dir))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def _verify_from_args(args: argparse.Namespace) -> Optional[dict[str, Any]]:
    if getattr(args, "verify_command", None):
        return {"kind": VERIFY_KIND_COMMAND, "command": args.verify_command, "expect_exit_code": args.expect_exit_code}
    if getattr(args, "verify_check", None):
        return {"kind": VERIFY_KIND_CHECK, "command": args.verify_check}
    if getattr(args, "verify_manual", None):
        return {"kind": VERIFY_KIND_MANUAL, "criterion": args.verify_manual}
    return None


# ---------------------------------------------------------------------------
# Task commands
# ---------------------------------------------------------------------------

def _task_add(args: argparse.Namespace) -> int:
    task = _ctx(args).submit_task(
        args.title,
        task_id=args.id,
        deliverable=args.deliverable or "",
        verify=_verify_from_args(args),
        depends_on=args.depends_on or [],
        priority=args.priority,
        effort=args.effort,
        parent_id=args.parent,
    )
    return _emit({"task": task.to_dict()})


def _task_list(args: argparse.Namespace) -> int:
    tasks = _ctx(args).list_tasks(status=args.status, priority=args.priority, search=args.search)
    return _emit({"tasks": [t.to_dict() for t in tasks], "total": len(tasks)})


def _task_show(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).get_task(args.task_id).to_dict()})


def _task_update(args: argparse.Namespace) -> int:
    changes: dict[str, Any] = {}
    for name in ("title", "priority", "effort", "deliverable"):
        value = getattr(args, name)
        if value is not None:
            changes[name] = value
    if args.depends_on is not None:
        changes["depends_on"] = args.depends_on
    verify = _verify_from_args(args)
    if verify is not None:
        changes["verify"] = verify
    if not changes:
        raise ValidationError("no fields to update", subject_id=args.task_id)
    return _emit({"task": _ctx(args).update_task(args.task_id, changes).to_dict()})


def _task_decompose(args: argparse.Namespace) -> int:
    data, err = _load_data_with_error(Path(args.file), {})
    if err:
        raise ValidationError(f"cannot read sub-task file: {err}", subject_id=args.task_id)
    subtasks = data.get("subtasks")
    if not isinstance(subtasks, list):
        raise ValidationError("sub-task file must hold a list under 'subtasks'", subject_id=args.task_id)
    created = _ctx(args).decompose(args.task_id, subtasks, link_parent=not args.no_link)
    return _emit({"tasks": [t.to_dict() for t in created], "total": len(created)})


def _task_start(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).start(args.task_id, worker=args.worker).to_dict()})


def _task_verify(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    if args.run:
        outcome = orchestrator.run_verification(args.task_id, worker=args.worker)
    else:
        task = orchestrator.get_task(args.task_id)
        kind = task.verify.kind if task.verify else VERIFY_KIND_MANUAL
        evidence: dict[str, Any] = {"kind": kind, "comment": args.comment or ""}
        if args.exit_code is not None:
            evidence["exit_code"] = args.exit_code
        for name in ("passed", "failed", "total"):
            if getattr(args, name) is not None:
                evidence[name] = getattr(args, name)
        if args.report_file:
            evidence["report"] = Path(args.report_file).read_text(encoding="utf-8", errors="replace")
        if args.attest or args.reject:
            evidence["attested"] = bool(args.attest)
            evidence["attested_by"] = args.by
        outcome = orchestrator.submit_verification(args.task_id, evidence, worker=args.worker)
    _emit(outcome.to_dict())
    return 0 if outcome.verdict.passed else 1


def _task_block(args: argparse.Namespace) -> int:
    task = _ctx(args).block(args.task_id, args.reason, irreversible=args.irreversible)
    return _emit({"task": task.to_dict()})


def _task_unblock(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).unblock(args.task_id, note=args.note).to_dict()})


def _task_skip(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).skip(args.task_id, args.reason).to_dict()})


def _task_note(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).add_note(args.task_id, args.text).to_dict()})


# ---------------------------------------------------------------------------
# Scheduling, checkpoints, recovery
# ---------------------------------------------------------------------------

def _next(args: argparse.Namespace) -> int:
    task = _ctx(args).next_ready()
    return _emit({"task": task.to_dict() if task else None})


def _plan(args: argparse.Namespace) -> int:
    sys.stdout.write(describe_plan(_ctx(args)))
    return 0


def _run(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)

    def _runnable(task: Task) -> bool:
        return task.verify is not None and task.verify.kind != VERIFY_KIND_MANUAL

    def _work(task: Task) -> Evidence:
        return run_command_check(
            task,
            orchestrator.project_dir,
            orchestrator.verify_log_path(task.id),
            timeout_seconds=orchestrator.config.verify_timeout_seconds,
        )

    pool = WorkerPool(orchestrator, max_workers=args.workers, select=_runnable)
    results = pool.run(_work)
    pool.print_progress()
    _emit({
        "results": [asdict(r) for r in results],
        "completed": sum(1 for r in results if r.success),
        "total": len(results),
    })
    return 0 if all(r.success for r in results) else 1


def _board(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    tasks = orchestrator.list_tasks()
    nxt = orchestrator.next_ready()
    table = Table(title="Task Board", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Pri")
    table.add_column("Status", style="bold")
    table.add_column("Title")
    table.add_column("Depends on", style="dim")
    table.add_column("Escalation", style="magenta")
    for task in sorted(tasks, key=lambda t: (t.priority.sort_key, t.created_at, t.id)):
        style = _STATUS_STYLE.get(task.status.value, "white")
        marker = " *" if nxt and task.id == nxt.id else ""
        table.add_row(
            task.id + marker,
            task.priority.value,
            f"[{style}]{task.status.value}[/{style}]",
            escape(task.title[:60]),
            ", ".join(task.depends_on),
            escape((task.escalation or "")[:40]),
        )
    Console().print(table)
    return 0


def _checkpoint_latest(args: argparse.Namespace) -> int:
    checkpoint = _ctx(args).latest_checkpoint()
    return _emit({"checkpoint": checkpoint.to_dict() if checkpoint else None})


def _checkpoint_history(args: argparse.Namespace) -> int:
    history = _ctx(args).checkpoints()
    return _emit({"checkpoints": [c.to_dict() for c in history], "total": len(history)})


def _resume(args: argparse.Namespace) -> int:
    try:
        snapshot = _ctx(args).resume(args.expected, strict=args.strict)
    except RecoveryDiscontinuity as exc:
        sys.stderr.write(json.dumps(exc.to_dict()) + "\n")
        return 2
    payload = snapshot.to_dict()
    if not args.full:
        payload.pop("tasks")
        payload.pop("decisions")
    _emit(payload)
    return 2 if snapshot.discontinuity is not None else 0


def _status(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).status())


def _archive(args: argparse.Namespace) -> int:
    return _emit({"path": str(_ctx(args).archive())})


# ---------------------------------------------------------------------------
# Decisions, auditors, escalations
# ---------------------------------------------------------------------------

def _decision_propose(args: argparse.Namespace) -> int:
    decision = _ctx(args).propose_decision(args.description, args.reasoning or "", decision_id=args.id)
    return _emit({"decision": decision.to_dict()})


def _decision_list(args: argparse.Namespace) -> int:
    decisions = _ctx(args).list_decisions(args.status)
    return _emit({"decisions": [d.to_dict() for d in decisions], "total": len(decisions)})


def _decision_edit(args: argparse.Namespace) -> int:
    decision = _ctx(args).edit_decision(args.decision_id, description=args.description, reasoning=args.reasoning)
    return _emit({"decision": decision.to_dict()})


def _decision_accept(args: argparse.Namespace) -> int:
    return _emit({"decision": _ctx(args).accept_decision(args.decision_id, args.reasoning).to_dict()})


def _decision_reject(args: argparse.Namespace) -> int:
    return _emit({"decision": _ctx(args).reject_decision(args.decision_id, args.reasoning).to_dict()})


def _auditor_list(args: argparse.Namespace) -> int:
    return _emit({"auditors": _ctx(args).registry.list()})


def _auditor_run(args: argparse.Namespace) -> int:
    scope = {"paths": args.paths, "max_files": args.max_files}
    outcome = _ctx(args).invoke_auditor(args.name, scope, attach_to=args.attach_to, spawn_tasks=args.spawn_tasks)
    return _emit(outcome.to_dict())


def _escalation_list(args: argparse.Namespace) -> int:
    tasks = _ctx(args).escalations()
    return _emit({"tasks": [t.to_dict() for t in tasks], "total": len(tasks)})


def _escalation_resolve(args: argparse.Namespace) -> int:
    return _emit({"task": _ctx(args).resolve_escalation(args.task_id, args.resolution).to_dict()})


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'workgraph[server]'\n")
        return 1

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_verify_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--verify-command", default=None, help="Shell command whose exit status proves completion")
    group.add_argument("--verify-check", default=None, help="Test command whose report must show no failures")
    group.add_argument("--verify-manual", default=None, help="Criterion a human must attest to")
    parser.add_argument("--expect-exit-code", default=0, type=int)


def build_parser() -> argparse.ArgumentParser:
    priorities = [p.value for p in TaskPriority]
    parser = argparse.ArgumentParser(prog="workgraph", description="Dependency-aware task orchestration")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the HTTP control server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.add_argument("--reload", action="store_true")
    server.set_defaults(func=_server)

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)

    tadd = task_sub.add_parser("add", help="Submit a task")
    tadd.add_argument("title")
    tadd.add_argument("--id", default=None)
    tadd.add_argument("--deliverable", default="")
    tadd.add_argument("--depends-on", action="append", default=None, metavar="TASK_ID")
    tadd.add_argument("--priority", default="P2", choices=priorities)
    tadd.add_argument("--effort", default=None, choices=["XS", "S", "M", "L", "XL"])
    tadd.add_argument("--parent", default=None)
    _add_verify_args(tadd)
    tadd.set_defaults(func=_task_add)

    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--status", default=None, choices=[s.value for s in TaskStatus])
    tlist.add_argument("--priority", default=None, choices=priorities)
    tlist.add_argument("--search", default=None)
    tlist.set_defaults(func=_task_list)

    tshow = task_sub.add_parser("show", help="Show one task")
    tshow.add_argument("task_id")
    tshow.set_defaults(func=_task_show)

    tupdate = task_sub.add_parser("update", help="Edit a task's editable fields")
    tupdate.add_argument("task_id")
    tupdate.add_argument("--title", default=None)
    tupdate.add_argument("--priority", default=None, choices=priorities)
    tupdate.add_argument("--effort", default=None, choices=["XS", "S", "M", "L", "XL"])
    tupdate.add_argument("--deliverable", default=None)
    tupdate.add_argument("--depends-on", action="append", default=None, metavar="TASK_ID")
    _add_verify_args(tupdate)
    tupdate.set_defaults(func=_task_update)

    tdecompose = task_sub.add_parser("decompose", help="Add sub-tasks from a YAML or JSON file")
    tdecompose.add_argument("task_id")
    tdecompose.add_argument("--file", required=True)
    tdecompose.add_argument("--no-link", action="store_true", help="Do not make the parent depend on its sub-tasks")
    tdecompose.set_defaults(func=_task_decompose)

    tstart = task_sub.add_parser("start", help="Move a ready task to doing")
    tstart.add_argument("task_id")
    tstart.add_argument("--worker", default="cli")
    tstart.set_defaults(func=_task_start)

    tverify = task_sub.add_parser("verify", help="Submit verification evidence")
    tverify.add_argument("task_id")
    tverify.add_argument("--worker", default=None)
    tverify.add_argument("--run", action="store_true", help="Run the task's verify command and submit its result")
    tverify.add_argument("--exit-code", default=None, type=int)
    tverify.add_argument("--passed", default=None, type=int)
    tverify.add_argument("--failed", default=None, type=int)
    tverify.add_argument("--total", default=None, type=int)
    tverify.add_argument("--report-file", default=None)
    attest = tverify.add_mutually_exclusive_group()
    attest.add_argument("--attest", action="store_true")
    attest.add_argument("--reject", action="store_true")
    tverify.add_argument("--by", default=None)
    tverify.add_argument("--comment", default=None)
    tverify.set_defaults(func=_task_verify)

    tblock = task_sub.add_parser("block", help="Block a task in progress")
    tblock.add_argument("task_id")
    tblock.add_argument("reason")
    tblock.add_argument("--irreversible", action="store_true", help="Escalate: the blocked action cannot be undone")
    tblock.set_defaults(func=_task_block)

    tunblock = task_sub.add_parser("unblock", help="Return a blocked task to todo")
    tunblock.add_argument("task_id")
    tunblock.add_argument("--note", default=None)
    tunblock.set_defaults(func=_task_unblock)

    tskip = task_sub.add_parser("skip", help="Skip a task")
    tskip.add_argument("task_id")
    tskip.add_argument("reason")
    tskip.set_defaults(func=_task_skip)

    tnote = task_sub.add_parser("note", help="Append a note")
    tnote.add_argument("task_id")
    tnote.add_argument("text")
    tnote.set_defaults(func=_task_note)

    nxt = subparsers.add_parser("next", help="Show the next ready task")
    nxt.set_defaults(func=_next)
    plan = subparsers.add_parser("plan", help="Show remaining execution batches")
    plan.set_defaults(func=_plan)
    run = subparsers.add_parser("run", help="Run verify commands of ready tasks on a worker pool")
    run.add_argument("--workers", default=None, type=int, help="Concurrent leases (default: engine.max_workers)")
    run.set_defaults(func=_run)
    board = subparsers.add_parser("board", help="Show all tasks as a table")
    board.set_defaults(func=_board)
    status = subparsers.add_parser("status", help="Summarize the graph")
    status.set_defaults(func=_status)
    archive = subparsers.add_parser("archive", help="Copy state files into a timestamped archive")
    archive.set_defaults(func=_archive)

    checkpoint = subparsers.add_parser("checkpoint", help="Read the checkpoint ledger")
    cp_sub = checkpoint.add_subparsers(dest="checkpoint_cmd", required=True)
    cp_sub.add_parser("latest", help="Latest checkpoint").set_defaults(func=_checkpoint_latest)
    cp_sub.add_parser("history", help="All checkpoints").set_defaults(func=_checkpoint_history)

    resume = subparsers.add_parser("resume", help="Rebuild working state from disk")
    resume.add_argument("--expected", default=None, help="Task id you believe completed last (\"\" for none)")
    resume.add_argument("--strict", action="store_true", help="Fail instead of reporting a discontinuity")
    resume.add_argument("--full", action="store_true", help="Include every task and decision in the output")
    resume.set_defaults(func=_resume)

    decision = subparsers.add_parser("decision", help="Manage the decision registry")
    dec_sub = decision.add_subparsers(dest="decision_cmd", required=True)
    dpropose = dec_sub.add_parser("propose", help="Propose a decision")
    dpropose.add_argument("description")
    dpropose.add_argument("--reasoning", default="")
    dpropose.add_argument("--id", default=None)
    dpropose.set_defaults(func=_decision_propose)
    dlist = dec_sub.add_parser("list", help="List decisions")
    dlist.add_argument("--status", default=None, choices=["proposed", "accepted", "rejected"])
    dlist.set_defaults(func=_decision_list)
    dedit = dec_sub.add_parser("edit", help="Edit a proposed decision")
    dedit.add_argument("decision_id")
    dedit.add_argument("--description", default=None)
    dedit.add_argument("--reasoning", default=None)
    dedit.set_defaults(func=_decision_edit)
    daccept = dec_sub.add_parser("accept", help="Accept a proposed decision")
    daccept.add_argument("decision_id")
    daccept.add_argument("--reasoning", default=None)
    daccept.set_defaults(func=_decision_accept)
    dreject = dec_sub.add_parser("reject", help="Reject a proposed decision")
    dreject.add_argument("decision_id")
    dreject.add_argument("--reasoning", default=None)
    dreject.set_defaults(func=_decision_reject)

    auditor = subparsers.add_parser("auditor", help="Invoke external analyzers")
    aud_sub = auditor.add_subparsers(dest="auditor_cmd", required=True)
    aud_sub.add_parser("list", help="List auditor capabilities").set_defaults(func=_auditor_list)
    arun = aud_sub.add_parser("run", help="Run one analyzer over a bounded scope")
    arun.add_argument("name")
    arun.add_argument("paths", nargs="+")
    arun.add_argument("--max-files", default=None, type=int)
    arun.add_argument("--attach-to", default=None)
    arun.add_argument("--spawn-tasks", action="store_true")
    arun.set_defaults(func=_auditor_run)

    escalation = subparsers.add_parser("escalation", help="Review escalations")
    esc_sub = escalation.add_subparsers(dest="escalation_cmd", required=True)
    esc_sub.add_parser("list", help="Open escalations").set_defaults(func=_escalation_list)
    eresolve = esc_sub.add_parser("resolve", help="Record a human resolution")
    eresolve.add_argument("task_id")
    eresolve.add_argument("resolution")
    eresolve.set_defaults(func=_escalation_resolve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    project_dir = _resolve_project_dir(args.project_dir)
    config = load_engine_config(project_dir)
    log_file = Path(config.log_file) if config.log_file else None
    if log_file is not None and not log_file.is_absolute():
        log_file = project_dir / STATE_DIR_NAME / log_file
    configure_logging(args.log_level or config.log_level, log_file)

    try:
        return int(handler(args) or 0)
    except WorkgraphError as exc:
        sys.stderr.write(json.dumps(exc.to_dict()) + "\n")
        return 1
