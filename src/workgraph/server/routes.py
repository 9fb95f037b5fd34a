"""HTTP endpoints for the orchestration engine.

Each ``create_*_router`` factory takes a ``get_orchestrator`` callable that
resolves the :class:`Orchestrator` for the request's project directory.  The
routers are mounted by :func:`workgraph.server.api.create_app`.  Domain errors
propagate to the exception handler installed there.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..auditors import AuditScope
from ..orchestrator import Orchestrator
from ..task_engine.fsm import describe
from ..verification import Evidence

GetOrchestrator = Callable[[Optional[str]], Orchestrator]


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    title: str
    id: Optional[str] = None
    deliverable: str = ""
    verify: Optional[Any] = None
    depends_on: list[str] = Field(default_factory=list)
    priority: str = "P2"
    effort: Optional[str] = None
    parent_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    priority: Optional[str] = None
    effort: Optional[str] = None
    depends_on: Optional[list[str]] = None
    parent_id: Optional[str] = None
    deliverable: Optional[str] = None
    verify: Optional[Any] = None
    metadata: Optional[dict[str, Any]] = None


class DecomposeRequest(BaseModel):
    subtasks: list[CreateTaskRequest]
    link_parent: bool = True


class StartRequest(BaseModel):
    worker: str = "api"


class EvidenceRequest(BaseModel):
    kind: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    passed: Optional[int] = None
    failed: Optional[int] = None
    total: Optional[int] = None
    report: str = ""
    attested: Optional[bool] = None
    attested_by: Optional[str] = None
    comment: str = ""
    worker: Optional[str] = None


class BlockRequest(BaseModel):
    reason: str
    irreversible: bool = False
    worker: Optional[str] = None


class UnblockRequest(BaseModel):
    note: Optional[str] = None


class SkipRequest(BaseModel):
    reason: str


class NoteRequest(BaseModel):
    text: str


class ResumeRequest(BaseModel):
    expected_last_completed: Optional[str] = None
    strict: bool = False


class InvokeAuditorRequest(BaseModel):
    paths: list[str]
    max_files: Optional[int] = None
    attach_to: Optional[str] = None
    spawn_tasks: bool = False


class ProposeDecisionRequest(BaseModel):
    description: str
    reasoning: str = ""
    id: Optional[str] = None


class EditDecisionRequest(BaseModel):
    description: Optional[str] = None
    reasoning: Optional[str] = None


class FinalizeDecisionRequest(BaseModel):
    reasoning: Optional[str] = None


class ResolveEscalationRequest(BaseModel):
    resolution: str


class TaskResponse(BaseModel):
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class ExecutionOrderResponse(BaseModel):
    batches: list[list[str]]


class DecisionResponse(BaseModel):
    decision: dict[str, Any]


def _task_payload(body: CreateTaskRequest) -> dict[str, Any]:
    data = body.model_dump()
    data["task_id"] = data.pop("id")
    return data


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def create_task_router(get_orchestrator: GetOrchestrator) -> APIRouter:
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    @router.get("", response_model=TaskListResponse)
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        priority: Optional[str] = Query(None),
        parent_id: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
    ) -> TaskListResponse:
        orch = get_orchestrator(project_dir)
        tasks = orch.list_tasks(status=status, priority=priority, parent_id=parent_id, search=search)
        data = [t.to_dict() for t in tasks]
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("", response_model=TaskResponse, status_code=201)
    async def create_task(body: CreateTaskRequest, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        orch = get_orchestrator(project_dir)
        task = orch.submit_task(**_task_payload(body))
        return TaskResponse(task=task.to_dict())

    @router.get("/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        return TaskResponse(task=get_orchestrator(project_dir).get_task(task_id).to_dict())

    @router.patch("/{task_id}", response_model=TaskResponse)
    async def update_task(
        task_id: str,
        body: UpdateTaskRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        changes = body.model_dump(exclude_unset=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No fields to update")
        task = get_orchestrator(project_dir).update_task(task_id, changes)
        return TaskResponse(task=task.to_dict())

    @router.post("/{task_id}/decompose", response_model=TaskListResponse, status_code=201)
    async def decompose_task(
        task_id: str,
        body: DecomposeRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskListResponse:
        subtasks = []
        for sub in body.subtasks:
            payload = sub.model_dump(exclude={"parent_id"})
            subtasks.append({k: v for k, v in payload.items() if v is not None})
        created = get_orchestrator(project_dir).decompose(task_id, subtasks, link_parent=body.link_parent)
        data = [t.to_dict() for t in created]
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("/{task_id}/start", response_model=TaskResponse)
    async def start_task(
        task_id: str,
        body: Optional[StartRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        worker = body.worker if body else "api"
        return TaskResponse(task=get_orchestrator(project_dir).start(task_id, worker=worker).to_dict())

    @router.post("/{task_id}/verification")
    async def submit_verification(
        task_id: str,
        body: EvidenceRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        data = body.model_dump()
        worker = data.pop("worker")
        outcome = get_orchestrator(project_dir).submit_verification(
            task_id, Evidence.from_dict(data), worker=worker,
        )
        return outcome.to_dict()

    @router.post("/{task_id}/block", response_model=TaskResponse)
    async def block_task(task_id: str, body: BlockRequest, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        task = get_orchestrator(project_dir).block(
            task_id, body.reason, irreversible=body.irreversible, worker=body.worker,
        )
        return TaskResponse(task=task.to_dict())

    @router.post("/{task_id}/unblock", response_model=TaskResponse)
    async def unblock_task(
        task_id: str,
        body: Optional[UnblockRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = get_orchestrator(project_dir).unblock(task_id, note=body.note if body else None)
        return TaskResponse(task=task.to_dict())

    @router.post("/{task_id}/skip", response_model=TaskResponse)
    async def skip_task(task_id: str, body: SkipRequest, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        return TaskResponse(task=get_orchestrator(project_dir).skip(task_id, body.reason).to_dict())

    @router.post("/{task_id}/notes", response_model=TaskResponse)
    async def add_note(task_id: str, body: NoteRequest, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        return TaskResponse(task=get_orchestrator(project_dir).add_note(task_id, body.text).to_dict())

    @router.get("/{task_id}/events")
    async def task_events(
        task_id: str,
        limit: int = Query(100, ge=1, le=1000),
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        orch = get_orchestrator(project_dir)
        orch.get_task(task_id)
        return {"events": orch.recent_events(limit=limit, subject_id=task_id)}

    return router


# ---------------------------------------------------------------------------
# Scheduling, checkpoints, recovery
# ---------------------------------------------------------------------------

def create_schedule_router(get_orchestrator: GetOrchestrator) -> APIRouter:
    router = APIRouter(tags=["schedule"])

    @router.get("/api/schedule/next")
    async def next_ready(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        task = get_orchestrator(project_dir).next_ready()
        return {"task": task.to_dict() if task else None}

    @router.get("/api/schedule/ready", response_model=TaskListResponse)
    async def ready(project_dir: Optional[str] = Query(None)) -> TaskListResponse:
        data = [t.to_dict() for t in get_orchestrator(project_dir).ready()]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/api/schedule/execution-order", response_model=ExecutionOrderResponse)
    async def execution_order(project_dir: Optional[str] = Query(None)) -> ExecutionOrderResponse:
        return ExecutionOrderResponse(batches=get_orchestrator(project_dir).execution_order())

    @router.get("/api/schedule/state-machine")
    async def state_machine() -> dict[str, Any]:
        return describe()

    @router.get("/api/checkpoints")
    async def list_checkpoints(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        history = get_orchestrator(project_dir).checkpoints()
        return {"checkpoints": [c.to_dict() for c in history], "total": len(history)}

    @router.get("/api/checkpoints/latest")
    async def latest_checkpoint(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        checkpoint = get_orchestrator(project_dir).latest_checkpoint()
        return {"checkpoint": checkpoint.to_dict() if checkpoint else None}

    @router.post("/api/recovery/resume")
    async def resume(body: Optional[ResumeRequest] = None, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        body = body or ResumeRequest()
        snapshot = get_orchestrator(project_dir).resume(body.expected_last_completed, strict=body.strict)
        return snapshot.to_dict()

    @router.get("/api/status")
    async def status(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return get_orchestrator(project_dir).status()

    @router.post("/api/archive")
    async def archive(project_dir: Optional[str] = Query(None)) -> dict[str, str]:
        return {"path": str(get_orchestrator(project_dir).archive())}

    return router


# ---------------------------------------------------------------------------
# Auditors, decisions, escalations
# ---------------------------------------------------------------------------

def create_governance_router(get_orchestrator: GetOrchestrator) -> APIRouter:
    router = APIRouter(tags=["governance"])

    @router.get("/api/auditors")
    async def list_auditors(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return {"auditors": get_orchestrator(project_dir).registry.list()}

    @router.post("/api/auditors/{name}/invoke")
    async def invoke_auditor(
        name: str,
        body: InvokeAuditorRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        scope = AuditScope(paths=tuple(body.paths), task_id=body.attach_to, max_files=body.max_files)
        outcome = get_orchestrator(project_dir).invoke_auditor(
            name, scope, attach_to=body.attach_to, spawn_tasks=body.spawn_tasks,
        )
        return outcome.to_dict()

    @router.get("/api/decisions")
    async def list_decisions(
        status: Optional[str] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        decisions = get_orchestrator(project_dir).list_decisions(status)
        return {"decisions": [d.to_dict() for d in decisions], "total": len(decisions)}

    @router.post("/api/decisions", response_model=DecisionResponse, status_code=201)
    async def propose_decision(
        body: ProposeDecisionRequest,
        project_dir: Optional[str] = Query(None),
    ) -> DecisionResponse:
        decision = get_orchestrator(project_dir).propose_decision(
            body.description, body.reasoning, decision_id=body.id,
        )
        return DecisionResponse(decision=decision.to_dict())

    @router.get("/api/decisions/{decision_id}", response_model=DecisionResponse)
    async def get_decision(decision_id: str, project_dir: Optional[str] = Query(None)) -> DecisionResponse:
        return DecisionResponse(decision=get_orchestrator(project_dir).get_decision(decision_id).to_dict())

    @router.patch("/api/decisions/{decision_id}", response_model=DecisionResponse)
    async def edit_decision(
        decision_id: str,
        body: EditDecisionRequest,
        project_dir: Optional[str] = Query(None),
    ) -> DecisionResponse:
        decision = get_orchestrator(project_dir).edit_decision(
            decision_id, description=body.description, reasoning=body.reasoning,
        )
        return DecisionResponse(decision=decision.to_dict())

    @router.post("/api/decisions/{decision_id}/accept", response_model=DecisionResponse)
    async def accept_decision(
        decision_id: str,
        body: Optional[FinalizeDecisionRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> DecisionResponse:
        decision = get_orchestrator(project_dir).accept_decision(decision_id, body.reasoning if body else None)
        return DecisionResponse(decision=decision.to_dict())

    @router.post("/api/decisions/{decision_id}/reject", response_model=DecisionResponse)
    async def reject_decision(
        decision_id: str,
        body: Optional[FinalizeDecisionRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> DecisionResponse:
        decision = get_orchestrator(project_dir).reject_decision(decision_id, body.reasoning if body else None)
        return DecisionResponse(decision=decision.to_dict())

    @router.get("/api/escalations", response_model=TaskListResponse)
    async def list_escalations(project_dir: Optional[str] = Query(None)) -> TaskListResponse:
        data = [t.to_dict() for t in get_orchestrator(project_dir).escalations()]
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("/api/escalations/{task_id}/resolve", response_model=TaskResponse)
    async def resolve_escalation(
        task_id: str,
        body: ResolveEscalationRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        return TaskResponse(task=get_orchestrator(project_dir).resolve_escalation(task_id, body.resolution).to_dict())

    return router
