"""FastAPI application entry point for the dispatch service.

Receives Linear agent-session webhooks, acknowledges them immediately, and
hands each accepted event to the SessionCoordinator as a background task.
Also serves health, readiness, Prometheus metrics, and diagnostics for the
sessions and workspaces the service currently holds.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Set

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from .activities.sink import ActivitySink
from .config import DispatchSettings, get_settings
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .linear.client import LinearActivityClient
from .runner.claude import create_claude_runner
from .session.coordinator import SessionCoordinator
from .webhook.handler import SIGNATURE_HEADER, WebhookHandler, WebhookSignatureError
from .workspace.worktree import GitWorktreeProvider, WorkspaceConfig, WorkspaceProvisioner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: DispatchSettings
coordinator: Optional[SessionCoordinator] = None
webhook_handler: Optional[WebhookHandler] = None
activity_sink: Optional[ActivitySink] = None
provisioner: Optional[WorkspaceProvisioner] = None

_background_tasks: Set["asyncio.Task[object]"] = set()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if value is None:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: DispatchSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Dispatch configuration:")
    logger.info(f"  Linear API URL: {settings.linear_api_url}")
    logger.info(f"  Linear Access Token: {_redact_secret(settings.linear_access_token)}")
    logger.info(
        f"  Linear Webhook Secret: {_redact_secret(settings.linear_webhook_secret)}"
    )
    logger.info(f"  Linear MCP URL: {settings.linear_mcp_url}")
    logger.info(f"  Repository Path: {settings.repository_path}")
    logger.info(f"  Worktree Base Path: {settings.worktree_base_path}")
    logger.info(f"  Worktree Branch Prefix: {settings.worktree_branch_prefix}")
    logger.info(f"  Git Timeout Seconds: {settings.git_timeout_seconds}")
    logger.info(f"  Workspace Retention Hours: {settings.workspace_retention_hours}")
    logger.info(f"  Claude CLI Path: {settings.claude_cli_path}")
    logger.info(f"  Run Timeout Seconds: {settings.run_timeout_seconds}")
    logger.info(f"  Agent: {settings.agent.id} ({settings.agent.name})")
    logger.info(f"  Agent Model: {settings.agent.model}")
    logger.info(f"  Agent Permission Mode: {settings.agent.permission_mode.value}")
    logger.info(f"  Agent MCP Servers: {sorted(settings.agent.mcp_servers)}")
    logger.info(f"  Log Level: {settings.log_level}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the session coordinator
    - Stopping in-flight runs and closing clients on shutdown
    """
    global settings, coordinator, webhook_handler, activity_sink, provisioner

    logger.info("Dispatch service starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    webhook_handler = WebhookHandler(secret=settings.linear_webhook_secret)
    activity_sink = LinearActivityClient(
        access_token=settings.linear_access_token,
        api_url=settings.linear_api_url,
    )
    provisioner = WorkspaceProvisioner(
        config=WorkspaceConfig(
            base_path=Path(settings.worktree_base_path),
            branch_prefix=settings.worktree_branch_prefix,
            retention_hours=settings.workspace_retention_hours,
        ),
        provider=GitWorktreeProvider(timeout_seconds=settings.git_timeout_seconds),
    )
    coordinator = _build_coordinator(settings, activity_sink, provisioner)

    logger.info("Dispatch service started successfully")

    yield

    logger.info("Dispatch service shutting down...")

    for run in coordinator.registry.snapshot():
        await coordinator.stop_session(run.session_id)

    for task in list(_background_tasks):
        task.cancel()
    if _background_tasks:
        await asyncio.gather(*_background_tasks, return_exceptions=True)

    await activity_sink.close()

    logger.info("Dispatch service shutdown complete")


def _build_coordinator(
    cfg: DispatchSettings,
    sink: ActivitySink,
    workspace_provisioner: WorkspaceProvisioner,
) -> SessionCoordinator:
    """Wire the session coordinator's dependencies.

    Args:
        cfg: Validated settings.
        sink: Where session activities are delivered.
        workspace_provisioner: Provisioner for per-work-item worktrees.

    Returns:
        Fully wired SessionCoordinator.
    """
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS]
    )

    return SessionCoordinator(
        agent=cfg.agent,
        runner_factory=lambda: create_claude_runner(
            cli_path=cfg.claude_cli_path,
            default_model=cfg.agent.model,
        ),
        provisioner=workspace_provisioner,
        sink=sink,
        repository_path=Path(cfg.repository_path),
        event_emitter=event_emitter,
        access_token=cfg.linear_access_token,
        tracker_mcp_url=cfg.linear_mcp_url,
        run_timeout_seconds=cfg.run_timeout_seconds,
    )


app = FastAPI(
    title="Dispatch",
    description="Runs an AI coding agent for Linear agent sessions",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Returns:
        dict: Status and the number of runs currently executing. 503 when
        the coordinator has not been wired yet.
    """
    if coordinator is None:
        return JSONResponse(status_code=503, content={"status": "not_ready"})

    return {
        "status": "ready",
        "active_sessions": len(coordinator.registry),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/linear")
async def linear_webhook(request: Request):
    """Linear agent-session webhook receiver.

    The signature is checked against the raw body before parsing. Accepted
    events are handled in the background so the webhook is acknowledged
    immediately.

    Returns:
        dict: Acknowledgment of webhook receipt.
    """
    if webhook_handler is None or coordinator is None:
        logger.error("Dispatch service not initialized")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Service not initialized"},
        )

    body = await request.body()

    try:
        webhook_handler.verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    except WebhookSignatureError as e:
        logger.warning("Rejected webhook: %s", e)
        return JSONResponse(
            status_code=401,
            content={"status": "error", "message": "Invalid signature"},
        )

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Body is not valid JSON"},
        )

    event = webhook_handler.parse_agent_session_event(payload)
    if event is None:
        return {"status": "ignored", "message": "Unsupported or invalid event"}

    task = asyncio.create_task(coordinator.handle(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {"status": "accepted", "session_id": event.session_id}


@app.get("/sessions")
async def list_sessions():
    """Runs currently executing, by session."""
    if coordinator is None:
        return {"sessions": []}

    return {
        "sessions": [
            {
                "session_id": run.session_id,
                "work_item_id": run.work_item.id,
                "work_item_identifier": run.work_item.identifier,
                "stage": run.stage.value,
                "workspace_path": run.workspace_path,
                "degraded": run.degraded,
                "started_at": run.started_at.isoformat(),
            }
            for run in coordinator.registry.snapshot()
        ]
    }


@app.get("/workspaces")
async def list_workspaces():
    """Provisioned workspaces under the worktree base path."""
    if provisioner is None:
        return {"workspaces": []}

    handles = await provisioner.list(Path(settings.repository_path))
    return {
        "workspaces": [
            {
                "work_item_id": handle.work_item_id,
                "path": str(handle.path),
                "branch_name": handle.branch_name,
                "created_at": handle.created_at.isoformat(),
            }
            for handle in handles
        ]
    }


@app.post("/workspaces/cleanup")
async def cleanup_workspaces(older_than_hours: Optional[int] = None):
    """Remove workspaces older than the retention period.

    Workspaces of runs that are currently executing are kept.

    Args:
        older_than_hours: Age threshold; defaults to the configured retention.
    """
    if older_than_hours is not None and older_than_hours < 1:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "older_than_hours must be at least 1"},
        )

    if provisioner is None:
        return {"removed": 0}

    in_use = coordinator.active_workspaces() if coordinator is not None else []
    removed = await provisioner.cleanup(
        Path(settings.repository_path),
        older_than_hours=older_than_hours,
        exclude=in_use,
    )
    return {"removed": removed}


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.dispatch.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
