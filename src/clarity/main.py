"""FastAPI application entry point for the Clarity request pipeline.

The app wires every component at startup, runs the queue worker loop and
the session TTL sweeper as background tasks, and exposes:

- ``GET /health`` and ``GET /ready`` probes
- ``GET /metrics`` in Prometheus format
- ``POST /webhooks/github`` and ``POST /webhooks/slack`` ingress
- ``GET /api/requests/{request_id}/handover`` signed session download
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from src.clarity.agents.executor import AgentExecutor
from src.clarity.agents.factory import AgentStrategyFactory
from src.clarity.agents.router import AgentRouter
from src.clarity.agents.types import AgentType
from src.clarity.config import ClaritySettings, get_settings
from src.clarity.coordinator import CoordinatorSettings, PipelineCoordinator
from src.clarity.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from src.clarity.events.metrics import generate_metrics_output
from src.clarity.github.client import GitHubClient
from src.clarity.logging_config import configure_logging
from src.clarity.notify.github import GitHubIssueNotifier
from src.clarity.notify.slack import SlackNotifier
from src.clarity.queue.memory import InMemoryQueue
from src.clarity.sessions.codec import SessionCodecError, session_gzip_bytes
from src.clarity.sessions.repository import (
    InMemorySessionRepository,
    PostgresSessionRepository,
    SessionRepository,
)
from src.clarity.sessions.signed_url import InvalidSignedTokenError, verify_signed_token
from src.clarity.state.machine import RequestStateMachine
from src.clarity.state.memory import InMemoryMessageRepository, InMemoryRequestRepository
from src.clarity.state.repository import (
    PostgresDatabase,
    PostgresMessageRepository,
    PostgresRequestRepository,
)
from src.clarity.webhook.handler import WebhookHandler
from src.clarity.webhook.intake import WebhookIntake
from src.clarity.webhook.slack import parse_app_mention, verify_slack_signature
from src.clarity.workspace.orchestrator import WorkspaceOrchestrator

logger = logging.getLogger(__name__)

WORK_QUEUE_NAME = "clarity-requests"


@dataclass
class PipelineServices:
    """Components shared by the HTTP handlers and background tasks."""

    settings: ClaritySettings
    machine: RequestStateMachine
    sessions: SessionRepository
    queue: InMemoryQueue
    github: GitHubClient
    coordinator: PipelineCoordinator
    webhook_handler: WebhookHandler
    intake: WebhookIntake
    event_emitter: EventEmitter
    database: Optional[PostgresDatabase] = None
    slack: Optional[SlackNotifier] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: List[asyncio.Task] = field(default_factory=list)


# Initialized during lifespan startup
services: Optional[PipelineServices] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: ClaritySettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Pipeline configuration",
        extra={
            "github_base_url": settings.github_base_url,
            "github_token": _redact_secret(settings.github_token),
            "github_webhook_secret": _redact_secret(settings.github_webhook_secret),
            "trigger_label": settings.trigger_label,
            "database_url": _redact_secret(settings.database_url, visible_chars=13),
            "public_base_url": settings.public_base_url,
            "session_signing_secret": _redact_secret(settings.session_signing_secret),
            "session_ttl_days": settings.session_ttl_days,
            "signed_url_ttl_seconds": settings.signed_url_ttl_seconds,
            "workspace_base_path": settings.workspace_base_path,
            "default_agent_type": settings.default_agent_type,
            "agent_timeout_seconds": settings.agent_timeout_seconds,
            "max_attempts": settings.max_attempts,
            "worker_concurrency": settings.worker_concurrency,
            "slack_enabled": settings.slack_bot_token is not None,
            "available_repositories": settings.available_repositories,
            "host": settings.host,
            "port": settings.port,
        },
    )


async def build_services(settings: ClaritySettings) -> PipelineServices:
    """Wire all pipeline dependencies.

    Postgres repositories are used when ``database_url`` is set;
    otherwise everything lives in memory.
    """
    database: Optional[PostgresDatabase] = None
    if settings.database_url:
        database = PostgresDatabase(settings.database_url)
        await database.connect()
        machine = RequestStateMachine(
            PostgresRequestRepository(database), PostgresMessageRepository(database)
        )
        sessions: SessionRepository = PostgresSessionRepository(database)
    else:
        logger.warning("No database configured; using in-memory repositories")
        machine = RequestStateMachine(InMemoryRequestRepository(), InMemoryMessageRepository())
        sessions = InMemorySessionRepository()

    queue = InMemoryQueue(WORK_QUEUE_NAME)
    github = GitHubClient(token=settings.github_token, base_url=settings.github_base_url)

    slack: Optional[SlackNotifier] = None
    if settings.slack_bot_token:
        slack = SlackNotifier(settings.slack_bot_token, base_url=settings.slack_base_url)

    executor = AgentExecutor(
        github=github,
        workspaces=WorkspaceOrchestrator(
            github,
            base_path=Path(settings.workspace_base_path),
            clone_timeout_seconds=settings.clone_timeout_seconds,
            git_user_name=settings.git_user_name,
            git_user_email=settings.git_user_email,
        ),
        router=AgentRouter(
            default_agent_type=AgentType(settings.default_agent_type),
            max_turns=settings.agent_max_turns,
            timeout_seconds=settings.agent_timeout_seconds,
        ),
        factory=AgentStrategyFactory(
            claude_cli_path=settings.claude_cli_path,
            opencode_cli_path=settings.opencode_cli_path,
        ),
    )

    event_emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
    coordinator = PipelineCoordinator(
        machine=machine,
        sessions=sessions,
        executor=executor,
        producer=queue,
        github=github,
        settings=CoordinatorSettings.from_settings(settings),
        chat=slack,
        issue_notifier=GitHubIssueNotifier(github),
        event_emitter=event_emitter,
    )

    return PipelineServices(
        settings=settings,
        machine=machine,
        sessions=sessions,
        queue=queue,
        github=github,
        coordinator=coordinator,
        webhook_handler=WebhookHandler(secret=settings.github_webhook_secret),
        intake=WebhookIntake(machine, queue, trigger_label=settings.trigger_label),
        event_emitter=event_emitter,
        database=database,
        slack=slack,
    )


async def session_sweeper(
    sessions: SessionRepository,
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    """Delete expired sessions every ``interval_seconds`` until stopped."""
    while not stop_event.is_set():
        try:
            deleted = await sessions.delete_expired()
            if deleted:
                logger.info("Expired sessions deleted", extra={"deleted": deleted})
        except Exception:
            logger.exception("Session sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


def start_background_tasks(svc: PipelineServices) -> None:
    for index in range(svc.settings.worker_concurrency):
        svc.tasks.append(
            asyncio.create_task(
                svc.queue.consume(svc.coordinator.process_batch, svc.stop_event),
                name=f"clarity-worker-{index}",
            )
        )
    svc.tasks.append(
        asyncio.create_task(
            session_sweeper(
                svc.sessions, svc.settings.session_sweep_interval_seconds, svc.stop_event
            ),
            name="clarity-session-sweeper",
        )
    )


async def shutdown_services(svc: PipelineServices) -> None:
    """Stop background tasks, then release clients and the pool."""
    svc.stop_event.set()
    if svc.tasks:
        await asyncio.gather(*svc.tasks, return_exceptions=True)
    await svc.event_emitter.close()
    if svc.slack is not None:
        await svc.slack.close()
    await svc.github.close()
    if svc.database is not None:
        await svc.database.disconnect()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: configuration, wiring, background tasks, shutdown."""
    global services

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    logger.info("Clarity pipeline starting up")
    _log_configuration(settings)

    services = await build_services(settings)
    start_background_tasks(services)
    logger.info("Clarity pipeline started successfully")

    yield

    logger.info("Clarity pipeline shutting down")
    await shutdown_services(services)
    services = None
    logger.info("Clarity pipeline shutdown complete")


app = FastAPI(
    title="Clarity Request Pipeline",
    description="Turns GitHub issues and Slack mentions into pull requests",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_services() -> PipelineServices:
    if services is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return services


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe: checks the database when one is configured."""
    svc = _require_services()
    if svc.database is None:
        database_status = "not_configured"
    elif await svc.database.health_check():
        database_status = "healthy"
    else:
        database_status = "unhealthy"

    body = {
        "status": "not_ready" if database_status == "unhealthy" else "ready",
        "dependencies": {"database": database_status},
        "queue": {"pending": svc.queue.pending_count},
    }
    return JSONResponse(status_code=503 if database_status == "unhealthy" else 200, content=body)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver.

    Acknowledges quickly: intake records the request and enqueues work,
    the agent turn itself runs on the worker loop.
    """
    svc = _require_services()
    body = await request.body()
    if not svc.webhook_handler.verify_signature(body, request.headers.get("X-Hub-Signature-256")):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        return {"status": "ignored", "message": "Invalid JSON payload"}

    event_name = request.headers.get("X-GitHub-Event", "")
    if event_name == "issues":
        event = svc.webhook_handler.parse_issue_event(payload)
        if event is None:
            return {"status": "ignored", "message": "Unsupported or invalid event"}
        outcome = await svc.intake.handle_issue_event(event)
        return {"status": outcome.value, "request_id": event.request_id}

    if event_name == "issue_comment":
        comment = svc.webhook_handler.parse_issue_comment_event(payload)
        if comment is None:
            return {"status": "ignored", "message": "Unsupported or invalid event"}
        outcome = await svc.intake.handle_issue_comment(comment)
        return {"status": outcome.value, "request_id": comment.request_id}

    if event_name == "ping":
        return {"status": "pong"}

    return {"status": "ignored", "message": f"Unhandled event type: {event_name or 'unknown'}"}


@app.post("/webhooks/slack")
async def slack_webhook(request: Request):
    """Slack Events API receiver for app mentions."""
    svc = _require_services()
    body = await request.body()
    if not verify_slack_signature(
        svc.settings.slack_signing_secret,
        body,
        request.headers.get("X-Slack-Request-Timestamp"),
        request.headers.get("X-Slack-Signature"),
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    mention = parse_app_mention(payload)
    if mention is None:
        return {"status": "ignored"}

    await svc.queue.send(mention.model_dump())
    return {"status": "accepted"}


@app.get("/api/requests/{request_id}/handover")
async def session_handover(
    request_id: str,
    token: str = Query(...),
    format: str = Query("session"),
):
    """Serve a request's live session to an execution unit.

    ``format=session`` returns JSON with the encoded blob; ``format=raw``
    returns the gzip-compressed session file.
    """
    svc = _require_services()
    try:
        verify_signed_token(token, request_id, svc.settings.session_signing_secret)
    except InvalidSignedTokenError as exc:
        logger.warning(
            "Rejected session handover",
            extra={"request_id": request_id, "reason": str(exc)},
        )
        raise HTTPException(status_code=403, detail="Invalid or expired token")

    if format not in ("session", "raw"):
        raise HTTPException(status_code=400, detail="format must be session or raw")

    session = await svc.sessions.get_for_request(request_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No live session for request")

    logger.info(
        "Session handed over",
        extra={
            "request_id": request_id,
            "session_id": session.session_id,
            "blob_size_bytes": session.blob_size_bytes,
            "format": format,
        },
    )

    if format == "raw":
        try:
            content = session_gzip_bytes(session.session_blob)
        except SessionCodecError:
            logger.exception("Stored session blob is corrupt", extra={"request_id": request_id})
            raise HTTPException(status_code=500, detail="Stored session is unreadable")
        return Response(
            content=content,
            media_type="application/gzip",
            headers={"X-Session-Id": session.session_id},
        )

    return {
        "request_id": session.request_id,
        "session_id": session.session_id,
        "agent_type": session.agent_type,
        "session_blob": session.session_blob,
        "blob_size_bytes": session.blob_size_bytes,
        "expires_at": session.expires_at.isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.clarity.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
