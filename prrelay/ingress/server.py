"""
PR Relay Server

FastAPI application for the fast-ingress path and the queue worker.

Endpoints:
- POST /webhooks/github: GitHub webhook (global secret)
- POST /webhooks/github/{owner}/{repo}: GitHub webhook (per-repo secret)
- POST /slack/events: Slack Events API
- POST /slack/commands: Slash commands (/notify-channel, /notify-link, ...)
- POST /worker/jobs: Queue push target
- POST /admin/repos: Register or update a repository
- GET /auth/github/link, GET /auth/github/callback: Identity linking
- GET /health: Health check

Pipeline:
1. Verify the signature over the raw body
2. Minimal shape check
3. Enqueue a WebhookJob under the enqueue deadline
4. The queue pushes the job to /worker/jobs, which runs the EventProcessor
"""

import asyncio
import hmac
import json
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .. import __version__
from ..common.config import RelayConfig, ensure_directories, load_config, validate_config
from ..common.errors import (
    AuthenticationError,
    IdentityMismatchError,
    InvalidStateError,
    PermanentExternalError,
    QueueError,
    TransientExternalError,
    ValidationError,
)
from ..common.github_client import GitHubClient
from ..common.log_context import LogContext, configure_logging
from ..common.schemas import Repo, WebhookJob
from ..common.slack_client import ChatClient, SlackClient
from ..common.store import RelayStore, build_document_store
from ..common.task_queue import (
    QUEUE_NAME_HEADER,
    RETRY_COUNT_HEADER,
    CloudTasksQueue,
    GoogleTokenProvider,
    LocalTaskQueue,
    TaskQueue,
    static_token,
)
from ..pipeline.identity_linker import IdentityLinker
from ..pipeline.processor import EventProcessor
from ..pipeline.reaction_sync import ReactionSynchronizer
from ..pipeline.worker import JobWorker
from .handlers import GitHubHandler, SlackHandler, SlashCommand

log = LogContext.for_module("prrelay.ingress.server")

SLACK_CHANNEL_REF = re.compile(r"^<#([A-Z0-9]+)(?:\|[^>]*)?>$")


# =============================================================================
# Service wiring
# =============================================================================

@dataclass
class RelayServices:
    """Everything the endpoints need, built once per application"""
    config: RelayConfig
    store: RelayStore
    chat: ChatClient
    github: GitHubClient
    queue: TaskQueue
    github_handler: GitHubHandler
    slack_handler: SlackHandler
    worker: JobWorker
    linker: IdentityLinker

    async def close(self) -> None:
        await self.queue.close()
        await self.chat.close()
        await self.github.close()
        await self.store.documents.close()


def build_queue(config: RelayConfig) -> TaskQueue:
    """Create the configured task queue"""
    if config.queue.mode == "cloud_tasks":
        if config.queue.access_token:
            token_provider = static_token(config.queue.access_token)
        else:
            token_provider = GoogleTokenProvider()
        return CloudTasksQueue(
            project=config.queue.project,
            location=config.queue.location,
            queue=config.queue.queue,
            worker_url=config.queue.worker_url,
            worker_secret=config.queue.worker_secret,
            token_provider=token_provider,
            api_url=config.queue.api_url,
        )
    if config.queue.mode == "local":
        return LocalTaskQueue()
    raise ValueError(f"Unsupported queue mode: {config.queue.mode!r}")


def build_services(
    config: RelayConfig,
    store: Optional[RelayStore] = None,
    chat: Optional[ChatClient] = None,
    github: Optional[GitHubClient] = None,
    queue: Optional[TaskQueue] = None,
) -> RelayServices:
    """Construct collaborators, filling in any that were not injected"""
    store = store or RelayStore(build_document_store(config.store.backend, config.store.path))
    chat = chat or SlackClient(token=config.slack.bot_token, api_url=config.slack.api_url)
    github = github or GitHubClient(
        client_id=config.github.oauth_client_id,
        client_secret=config.github.oauth_client_secret,
        api_token=config.github.api_token,
        api_url=config.github.api_url,
        oauth_url=config.github.oauth_url,
    )
    queue = queue or build_queue(config)

    synchronizer = ReactionSynchronizer(chat, config.emoji)
    processor = EventProcessor(store, chat, synchronizer, github)
    worker = JobWorker(processor, timeout=config.server.worker_timeout)
    if isinstance(queue, LocalTaskQueue):
        queue.bind(worker.deliver)

    return RelayServices(
        config=config,
        store=store,
        chat=chat,
        github=github,
        queue=queue,
        github_handler=GitHubHandler(
            webhook_secret=config.github.webhook_secret,
            max_attempts=config.queue.max_attempts,
        ),
        slack_handler=SlackHandler(
            signing_secret=config.slack.signing_secret,
            max_age=config.server.slack_timestamp_max_age,
            max_attempts=config.queue.max_attempts,
        ),
        worker=worker,
        linker=IdentityLinker(store, github, chat, config.server.base_url),
    )


def services(request: Request) -> RelayServices:
    return request.app.state.services


async def enqueue_job(svc: RelayServices, job: WebhookJob) -> Dict[str, str]:
    """Hand a job to the queue under the fast-ingress deadline"""
    job_log = log.bind(job_id=job.id, trace_id=job.trace_id, kind=job.kind.value, event_type=job.event_type)
    try:
        handle = await asyncio.wait_for(svc.queue.enqueue(job), timeout=svc.config.server.enqueue_timeout)
    except asyncio.TimeoutError:
        job_log.error("Enqueue timed out", timeout=svc.config.server.enqueue_timeout)
        raise HTTPException(status_code=503, detail="Queue unavailable")
    except QueueError as e:
        job_log.error("Enqueue failed", error=e)
        raise HTTPException(status_code=503, detail="Queue unavailable")

    job_log.info("Job enqueued", task_name=handle.task_name)
    return {"status": "queued", "job_id": job.id}


def _decode_json(body: bytes):
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")


# =============================================================================
# Request Models
# =============================================================================

class RepoRegistration(BaseModel):
    """Admin request to register or update a repository"""
    full_name: str = Field(..., pattern=r"^[\w.-]+/[\w.-]+$")
    default_channel: Optional[str] = None
    webhook_secret: Optional[str] = None
    enabled: bool = True


# =============================================================================
# Endpoints
# =============================================================================

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Health check endpoint"""
    svc = services(request)
    return {
        "status": "healthy",
        "service": "prrelay",
        "version": __version__,
        "queue_mode": svc.config.queue.mode,
        "store_backend": svc.config.store.backend,
    }


@router.post("/webhooks/github", status_code=202)
async def github_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
):
    """Receive a GitHub webhook signed with the global secret"""
    return await receive_github_webhook(
        request, None, x_hub_signature_256, x_github_event, x_github_delivery
    )


@router.post("/webhooks/github/{owner}/{repo}", status_code=202)
async def github_repo_webhook(
    request: Request,
    owner: str,
    repo: str,
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
):
    """Receive a GitHub webhook signed with the repo's own secret"""
    return await receive_github_webhook(
        request, f"{owner}/{repo}", x_hub_signature_256, x_github_event, x_github_delivery
    )


async def receive_github_webhook(
    request: Request,
    route_repo: Optional[str],
    signature: Optional[str],
    event_type: Optional[str],
    delivery_id: Optional[str],
):
    """
    Verify, shape-check and enqueue a GitHub webhook.

    The per-repo route selects the repo's webhook secret (falling back to the
    global one); the body is not parsed until the signature checks out.
    """
    svc = services(request)
    body = await request.body()

    secret = None
    if route_repo:
        registered = await svc.store.get_repo(route_repo)
        if registered is not None and registered.webhook_secret:
            secret = registered.webhook_secret

    try:
        svc.github_handler.verify_signature(body, signature or "", secret=secret)
    except AuthenticationError as e:
        log.warning("GitHub webhook rejected", error=e, delivery_id=delivery_id, route_repo=route_repo)
        raise HTTPException(status_code=401, detail="Invalid signature")

    if event_type == "ping":
        return {"status": "pong"}
    if not svc.github_handler.is_supported(event_type):
        log.debug("GitHub event ignored", event_type=event_type, delivery_id=delivery_id)
        return {"status": "ignored"}

    data = _decode_json(body)
    try:
        job = svc.github_handler.parse_event(
            data, event_type=event_type, delivery_id=delivery_id
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if route_repo and data["repository"]["full_name"].lower() != route_repo.lower():
        raise HTTPException(status_code=400, detail="Repository does not match route")

    return await enqueue_job(svc, job)


@router.post("/slack/events")
async def slack_events(
    request: Request,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None),
):
    """Handle Slack Events API callbacks"""
    svc = services(request)
    body = await request.body()

    try:
        svc.slack_handler.verify_signature(body, x_slack_signature or "", x_slack_request_timestamp or "")
    except AuthenticationError as e:
        log.warning("Slack event rejected", error=e)
        raise HTTPException(status_code=401, detail="Invalid signature")

    data = _decode_json(body)
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    if svc.slack_handler.is_url_verification(data):
        return JSONResponse({"challenge": svc.slack_handler.get_challenge(data)})

    job = svc.slack_handler.parse_event(data)
    if job is None:
        return {"ok": True}

    result = await enqueue_job(svc, job)
    return {"ok": True, **result}


@router.post("/slack/commands")
async def slack_commands(
    request: Request,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None),
):
    """Handle /notify-* slash commands"""
    svc = services(request)
    body = await request.body()

    try:
        svc.slack_handler.verify_signature(body, x_slack_signature or "", x_slack_request_timestamp or "")
    except AuthenticationError as e:
        log.warning("Slack command rejected", error=e)
        raise HTTPException(status_code=401, detail="Invalid signature")

    fields = parse_qs(body.decode("utf-8", errors="replace"), keep_blank_values=True)
    form = {k: v[0] for k, v in fields.items()}
    try:
        command = svc.slack_handler.parse_command(form)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    cmd_log = log.bind(command=command.command, team=command.team_id, user=command.user_id)
    try:
        text = await run_command(svc, command)
    except TransientExternalError as e:
        cmd_log.warning("Slash command failed transiently", error=e)
        text = "Something went wrong talking to Slack or GitHub. Please try again."

    cmd_log.info("Slash command handled")
    return {"response_type": "ephemeral", "text": text}


async def run_command(svc: RelayServices, command: SlashCommand) -> str:
    """Execute a slash command and return the reply text"""
    linker = svc.linker

    if command.command == "/notify-channel":
        argument = command.argument
        if not argument:
            return "Usage: /notify-channel #channel"
        match = SLACK_CHANNEL_REF.match(argument)
        channel = match.group(1) if match else argument
        try:
            user = await linker.set_default_channel(command.team_id, command.user_id, channel)
        except PermanentExternalError:
            return f"I couldn't find {argument}. Is the bot a member of it?"
        return f"Your pull requests will be announced in <#{user.default_channel}>."

    if command.command == "/notify-link":
        url = await linker.request_link(command.team_id, command.user_id, command.channel_id)
        return f"Link your GitHub account (valid for 15 minutes): {url}"

    if command.command == "/notify-unlink":
        await linker.unlink(command.team_id, command.user_id)
        return "Your GitHub account has been unlinked."

    if command.command == "/notify-status":
        status = await linker.status(command.team_id, command.user_id)
        return status.describe()

    return f"Unknown command {command.command}"


@router.post("/worker/jobs")
async def worker_jobs(
    request: Request,
    x_relay_worker_secret: Optional[str] = Header(None),
    x_cloudtasks_queuename: Optional[str] = Header(None),
    x_cloudtasks_taskretrycount: Optional[str] = Header(None),
):
    """
    Queue push target.

    Returns 200 for every outcome that must not be redelivered and 503 for
    retryable failures.
    """
    svc = services(request)
    expected = svc.config.queue.worker_secret
    provided = x_relay_worker_secret or ""
    if not expected or not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        log.warning("Worker request rejected", reason="bad_secret")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not x_cloudtasks_queuename:
        log.warning("Worker request rejected", reason=f"missing_{QUEUE_NAME_HEADER}")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        retry_count = int(x_cloudtasks_taskretrycount or 0)
    except ValueError:
        log.warning("Malformed retry count header", header=RETRY_COUNT_HEADER, value=x_cloudtasks_taskretrycount)
        retry_count = 0

    body = await request.body()
    try:
        job = WebhookJob.model_validate_json(body)
    except PydanticValidationError as e:
        log.error("Invalid job envelope dropped", errors=e.error_count(), queue=x_cloudtasks_queuename)
        return JSONResponse({"status": "invalid_job"}, status_code=200)

    outcome = await svc.worker.handle(job, retry_count)
    return JSONResponse(outcome.to_response(job.id), status_code=outcome.status_code)


@router.post("/admin/repos")
async def register_repo(
    request: Request,
    registration: RepoRegistration,
    x_admin_key: Optional[str] = Header(None),
):
    """Create or update a repository's configuration"""
    svc = services(request)
    expected = svc.config.server.admin_key
    provided = x_admin_key or ""
    if not expected or not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")

    repo = await svc.store.get_repo(registration.full_name)
    created = repo is None
    if created:
        repo = Repo(full_name=registration.full_name)
    repo.default_channel = registration.default_channel
    repo.enabled = registration.enabled
    if registration.webhook_secret is not None:
        repo.webhook_secret = registration.webhook_secret or None
    await svc.store.save_repo(repo)

    log.info("Repo registered", repo=repo.full_name, created=created, enabled=repo.enabled)
    return {
        "status": "created" if created else "updated",
        "repo": repo.model_dump(mode="json", exclude={"webhook_secret"}),
    }


@router.get("/auth/github/link")
async def github_link(request: Request, state: str = Query("")):
    """Redirect a Slack user to GitHub authorization"""
    svc = services(request)
    try:
        url = await svc.linker.authorize_url(state)
    except InvalidStateError as e:
        log.info("Link start rejected", error=e)
        return HTMLResponse(_page("This link has expired or was already used. Run /notify-link again."), status_code=400)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/github/callback")
async def github_callback(request: Request, state: str = Query(""), code: str = Query("")):
    """Finish identity linking"""
    svc = services(request)
    try:
        user = await svc.linker.complete_link(state, code)
    except InvalidStateError as e:
        log.info("Link completion rejected", error=e)
        return HTMLResponse(_page("This link has expired or was already used. Run /notify-link again."), status_code=400)
    except IdentityMismatchError as e:
        log.warning("GitHub identity rejected", error=e)
        return HTMLResponse(_page("GitHub returned an unexpected identity. Please try again."), status_code=400)
    except PermanentExternalError as e:
        log.error("GitHub code exchange failed", error=e, code=e.code)
        return HTMLResponse(_page("GitHub rejected the authorization. Run /notify-link again."), status_code=502)
    except TransientExternalError as e:
        log.warning("GitHub code exchange unavailable", error=e)
        return HTMLResponse(_page("GitHub is unavailable right now. Please try again."), status_code=503)

    return HTMLResponse(_page(f"Linked to GitHub user {user.github_username}. You can close this window."))


def _page(message: str) -> str:
    escaped = message.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return f"<!doctype html><html><body><p>{escaped}</p></body></html>"


# =============================================================================
# Application
# =============================================================================

def create_app(
    config: Optional[RelayConfig] = None,
    store: Optional[RelayStore] = None,
    chat: Optional[ChatClient] = None,
    github: Optional[GitHubClient] = None,
    queue: Optional[TaskQueue] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators not passed in are created from the configuration.
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(
            "Starting up",
            queue_mode=config.queue.mode,
            store_backend=config.store.backend,
            port=config.server.port,
        )
        yield
        log.info("Shutting down")
        await app.state.services.close()

    app = FastAPI(
        title="PR Relay",
        description="GitHub pull request notifications and review reactions for Slack",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = build_services(config, store=store, chat=chat, github=github, queue=queue)
    app.include_router(router)
    return app


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the PR relay server"""
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()

    config = load_config()
    configure_logging(config.server.log_level)
    for problem in validate_config(config):
        log.warning("Configuration problem", problem=problem)
    if config.store.backend == "json":
        ensure_directories()

    log.info("Starting server", port=config.server.port)
    uvicorn.run(
        "prrelay.ingress.server:create_app",
        factory=True,
        host="0.0.0.0",
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
