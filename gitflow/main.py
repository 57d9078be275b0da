import hmac
import hashlib
import json
import os
import logging
from typing import Any, Dict, Optional, Tuple
import httpx
from fastapi import FastAPI, Request, Response, Header, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .config import SETTINGS, GitflowConfig, load_gitflow_config, load_repo_config
from .diagnostics import configure_logging, debug_payload
from .dispatcher import Dispatcher
from .github import GitHubClient, GitHubError
from .metrics import (
    metrics_response,
    webhook_requests_total,
    webhook_invalid_signatures_total,
    webhook_parse_failures_total,
)
from .models import Event, Outcome, RunResult, parse_event

logger = logging.getLogger(__name__)

configure_logging(SETTINGS.log_level)

# Service-wide defaults; each repository may override them in its own config file.
BASE_CONFIG: GitflowConfig = load_gitflow_config()

app = FastAPI(title="Gitflow Promotion Webhook Service", version=SETTINGS.service_version)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": SETTINGS.service_version}


@app.get("/readyz")
async def readyz():
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    content_type, data = metrics_response()
    return Response(content=data, media_type=content_type)


def verify_signature(secret: str, body: bytes, signature256: Optional[str]) -> bool:
    if not signature256:
        return False
    try:
        algo, sig = signature256.split("=", 1)
        if algo != "sha256":
            return False
    except ValueError:
        return False
    mac = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    expected = mac.hexdigest()
    return hmac.compare_digest(expected, sig)


def extract_repo_identity(payload: Dict[str, Any]) -> Optional[Tuple[int, str, str]]:
    repo = payload.get("repository") or {}
    owner = (repo.get("owner") or {}).get("login")
    name = repo.get("name")
    inst = (payload.get("installation") or {}).get("id")
    if not (owner and name and inst):
        return None
    return int(inst), owner, name


def run_delivery(event: Event, installation_id: int, owner: str, repo: str, base: GitflowConfig) -> RunResult:
    """One webhook delivery is one run against the repository in the payload."""
    gh = GitHubClient(installation_id=installation_id)
    try:
        cfg = load_repo_config(gh, owner, repo, base)
    except (GitHubError, httpx.HTTPError) as e:
        logger.error("Could not load repository config for %s/%s: %s", owner, repo, e)
        return RunResult(outcome=Outcome.ERROR, message=str(e))
    return Dispatcher(gh, owner, repo, cfg).run(event)


@app.post("/webhook")
async def webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    event_name = x_github_event or "unknown"
    action = "unknown"
    body = await request.body()

    # Resolve secret at request-time to honor test env overrides
    secret = (SETTINGS.webhook_secret or os.getenv("WEBHOOK_SECRET", "")).strip()
    if not secret or not verify_signature(secret, body, x_hub_signature_256):
        webhook_invalid_signatures_total.inc()
        webhook_requests_total.labels(event=event_name, action=action, code=str(401)).inc()
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
        action = payload.get("action", "unknown")
        event = parse_event(event_name, payload)
    except (KeyError, ValueError, AttributeError):
        webhook_parse_failures_total.labels(event=event_name).inc()
        webhook_requests_total.labels(event=event_name, action=action, code=str(400)).inc()
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    debug_payload(logger, f"delivery {x_github_delivery}", payload)

    if event is None:
        logger.info("Event %s is not handled. Skipping...", event_name)
        webhook_requests_total.labels(event=event_name, action=action, code=str(202)).inc()
        return Response(status_code=202)

    identity = extract_repo_identity(payload)
    if identity is None:
        webhook_requests_total.labels(event=event_name, action=action, code=str(400)).inc()
        raise HTTPException(status_code=400, detail="Payload lacks repository or installation")
    installation_id, owner, repo = identity

    result = await run_in_threadpool(run_delivery, event, installation_id, owner, repo, BASE_CONFIG)
    code = 200 if result.ok else 500
    webhook_requests_total.labels(event=event_name, action=action, code=str(code)).inc()
    return JSONResponse(
        status_code=code,
        content={"outcome": result.outcome.value, "message": result.message, "merged": result.merged, "failed": result.failed},
    )
