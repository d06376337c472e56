"""
GitHub Webhook Receiver
=======================
Route: POST /webhooks/github

Translates GitHub ``push`` and ``pull_request`` deliveries into
TriggerEvents. Activating triggers are submitted in the background so the
delivery is acknowledged well within GitHub's timeout; everything else is
acknowledged and ignored.

Security:
    When WEBHOOK_SECRET is set, the X-Hub-Signature-256 header must carry the
    HMAC-SHA256 of the raw body, otherwise the delivery is rejected (401).
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from release_orchestrator.agents.orchestrator import PipelineOrchestrator
from release_orchestrator.api.deps import get_orchestrator
from release_orchestrator.core import config
from release_orchestrator.models.trigger import TriggerEvent
from release_orchestrator.utils.trigger_rules import evaluate_trigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_PR_ACTIONS = {"opened", "synchronize", "reopened"}


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


def trigger_from_push(payload: dict) -> Optional[TriggerEvent]:
    """Push delivery → TriggerEvent (None for branch deletions and tag pushes)."""
    ref = payload.get("ref", "")
    if payload.get("deleted") or not ref.startswith("refs/heads/"):
        return None

    changed = []
    for commit in payload.get("commits") or []:
        for key in ("added", "modified", "removed"):
            for path in commit.get(key) or []:
                if path not in changed:
                    changed.append(path)

    head_commit = payload.get("head_commit") or {}
    return TriggerEvent(
        event="push",
        revision=payload.get("after", ""),
        branch=ref,
        repository=(payload.get("repository") or {}).get("full_name", ""),
        changed_paths=changed,
        head_commit_message=head_commit.get("message", ""),
        actor=(payload.get("sender") or {}).get("login", ""),
    )


def trigger_from_pull_request(payload: dict) -> Optional[TriggerEvent]:
    """pull_request delivery → TriggerEvent (only for new or updated heads)."""
    if payload.get("action") not in _PR_ACTIONS:
        return None
    pr = payload.get("pull_request") or {}
    return TriggerEvent(
        event="pull_request",
        revision=(pr.get("head") or {}).get("sha", ""),
        branch=(pr.get("base") or {}).get("ref", ""),
        repository=(payload.get("repository") or {}).get("full_name", ""),
        actor=(payload.get("sender") or {}).get("login", ""),
    )


_TRANSLATORS = {
    "push": trigger_from_push,
    "pull_request": trigger_from_pull_request,
}


@router.post("/github", status_code=202)
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    body = await request.body()
    if not verify_signature(body, request.headers.get("x-hub-signature-256"), config.WEBHOOK_SECRET):
        logger.warning("Rejected webhook delivery with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = request.headers.get("x-github-event", "")
    delivery = request.headers.get("x-github-delivery", "")
    translator = _TRANSLATORS.get(event)
    if translator is None:
        logger.info("Webhook %s: event '%s' ignored", delivery, event)
        return {"status": "ignored", "event": event}

    try:
        payload = json.loads(body or b"{}")
        if not isinstance(payload, dict):
            raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
        trigger = translator(payload)
    except (ValueError, AttributeError, TypeError, ValidationError) as e:
        logger.warning("Webhook %s: malformed %s payload: %s", delivery, event, e)
        return JSONResponse(status_code=400, content={"detail": f"Malformed {event} payload"})

    if trigger is None:
        return {"status": "ignored", "event": event}

    activate, reason = evaluate_trigger(trigger, orchestrator.main_branch, orchestrator.descriptor_path)
    if not activate:
        logger.info("Webhook %s: %s ignored (%s)", delivery, event, reason)
        return {"status": "ignored", "event": event, "reason": reason}

    background_tasks.add_task(orchestrator.submit, trigger)
    logger.info("Webhook %s: %s@%s accepted", delivery, event, trigger.revision[:7])
    return {"status": "accepted", "event": event, "revision": trigger.revision}
