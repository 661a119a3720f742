"""Push trigger route."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status

from pushdeploy.api.deps import get_deploy_config, get_pipeline, get_store
from pushdeploy.api.schemas.deploy import WebhookResponse
from pushdeploy.config import DeployConfig
from pushdeploy.core.deploy_pipeline import DeployPipeline
from pushdeploy.core.errors import LockBusyError
from pushdeploy.core.signatures import verify_signature
from pushdeploy.db.store import SQLiteStore
from pushdeploy.models.deployment import LockToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hooks", tags=["webhook"])


async def run_deployment(
    pipeline: DeployPipeline, store: SQLiteStore, token: LockToken | None = None
) -> None:
    """Run the pipeline off the event loop and persist its log trail."""
    attempt = await asyncio.to_thread(pipeline.run, token)
    await store.record_attempt(attempt.to_record(pipeline.config.app_name), attempt.events)


@router.post("/{hook_id}", status_code=status.HTTP_202_ACCEPTED, response_model=WebhookResponse)
async def trigger_deploy(
    hook_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: str | None = Header(default=None),
    config: DeployConfig = Depends(get_deploy_config),
    pipeline: DeployPipeline = Depends(get_pipeline),
    store: SQLiteStore = Depends(get_store),
) -> WebhookResponse:
    if hook_id != config.hook_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Hook not found")

    body = await request.body()
    if not verify_signature(config.webhook_secret, body, x_hub_signature_256):
        logger.warning("Rejected webhook %s: bad or missing signature", hook_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Payload is not JSON"
        ) from exc

    expected_ref = f"refs/heads/{config.branch}"
    ref = payload.get("ref") if isinstance(payload, dict) else None
    if ref != expected_ref:
        logger.info("Ignoring push to %s (deploying %s)", ref, expected_ref)
        return WebhookResponse(
            message=f"Ignored push to {ref}", status="ignored", hook_id=hook_id
        )

    # Held from here until the queued run finishes.
    try:
        token = pipeline.lock_manager.acquire()
    except LockBusyError as exc:
        logger.warning("Deployment already in progress (pid %s)", exc.owner_pid)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Deployment already in progress (pid {exc.owner_pid})",
        ) from exc

    background_tasks.add_task(run_deployment, pipeline, store, token)
    logger.info("Deployment triggered for %s by push to %s", config.app_name, ref)
    return WebhookResponse(message="Deployment started", status="started", hook_id=hook_id)
