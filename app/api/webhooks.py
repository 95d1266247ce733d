"""Webhook API endpoints, scoped to the caller's workspace."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import WorkspaceContext, get_workspace_context
from app.database import get_db
from app.models.webhook import Webhook
from app.schemas.webhook import WebhookCreate, WebhookResponse, WebhookTestResponse
from app.services.webhook_service import test_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _get_webhook(webhook_id: int, context: WorkspaceContext, db: Session) -> Webhook:
    webhook = (
        db.query(Webhook)
        .filter(Webhook.id == webhook_id, Webhook.workspace_id == context.workspace_id)
        .first()
    )
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


@router.get("", response_model=List[WebhookResponse])
def list_webhooks(
    context: WorkspaceContext = Depends(get_workspace_context), db: Session = Depends(get_db)
):
    """List the workspace's webhooks, newest first."""
    return (
        db.query(Webhook)
        .filter(Webhook.workspace_id == context.workspace_id)
        .order_by(Webhook.created_at.desc())
        .all()
    )


@router.post("", response_model=WebhookResponse, status_code=201)
def create_webhook(
    webhook: WebhookCreate,
    context: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    """
    Create a new webhook.

    Creates a webhook that will be triggered when the specified import event occurs.
    """
    db_webhook = Webhook(
        workspace_id=context.workspace_id,
        url=webhook.url,
        event_type=webhook.event_type,
        enabled=webhook.enabled,
    )
    db.add(db_webhook)
    db.commit()
    db.refresh(db_webhook)

    return db_webhook


@router.delete("/{webhook_id}", status_code=204)
def delete_webhook(
    webhook_id: int,
    context: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    webhook = _get_webhook(webhook_id, context, db)
    db.delete(webhook)
    db.commit()

    return None


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook_endpoint(
    webhook_id: int,
    context: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    """
    Test a webhook by sending a sample payload.

    Sends a test event to the webhook URL and returns the response status.
    """
    webhook = _get_webhook(webhook_id, context, db)

    test_payload = {
        "event": webhook.event_type,
        "test": True,
        "data": {
            "job_id": "00000000-0000-0000-0000-000000000000",
            "filename": "leads.csv",
            "total_records": 3,
            "created": 2,
            "updated": 0,
            "skipped": 1,
        },
    }

    result = await test_webhook(webhook.url, test_payload)

    return WebhookTestResponse(**result)
