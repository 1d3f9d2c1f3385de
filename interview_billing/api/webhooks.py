"""Identity-provider webhook receiver."""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from interview_billing.features.webhooks.service import process_clerk_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/clerk")
async def clerk_webhook(request: Request):
    """
    Verify and apply a Clerk event.

    Duplicates are acknowledged with status "duplicate". Processing errors
    return non-2xx so the provider redelivers.
    """
    body = await request.body()
    return await run_in_threadpool(process_clerk_webhook, request.headers, body)
