"""
Gateway webhook endpoint.

The signature is computed over the exact bytes received, so the body is read
raw instead of through a Pydantic model.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse

from evmarket.api.deps import WebhookReconcilerDep
from evmarket.api.errors import error_body
from evmarket.core.errors import SignatureError

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/razorpay",
    status_code=status.HTTP_200_OK,
    summary="Razorpay webhook receiver",
)
async def razorpay_webhook(
    request: Request,
    reconciler: WebhookReconcilerDep,
    signature: Annotated[Optional[str], Header(alias="X-Razorpay-Signature")] = None,
    event_id: Annotated[Optional[str], Header(alias="X-Razorpay-Event-Id")] = None,
):
    """Acknowledge every correctly signed delivery, whatever its handling outcome."""
    body = await request.body()
    try:
        return await reconciler.handle(body, signature, event_id)
    except SignatureError as e:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=error_body(e.code, e.message),
        )
