import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from cierrebot.services.transport import parse_update

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "Bot activo"


@router.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# POST /telegram/webhook
# ---------------------------------------------------------------------------

@router.post("/telegram/webhook")
async def telegram_webhook(request: Request):
    secret = request.app.state.settings.telegram_webhook_secret
    if secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        raise HTTPException(status_code=403, detail="Invalid webhook secret")

    update = await request.json()
    event = parse_update(update)
    if event is None:
        logger.debug("Ignoring update %s", update.get("update_id"))
        return {"ok": True, "ignored": True}

    request.app.state.aggregator.enqueue(
        event["conversation_id"], text=event["text"], image_ref=event["attachment_ref"]
    )
    return {"ok": True}


# ---------------------------------------------------------------------------
# POST /messages  (local testing without Telegram)
# ---------------------------------------------------------------------------

class MessageRequest(BaseModel):
    conversation_id: str
    text: str | None = None
    image_ref: str | None = None


@router.post("/messages")
async def post_message(body: MessageRequest, request: Request):
    if not body.text and not body.image_ref:
        raise HTTPException(status_code=400, detail="text or image_ref is required")
    request.app.state.aggregator.enqueue(body.conversation_id, text=body.text, image_ref=body.image_ref)
    return {"ok": True, "pending": request.app.state.aggregator.pending()}
