# app/api/webhooks.py
"""
Carrier (Twilio) webhooks. Every endpoint answers 200 with TwiML, including
on internal failure; only a failed signature/secret check yields 403.

    POST /webhook/voice   call initiated   CallSid, From, To
    POST /webhook/input   input received   CallSid, SpeechResult | Digits | RecordingUrl
                                           ?node=&step= from the action URL
    POST /webhook/status  status changed   CallSid, CallStatus
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import Response

from app.api.deps import get_orchestrator
from app.core import markup
from app.core.orchestrator import CallOrchestrator
from app.utils.security import verify_shared_secret, verify_twilio_signature

logger = logging.getLogger("ivr-flow-engine.api.webhooks")

# Twilio CallStatus -> engine status
STATUS_MAP = {
    "queued": "ringing",
    "initiated": "ringing",
    "ringing": "ringing",
    "in-progress": "answered",
    "answered": "answered",
    "completed": "completed",
    "busy": "busy",
    "no-answer": "no-answer",
    "failed": "failed",
    "canceled": "failed",
}


SPEECH_PUNCTUATION = ".?!,;:"


def map_carrier_status(raw: Optional[str]) -> str:
    status = (raw or "").strip().lower().replace("_", "-")
    return STATUS_MAP.get(status, "failed" if not status else status)


def clean_speech(speech: Optional[str]) -> Optional[str]:
    """Drop the sentence punctuation the recognizer appends ("Support." -> "Support")."""
    if speech is None:
        return None
    return speech.strip().rstrip(SPEECH_PUNCTUATION).strip()


def pick_input(speech: Optional[str], digits: Optional[str], recording_url: Optional[str]) -> str:
    """First non-empty of speech, keypad digits, recording URL; empty string when the gather timed out."""
    for value in (clean_speech(speech), digits, recording_url):
        if value and value.strip():
            return value.strip()
    return ""


def twiml(body: str) -> Response:
    return Response(content=body, media_type=markup.CONTENT_TYPE)


async def verify_webhook(request: Request) -> None:
    """
    Reject callbacks that fail the configured check:
      - TWILIO_AUTH_TOKEN set: X-Twilio-Signature must validate
      - else WEBHOOK_SECRET set: X-Webhook-Secret must match
      - else: accept (development)
    """
    settings = request.app.state.settings
    if settings.TWILIO_AUTH_TOKEN:
        form = await request.form()
        url = str(request.url)
        if settings.PUBLIC_BASE_URL:
            url = settings.PUBLIC_BASE_URL.rstrip("/") + request.url.path
            if request.url.query:
                url = f"{url}?{request.url.query}"
        signature = request.headers.get("X-Twilio-Signature")
        if not verify_twilio_signature(url, {k: v for k, v in form.items()}, signature, settings.TWILIO_AUTH_TOKEN):
            logger.warning("Invalid Twilio signature on %s", request.url.path)
            raise HTTPException(status_code=403, detail="Invalid signature")
    elif settings.WEBHOOK_SECRET:
        if not verify_shared_secret(request.headers.get("X-Webhook-Secret"), settings.WEBHOOK_SECRET):
            logger.warning("Webhook secret mismatch on %s", request.url.path)
            raise HTTPException(status_code=403, detail="Invalid webhook secret")


router = APIRouter(dependencies=[Depends(verify_webhook)])


@router.post("/voice", summary="Call initiated")
async def call_initiated(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    from_number: Optional[str] = Form(None, alias="From"),
    to_number: Optional[str] = Form(None, alias="To"),
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
):
    if not call_sid:
        logger.warning("Call-initiated webhook without CallSid")
        return twiml(markup.render_unavailable())
    return twiml(await orchestrator.handle_call_initiated(call_sid, from_number, to_number))


@router.post("/input", summary="Speech / DTMF / recording result")
async def input_received(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    speech: Optional[str] = Form(None, alias="SpeechResult"),
    digits: Optional[str] = Form(None, alias="Digits"),
    recording_url: Optional[str] = Form(None, alias="RecordingUrl"),
    node: Optional[str] = Query(None),
    step: Optional[int] = Query(None),
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
):
    if not call_sid:
        logger.warning("Input webhook without CallSid")
        return twiml(markup.render_hangup())
    value = pick_input(speech, digits, recording_url)
    return twiml(await orchestrator.handle_input(call_sid, value, node, step))


@router.post("/status", summary="Call status changed")
async def status_changed(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
):
    if not call_sid:
        logger.warning("Status webhook without CallSid")
        return twiml(markup.render_empty())
    return twiml(await orchestrator.handle_status(call_sid, map_carrier_status(call_status)))
