# app/core/markup.py
"""
TwiML rendering for evaluator instructions.

One serializer per instruction kind; `render()` composes them into a single
<Response>. Every public function returns a complete, well-formed document,
including the fallback and "unavailable" paths.
"""
import logging
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import urlencode

from twilio.twiml.voice_response import VoiceResponse

from app.core.flow_engine import FALLBACK_MESSAGE, UNAVAILABLE_MESSAGE
from app.models.instructions import Gather, Hangup, Instruction, Pause, Record, Speak, Transfer

logger = logging.getLogger("ivr-flow-engine.core.markup")

CONTENT_TYPE = "application/xml"


class CallbackUrls:
    """Where the carrier should post back after a gather, dial or record.

    `waiting_at(node, step)` tags the input URL with the prompt it answers, so
    a late or retried callback for an earlier prompt can be recognized.
    """

    def __init__(self, base_url: Optional[str] = None, prefix: str = "/webhook",
                 node: Optional[str] = None, step: Optional[int] = None):
        self.base_url = base_url
        self.prefix = prefix
        root = (base_url or "").rstrip("/")
        self.input = f"{root}{prefix}/input"
        if node is not None:
            query = {"node": node} if step is None else {"node": node, "step": step}
            self.input = f"{self.input}?{urlencode(query)}"
        self.status = f"{root}{prefix}/status"

    def waiting_at(self, node: Optional[str], step: Optional[int]) -> "CallbackUrls":
        return CallbackUrls(self.base_url, self.prefix, node=node, step=step)


def _say_kwargs(voice: Optional[str], language: Optional[str]) -> Dict[str, str]:
    kwargs = {}
    if voice:
        kwargs["voice"] = voice
    if language:
        kwargs["language"] = language
    return kwargs


def serialize_speak(response: VoiceResponse, instruction: Speak, urls: CallbackUrls) -> None:
    if instruction.text:
        response.say(instruction.text, **_say_kwargs(instruction.voice, instruction.language))


def serialize_gather(response: VoiceResponse, instruction: Gather, urls: CallbackUrls) -> None:
    kwargs = {
        "input": instruction.input_mode,
        "action": urls.input,
        "method": "POST",
        "timeout": instruction.timeout,
        "action_on_empty_result": True,
    }
    if instruction.max_length:
        kwargs["num_digits"] = instruction.max_length
    if "speech" in instruction.input_mode:
        kwargs["speech_timeout"] = "auto"
        if instruction.language:
            kwargs["language"] = instruction.language
    gather = response.gather(**kwargs)
    if instruction.prompt:
        gather.say(instruction.prompt, **_say_kwargs(instruction.voice, instruction.language))


def serialize_transfer(response: VoiceResponse, instruction: Transfer, urls: CallbackUrls) -> None:
    response.dial(instruction.destination, action=urls.input, method="POST", timeout=instruction.timeout)


def serialize_record(response: VoiceResponse, instruction: Record, urls: CallbackUrls) -> None:
    response.record(
        action=urls.input,
        method="POST",
        max_length=instruction.max_length,
        timeout=instruction.timeout,
        play_beep=instruction.play_beep,
    )


def serialize_pause(response: VoiceResponse, instruction: Pause, urls: CallbackUrls) -> None:
    response.pause(length=instruction.length)


def serialize_hangup(response: VoiceResponse, instruction: Hangup, urls: CallbackUrls) -> None:
    response.hangup()


SERIALIZERS: Dict[type, Callable[[VoiceResponse, Instruction, CallbackUrls], None]] = {
    Speak: serialize_speak,
    Gather: serialize_gather,
    Transfer: serialize_transfer,
    Record: serialize_record,
    Pause: serialize_pause,
    Hangup: serialize_hangup,
}


def render(instructions: Iterable[Instruction], urls: Optional[CallbackUrls] = None) -> str:
    urls = urls or CallbackUrls()
    response = VoiceResponse()
    for instruction in instructions:
        serializer = SERIALIZERS.get(type(instruction))
        if serializer is None:
            # unknown instruction kinds are dropped rather than producing invalid markup
            logger.error("No TwiML serializer for %r", instruction)
            continue
        serializer(response, instruction, urls)
    return str(response)


def render_speak_hangup(text: str, voice: Optional[str] = None, language: Optional[str] = None) -> str:
    return render([Speak(text, voice, language), Hangup()])


def render_fallback(voice: Optional[str] = None, language: Optional[str] = None) -> str:
    return render_speak_hangup(FALLBACK_MESSAGE, voice, language)


def render_unavailable(voice: Optional[str] = None, language: Optional[str] = None) -> str:
    return render_speak_hangup(UNAVAILABLE_MESSAGE, voice, language)


def render_hangup() -> str:
    return render([Hangup()])


def render_empty() -> str:
    return str(VoiceResponse())
