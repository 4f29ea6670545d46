# app/models/instructions.py
"""
Outbound instructions produced by the step evaluator.

These are carrier-neutral; `app.core.markup` turns a list of them into TwiML.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Speak:
    text: str
    voice: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class Gather:
    """Speak `prompt` while listening for speech/keypad input."""

    prompt: str
    voice: Optional[str] = None
    language: Optional[str] = None
    timeout: int = 5
    max_length: Optional[int] = None
    input_mode: str = "speech dtmf"


@dataclass(frozen=True)
class Transfer:
    destination: str
    timeout: int = 30


@dataclass(frozen=True)
class Record:
    max_length: int = 60
    timeout: int = 5
    play_beep: bool = True


@dataclass(frozen=True)
class Pause:
    length: int = 1


@dataclass(frozen=True)
class Hangup:
    pass


Instruction = Union[Speak, Gather, Transfer, Record, Pause, Hangup]
