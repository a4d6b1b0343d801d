from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from config import TERMINATION_TOKEN
from models import Message, Speaker


@dataclass
class TurnResult:
    messages: List[Message] = field(default_factory=list)
    terminated: bool = False

    @property
    def model_text(self) -> str:
        for message in self.messages:
            if message.speaker == Speaker.MODEL:
                return message.text
        return ""


class TurnAccumulator:
    """Concatenates transcription deltas per speaker until the turn completes.

    on_update fires with the whole buffer after every delta (live captions);
    complete_turn() is the only place a turn is finalized.
    """

    def __init__(self, on_update: Optional[Callable[[Speaker, str], None]] = None, termination_token: str = TERMINATION_TOKEN):
        self.on_update = on_update
        self.termination_token = termination_token
        self.buffers: Dict[Speaker, str] = {Speaker.USER: "", Speaker.MODEL: ""}

    def append(self, speaker: Speaker, text: str) -> str:
        self.buffers[speaker] += text
        if self.on_update:
            self.on_update(speaker, self.buffers[speaker])
        return self.buffers[speaker]

    def complete_turn(self) -> TurnResult:
        try:
            if self.termination_token in self.buffers[Speaker.MODEL]:
                return TurnResult(terminated=True)
            result = TurnResult()
            for speaker in (Speaker.USER, Speaker.MODEL):
                text = self.buffers[speaker]
                if text.strip():
                    result.messages.append(Message(speaker=speaker, text=text))
            return result
        finally:
            self.reset()

    def reset(self):
        self.buffers = {Speaker.USER: "", Speaker.MODEL: ""}
