"""Gemini Live channel: session config, outbound audio/tool responses, and typed inbound events.

Inbound server messages are narrowed right here into a closed set of event
types so the session controller never touches raw SDK payloads.
"""
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from google import genai
from google.genai import types

from config import AUDIO_CONFIG, MODEL
from credentials import PROXY, Credentials
from models import Speaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptionDelta:
    speaker: Speaker
    text: str


@dataclass(frozen=True)
class AudioDelta:
    data: bytes


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class FunctionCall:
    id: Optional[str]
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallRequest:
    calls: Tuple[FunctionCall, ...]


@dataclass(frozen=True)
class ToolResponse:
    id: Optional[str]
    name: str
    response: Dict[str, Any]


LiveEvent = Union[TranscriptionDelta, AudioDelta, Interrupted, TurnComplete, ToolCallRequest]


def _plain(value):
    """Proto map/list composites from the SDK -> plain dicts and lists"""
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def parse_server_message(message: types.LiveServerMessage) -> List[LiveEvent]:
    """Split one server message into events, in the order the controller must apply them"""
    events: List[LiveEvent] = []
    content = message.server_content
    if content is not None:
        if content.input_transcription is not None and content.input_transcription.text:
            events.append(TranscriptionDelta(Speaker.USER, content.input_transcription.text))
        if content.output_transcription is not None and content.output_transcription.text:
            events.append(TranscriptionDelta(Speaker.MODEL, content.output_transcription.text))
        if content.model_turn is not None:
            for part in content.model_turn.parts or []:
                if part.inline_data is not None and part.inline_data.data:
                    events.append(AudioDelta(part.inline_data.data))
        if content.interrupted:
            events.append(Interrupted())
        if content.turn_complete:
            events.append(TurnComplete())

    if message.tool_call is not None and message.tool_call.function_calls:
        calls = tuple(
            FunctionCall(id=fc.id, name=fc.name or "", args=_plain(fc.args) if fc.args else {})
            for fc in message.tool_call.function_calls
        )
        events.append(ToolCallRequest(calls))
    return events


def build_live_config(system_instruction: str, tools: List[Dict[str, Any]], voice_name: str) -> Dict[str, Any]:
    return {
        "response_modalities": ["AUDIO"],
        "speech_config": {"voice_config": {"prebuilt_voice_config": {"voice_name": voice_name}}},
        "system_instruction": system_instruction,
        "tools": [{"function_declarations": tools}],
        "input_audio_transcription": {},
        "output_audio_transcription": {},
    }


def create_client(credentials: Credentials) -> genai.Client:
    if credentials.mode == PROXY:
        return genai.Client(http_options={"api_version": "v1beta", "base_url": credentials.proxy_url})
    return genai.Client(api_key=credentials.api_key, http_options={"api_version": "v1beta"})


class LiveConnection:
    """An open Gemini Live session"""

    def __init__(self, session, exit_stack: contextlib.AsyncExitStack):
        self.session = session
        self._exit_stack = exit_stack
        self.closing = False

    async def send_audio(self, pcm: bytes):
        await self.session.send_realtime_input(
            audio=types.Blob(data=pcm, mime_type=AUDIO_CONFIG["input_mime_type"])
        )

    async def send_tool_response(self, response: ToolResponse):
        await self.session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=response.id, name=response.name, response=response.response)
            ]
        )

    async def events(self) -> AsyncIterator[LiveEvent]:
        """Yield events until the server closes the channel"""
        while not self.closing:
            received = 0
            async for message in self.session.receive():
                received += 1
                for event in parse_server_message(message):
                    yield event
            if received == 0:
                return

    async def close(self):
        if self.closing:
            return
        self.closing = True
        await self._exit_stack.aclose()


async def connect(credentials: Credentials, config: Dict[str, Any], model: str = MODEL) -> LiveConnection:
    """Open the live channel; resolves once the server handshake completes"""
    client = create_client(credentials)
    stack = contextlib.AsyncExitStack()
    try:
        session = await stack.enter_async_context(client.aio.live.connect(model=model, config=config))
    except BaseException:
        await stack.aclose()
        raise
    logger.info("Gemini Live session connected")
    return LiveConnection(session, stack)
