import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, Union

import numpy as np
import pyaudio

from config import AUDIO_CONFIG
from errors import PermissionDeniedError, UnsupportedEnvironmentError

logger = logging.getLogger(__name__)

SEND_SAMPLE_RATE = AUDIO_CONFIG["send_sample_rate"]
RECEIVE_SAMPLE_RATE = AUDIO_CONFIG["receive_sample_rate"]
CHANNELS = AUDIO_CONFIG["channels"]
BLOCK_SIZE = AUDIO_CONFIG["block_size"]
MAX_READ_FAILURES = 5
INT16_MAX = 0x7FFF


def float_to_pcm16(samples) -> bytes:
    """Convert float samples in [-1, 1] to little-endian signed 16-bit PCM"""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clipped * INT16_MAX).astype("<i2").tobytes()


def pcm16_duration(pcm: bytes, sample_rate: int = RECEIVE_SAMPLE_RATE, channels: int = CHANNELS) -> float:
    return len(pcm) / (2 * channels * sample_rate)


def decode(data: Union[str, bytes]) -> bytes:
    """Inline audio arrives base64-encoded on the wire; the SDK may already hand us raw bytes"""
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)


def _release_stream(stream, label: str):
    try:
        stream.stop_stream()
        stream.close()
    except (IOError, OSError) as e:
        logger.warning("Closing %s stream failed: %s", label, e)


def has_microphone(pya: Optional[pyaudio.PyAudio] = None) -> bool:
    pya = pya or pyaudio.PyAudio()
    try:
        pya.get_default_input_device_info()
    except (IOError, OSError):
        return False
    return True


class MicrophoneCapture:
    """Reads float blocks from the default input device and hands PCM16 frames to on_frame in capture order"""

    def __init__(
        self,
        on_frame: Callable[[bytes], Awaitable[None]],
        on_lost: Optional[Callable[[], Awaitable[None]]] = None,
        pya: Optional[pyaudio.PyAudio] = None,
        rate: int = SEND_SAMPLE_RATE,
        block_size: int = BLOCK_SIZE,
    ):
        self.on_frame = on_frame
        self.on_lost = on_lost
        self.pya = pya or pyaudio.PyAudio()
        self.rate = rate
        self.block_size = block_size
        self.audio_stream = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    async def open(self):
        """Acquire the microphone; the device stays held until close()"""
        if not has_microphone(self.pya):
            raise UnsupportedEnvironmentError()
        mic_info = self.pya.get_default_input_device_info()
        try:
            stream = await asyncio.to_thread(
                self.pya.open,
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.rate,
                input=True,
                input_device_index=mic_info["index"],
                frames_per_buffer=self.block_size,
            )
        except (IOError, OSError) as e:
            logger.error("Microphone open failed: %s", e)
            raise PermissionDeniedError() from e
        if self._closed:
            # close() ran while the device was opening
            _release_stream(stream, "microphone")
            return
        self.audio_stream = stream

    def start(self):
        if self._task is None and self.audio_stream is not None and not self._closed:
            self._task = asyncio.create_task(self._read_loop(), name="mic_capture")

    async def _read_loop(self):
        failures = 0
        while not self._closed:
            try:
                data = await asyncio.to_thread(self.audio_stream.read, self.block_size, exception_on_overflow=False)
            except (IOError, OSError) as e:
                if self._closed:
                    break
                failures += 1
                logger.warning("Microphone read failed (%d/%d): %s", failures, MAX_READ_FAILURES, e)
                if failures >= MAX_READ_FAILURES:
                    logger.error("Microphone lost; stopping capture")
                    if self.on_lost is not None:
                        await self.on_lost()
                    break
                continue
            failures = 0
            await self.process_block(np.frombuffer(data, dtype=np.float32))

    async def process_block(self, samples):
        """Convert one captured block and forward it; failures are logged so the loop keeps running"""
        if self._closed:
            return
        try:
            await self.on_frame(float_to_pcm16(samples))
        except Exception as e:
            logger.warning("Audio processing failed: %s", e)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Capture task ended with error: %s", e)
        self._task = None
        if self.audio_stream is not None:
            _release_stream(self.audio_stream, "microphone")
            self.audio_stream = None


@dataclass(eq=False)
class ScheduledChunk:
    pcm: bytes
    start_time: float
    duration: float
    stopped: bool = False
    ended: bool = False

    def stop(self):
        self.stopped = True


class AudioPlayback:
    """Schedules 24 kHz PCM chunks back-to-back on a virtual output clock"""

    def __init__(
        self,
        pya: Optional[pyaudio.PyAudio] = None,
        rate: int = RECEIVE_SAMPLE_RATE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pya = pya
        self.rate = rate
        self.clock = clock
        self.origin = clock()
        self.next_start_time = 0.0
        self.sources: Set[ScheduledChunk] = set()
        self.stream = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def current_time(self) -> float:
        return self.clock() - self.origin

    async def open(self):
        pya = self.pya or pyaudio.PyAudio()
        stream = await asyncio.to_thread(
            pya.open,
            format=pyaudio.paInt16,
            channels=CHANNELS,
            rate=self.rate,
            output=True,
        )
        if self._closed:
            _release_stream(stream, "output")
            return
        self.stream = stream
        self._task = asyncio.create_task(self._play_loop(), name="audio_playback")

    def enqueue(self, data: Union[str, bytes]) -> Optional[ScheduledChunk]:
        if self._closed:
            return None
        pcm = decode(data)
        if not pcm:
            return None
        start = max(self.next_start_time, self.current_time)
        chunk = ScheduledChunk(pcm=pcm, start_time=start, duration=pcm16_duration(pcm, self.rate))
        self.next_start_time = start + chunk.duration
        self.sources.add(chunk)
        self._queue.put_nowait(chunk)
        return chunk

    def finish(self, chunk: ScheduledChunk):
        chunk.ended = True
        self.sources.discard(chunk)

    def interrupt(self):
        """Barge-in: stop everything scheduled and rewind the clock"""
        for chunk in self.sources:
            chunk.stop()
        self.sources.clear()
        self.next_start_time = 0.0
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _play_loop(self):
        while True:
            chunk = await self._queue.get()
            if chunk.stopped:
                continue
            delay = chunk.start_time - self.current_time
            if delay > 0:
                await asyncio.sleep(delay)
            if not chunk.stopped:
                try:
                    await asyncio.to_thread(self.stream.write, chunk.pcm)
                except (IOError, OSError) as e:
                    logger.warning("Audio playback error: %s", e)
            self.finish(chunk)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.interrupt()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self.stream is not None:
            _release_stream(self.stream, "output")
            self.stream = None
