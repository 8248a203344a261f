"""
Stream emitter rendering a running job as server-sent chat completion chunks.

Three producers write to a stream: the job itself, a heartbeat ticker and a
one-shot deadline notice. They all go through one asyncio.Queue drained by a
single consumer, so chunks leave in the order they were enqueued.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set

from jimeng_api.core.config import settings
from jimeng_api.core.exceptions import JimengAPIException
from jimeng_api.schemas.openai import chunk_envelope

logger = logging.getLogger(__name__)

DONE_EVENT = "data: [DONE]\n\n"

STARTED_MESSAGE = "Generation started, please wait...\n"
HEARTBEAT_MESSAGE = "."
DEADLINE_MESSAGE = (
    "\n\nGeneration is taking longer than usual but is still running. "
    "This stream stays open until it finishes; you can also check your history "
    "at https://jimeng.jianying.com/ai-tool/generate\n"
)

# Keeps background jobs alive after their consumer goes away
_background_jobs: Set[asyncio.Task] = set()


@dataclass
class StreamChunk:
    """One unit of streamed output"""
    index: int
    content: str = ""
    role: str = "assistant"
    finish_reason: Optional[str] = None
    terminal: bool = False

    @classmethod
    def done(cls) -> "StreamChunk":
        return cls(index=0, terminal=True)

    def encode(self, chunk_id: str, model: str) -> str:
        if self.terminal:
            return DONE_EVENT
        body = chunk_envelope(chunk_id, model, self.index, self.content, self.finish_reason, self.role)
        return f"data: {json.dumps(body, ensure_ascii=False)}\n\n"


def render_error(exc: BaseException) -> str:
    """Readable final chunk text for a failed job"""
    message = exc.message if isinstance(exc, JimengAPIException) else str(exc)
    text = f"\n\nGeneration failed: {message}"
    history_id = getattr(exc, "history_id", None)
    if history_id:
        text += f"\n\nhistory_id: {history_id} (use it to find the result on the web app)"
    return text + "\n"


class StreamEmitter:
    """Runs a generation flow in the background and streams its lifecycle"""

    def __init__(
        self,
        model: str,
        heartbeat_interval: float = None,
        deadline: float = None,
        job_lifetime: float = None,
        started_message: str = STARTED_MESSAGE
    ):
        self.model = model
        self.heartbeat_interval = settings.STREAM_HEARTBEAT_INTERVAL if heartbeat_interval is None else heartbeat_interval
        self.deadline = settings.STREAM_DEADLINE if deadline is None else deadline
        self.job_lifetime = settings.STREAM_JOB_LIFETIME if job_lifetime is None else job_lifetime
        self.started_message = started_message
        self.chunk_id = str(uuid.uuid4())

    async def stream(
        self,
        flow: Callable[[], Awaitable[Any]],
        render: Callable[[Any], List[str]]
    ) -> AsyncIterator[str]:
        """Yield SSE events: started, heartbeats, final content, stop, [DONE]"""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(StreamChunk(index=0, content=self.started_message))

        timers = [
            asyncio.create_task(self._heartbeat(queue)),
            asyncio.create_task(self._deadline_notice(queue)),
        ]
        job = asyncio.create_task(self._run(flow, render, queue, timers))
        _background_jobs.add(job)
        job.add_done_callback(_background_jobs.discard)

        finished = False
        try:
            while True:
                chunk = await queue.get()
                yield chunk.encode(self.chunk_id, self.model)
                if chunk.terminal:
                    finished = True
                    break
        finally:
            if not finished:
                # Consumer went away; the job keeps running until its lifetime ends
                logger.info(f"Stream consumer for {self.model} disconnected, job continues in background")
                for timer in timers:
                    timer.cancel()

    async def _heartbeat(self, queue: asyncio.Queue):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            queue.put_nowait(StreamChunk(index=0, content=HEARTBEAT_MESSAGE))

    async def _deadline_notice(self, queue: asyncio.Queue):
        await asyncio.sleep(self.deadline)
        logger.warning(f"{self.model} job passed the {self.deadline}s stream deadline, still waiting")
        queue.put_nowait(StreamChunk(index=1, content=DEADLINE_MESSAGE))

    async def _run(
        self,
        flow: Callable[[], Awaitable[Any]],
        render: Callable[[Any], List[str]],
        queue: asyncio.Queue,
        timers: List[asyncio.Task]
    ):
        final: List[StreamChunk] = []
        try:
            result = await asyncio.wait_for(flow(), timeout=self.job_lifetime)
            final = [StreamChunk(index=1, content=content) for content in render(result)]
        except asyncio.TimeoutError:
            logger.error(f"{self.model} job exceeded its {self.job_lifetime}s lifetime")
            final = [StreamChunk(index=1, content=render_error(
                TimeoutError(f"no result after {self.job_lifetime:.0f}s")
            ))]
        except JimengAPIException as e:
            logger.error(f"Streamed {self.model} job failed: {e.message} (history_id={e.history_id})")
            final = [StreamChunk(index=1, content=render_error(e))]
        except Exception as e:
            logger.exception(f"Unexpected error in streamed {self.model} job")
            final = [StreamChunk(index=1, content=render_error(e))]
        finally:
            for timer in timers:
                timer.cancel()
            for chunk in final:
                queue.put_nowait(chunk)
            queue.put_nowait(StreamChunk(index=2, finish_reason="stop"))
            queue.put_nowait(StreamChunk.done())
