"""
Streaming Adapter

Read-side projection of a job's event log into the frame protocol:

    {"type": "progress", "stage": ..., "percent": ..., "message": ...}
    {"type": "partial_result", "section": ..., "data": ...}
    {"type": "final_result", "status": ..., "result": ...} or "error" instead of "result"

The final_result frame always ends the stream. Frames follow the order in
which the runner wrote the events. Closing the stream early (consumer
disconnect) only drops the subscription; the job keeps running.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from jobex.errors import JobCancelledError
from jobex.jobs.models import JobStatus, PartialResult, ProgressEvent, StatusEvent
from jobex.jobs.registry import JobEvent, JobRegistry
from jobex.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    return str(value)


def encode_sse(frame: Dict[str, Any]) -> bytes:
    """Server-sent-events encoding of one frame"""
    return f"data: {json.dumps(frame, default=_json_default)}\n\n".encode('utf-8')


class StreamingAdapter:
    """
    Turns registry events for a job into ordered frames.

    Usage:
        adapter = StreamingAdapter(registry, artifact_store)

        async for frame in adapter.frames(job_id):
            send(frame)
    """

    def __init__(self, registry: JobRegistry, artifact_store: Optional[ArtifactStore] = None):
        self.registry = registry
        self.artifact_store = artifact_store

    async def frames(self, job_id: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Frames for a job from its first event to its final_result.

        Subscribing again later replays the whole log, so a client that
        reconnects sees the same sequence.

        Raises:
            NotFoundError: if the job is unknown
        """
        queue = await self.registry.subscribe(job_id)
        try:
            while True:
                event = await queue.get()
                frame = self.to_frame(event)
                if frame is None:
                    continue
                if 'result' in frame:
                    frame['result'] = await self._resolve(frame['result'])
                yield frame
                if frame['type'] == 'final_result':
                    return
        finally:
            self.registry.unsubscribe(job_id, queue)
            logger.debug(f"Stream for job {job_id} closed")

    async def sse(self, job_id: str) -> AsyncIterator[bytes]:
        """Frames encoded as server-sent events"""
        async for frame in self.frames(job_id):
            yield encode_sse(frame)

    def to_frame(self, event: JobEvent) -> Optional[Dict[str, Any]]:
        """
        Frame for an event, or None for events not exposed to consumers.

        Completed frames carry the artifact reference; frames() resolves it.
        """
        if isinstance(event, ProgressEvent):
            return {
                'type': 'progress',
                'stage': event.stage,
                'percent': event.percent,
                'message': event.message,
            }

        if isinstance(event, PartialResult):
            return {
                'type': 'partial_result',
                'section': event.section,
                'data': event.data,
            }

        if isinstance(event, StatusEvent) and event.status.is_terminal:
            frame = {'type': 'final_result', 'status': event.status.value}
            if event.status == JobStatus.COMPLETED:
                frame['result'] = event.result
            elif event.status == JobStatus.CANCELLED:
                frame['error'] = JobCancelledError().to_dict()
            else:
                frame['error'] = event.error
            return frame

        return None

    async def _resolve(self, reference: Any) -> Any:
        if self.artifact_store is None or not isinstance(reference, str):
            return reference
        artifact = await asyncio.to_thread(self.artifact_store.load, reference)
        if artifact is None:
            logger.warning(f"Artifact {reference} not found in store")
            return reference
        return {'reference': reference, **artifact}
