"""
Job poll engine.

The upstream service has no callbacks: a submitted draft returns a history
record id which is then queried until the record reaches a terminal status.
The response shape drifts between endpoints and releases, so both the record
location and the asset location are ordered lists of extractors.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from jimeng_api.core.config import Settings, settings
from jimeng_api.core.exceptions import (
    AssetExtractionFailed,
    ContentFiltered,
    GenerationFailed,
    NoRecordId,
    RecordMissing,
    TimedOut,
    UpstreamCallFailed,
)
from jimeng_api.core.http_client import UpstreamClient
from jimeng_api.models.generation import GenerationJob, JobKind, JobStatus

logger = logging.getLogger(__name__)

GENERATE_URI = "/mweb/v1/aigc_draft/generate"
HISTORY_BY_IDS_URI = "/mweb/v1/get_history_by_ids"
HISTORY_RECORDS_URI = "/mweb/v1/get_history_records"

STATUS_PROCESSING = 20
STATUS_FAILED = 30
STATUS_COMPLETE = frozenset({10, 50})

FAIL_CODE_CONTENT_FILTERED = "2038"

VIDEO_URL_PATTERN = re.compile(r'https://v[0-9]+-artist\.vlabvod\.com/[^"\s]+')

IMAGE_INFO = {
    "width": 2048,
    "height": 2048,
    "format": "webp",
    "image_scene_list": [
        {"scene": "normal", "width": 2400, "height": 2400, "uniq_key": "2400", "format": "webp"},
        {"scene": "normal", "width": 1080, "height": 1080, "uniq_key": "1080", "format": "webp"},
        {"scene": "normal", "width": 720, "height": 720, "uniq_key": "720", "format": "webp"},
    ],
}

Path = Tuple[Any, ...]
RecordExtractor = Callable[[Any, str], Optional[Dict[str, Any]]]


def dig(data: Any, path: Path) -> Any:
    """Follow a path of dict keys and list indexes, None when any step is missing"""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def _record_by_id(data: Any, history_id: str) -> Optional[Dict[str, Any]]:
    return dig(data, (history_id,))


def _first_history(data: Any, history_id: str) -> Optional[Dict[str, Any]]:
    return dig(data, ("history_list", 0))


def _first_record(data: Any, history_id: str) -> Optional[Dict[str, Any]]:
    return dig(data, ("history_records", 0))


RECORD_EXTRACTORS: Sequence[RecordExtractor] = (_record_by_id, _first_history, _first_record)

IMAGE_URL_PATHS: Sequence[Path] = (
    ("image", "large_images", 0, "image_url"),
    ("common_attr", "cover_url"),
)

VIDEO_URL_PATHS: Sequence[Path] = (
    ("video", "transcoded_video", "origin", "video_url"),
    ("video", "play_url"),
    ("video", "download_url"),
    ("video", "url"),
)


def locate_record(data: Any, history_id: str) -> Optional[Dict[str, Any]]:
    for extractor in RECORD_EXTRACTORS:
        record = extractor(data, history_id)
        if isinstance(record, dict):
            return record
    return None


def first_url(item: Any, paths: Sequence[Path]) -> Optional[str]:
    for path in paths:
        value = dig(item, path)
        if isinstance(value, str) and value:
            return value
    return None


def extract_result_urls(kind: JobKind, items: List[Any], history_id: str = None) -> List[str]:
    """Pull asset URLs out of a completed record's item list"""
    if kind == JobKind.VIDEO:
        url = first_url(items[0], VIDEO_URL_PATHS) if items else None
        urls = [url] if url else []
    else:
        urls = [url for url in (first_url(item, IMAGE_URL_PATHS) for item in items) if url]

    if not urls:
        logger.error(f"No asset URL in item list: {json.dumps(items)[:500]}")
        raise AssetExtractionFailed(
            f"Generation finished but no {kind.value} URL was found (history_id={history_id})",
            history_id=history_id
        )
    return urls


@dataclass(frozen=True)
class PollPolicy:
    """Attempt budget and adaptive delays for one kind of job"""
    max_attempts: int
    base_delay: float
    processing_step: float
    processing_cap: int
    missing_delay_cap: float = 30.0
    alternate_after: int = 10
    initial_delay: float = 0.0
    asset_url_pattern: Optional[Pattern] = None

    def delay(self, attempt: int, record_seen: bool) -> float:
        if not record_seen:
            return min(self.base_delay * (attempt + 1), self.missing_delay_cap)
        return self.processing_step * min(attempt + 1, self.processing_cap)

    def use_alternate(self, attempt: int) -> bool:
        return attempt >= self.alternate_after and attempt % 2 == 1

    @classmethod
    def for_kind(cls, kind: JobKind, config: Settings = None) -> "PollPolicy":
        config = config or settings
        if kind == JobKind.VIDEO:
            return cls(
                max_attempts=config.VIDEO_POLL_MAX_ATTEMPTS,
                base_delay=config.VIDEO_POLL_BASE_DELAY,
                processing_step=config.VIDEO_POLL_PROCESSING_STEP,
                processing_cap=config.VIDEO_POLL_PROCESSING_CAP,
                missing_delay_cap=config.POLL_MISSING_DELAY_CAP,
                alternate_after=config.POLL_ALTERNATE_AFTER,
                initial_delay=config.VIDEO_POLL_INITIAL_DELAY,
                asset_url_pattern=VIDEO_URL_PATTERN,
            )
        return cls(
            max_attempts=config.IMAGE_POLL_MAX_ATTEMPTS,
            base_delay=config.IMAGE_POLL_BASE_DELAY,
            processing_step=config.IMAGE_POLL_PROCESSING_STEP,
            processing_cap=config.IMAGE_POLL_PROCESSING_CAP,
            missing_delay_cap=config.POLL_MISSING_DELAY_CAP,
            alternate_after=config.POLL_ALTERNATE_AFTER,
        )


class JobPoller:
    """Submits a draft and drives the job to a terminal status"""

    def __init__(self, client: UpstreamClient, token: str, policy: PollPolicy, sleep=asyncio.sleep):
        self.client = client
        self.token = token
        self.policy = policy
        self._sleep = sleep

    async def run(self, job: GenerationJob, draft: Dict[str, Any]) -> GenerationJob:
        await self.submit(job, draft)
        return await self.wait(job)

    async def submit(self, job: GenerationJob, draft: Dict[str, Any]) -> GenerationJob:
        result = await self.client.request(
            "POST",
            GENERATE_URI,
            self.token,
            params=draft.get("params"),
            data=draft["data"]
        )
        history_id = dig(result, ("aigc_data", "history_record_id"))
        if not history_id:
            raise NoRecordId(f"Upstream returned no history record id: {json.dumps(result)[:300]}")

        job.history_id = str(history_id)
        job.status = JobStatus.SUBMITTED
        logger.info(f"{job.kind.value} job submitted: history_id={job.history_id}, model={job.model}")
        return job

    async def wait(self, job: GenerationJob) -> GenerationJob:
        """Poll until success, failure or the attempt budget runs out"""
        policy = self.policy
        record_seen = False

        if policy.initial_delay:
            await self._sleep(policy.initial_delay)

        for attempt in range(policy.max_attempts):
            job.attempts = attempt + 1
            await self._sleep(policy.delay(attempt, record_seen))

            try:
                data = await self._query(job, policy.use_alternate(attempt))
            except UpstreamCallFailed as e:
                if not e.transient:
                    raise
                logger.warning(f"Status query {job.attempts}/{policy.max_attempts} failed for {job.history_id}: {e.message}")
                continue

            urls = self._match_raw(data)
            if urls:
                logger.info(f"Asset URL found in raw response for {job.history_id}")
                job.result_urls = urls
                job.status = JobStatus.SUCCEEDED
                return job

            record = locate_record(data, job.history_id)
            if record is None:
                logger.debug(f"History record {job.history_id} not found yet (attempt {job.attempts})")
                continue

            record_seen = True
            self._classify(job, record)
            if job.is_terminal:
                return job

            if job.attempts % 10 == 0:
                logger.info(
                    f"Job {job.history_id} still processing: attempt {job.attempts}/{policy.max_attempts}, "
                    f"status={record.get('status')}"
                )

        if record_seen:
            job.status = JobStatus.TIMED_OUT
            raise TimedOut(
                f"Generation still running after {policy.max_attempts} status checks; "
                f"look up history_id {job.history_id} on the web app later",
                history_id=job.history_id
            )
        job.status = JobStatus.FAILED
        raise RecordMissing(
            f"History record {job.history_id} never appeared after {policy.max_attempts} status checks",
            history_id=job.history_id
        )

    def _classify(self, job: GenerationJob, record: Dict[str, Any]):
        """Apply a record's status to the job, raising when it failed"""
        status = record.get("status")
        fail_code = record.get("fail_code")
        items = record.get("item_list") or []

        if status == STATUS_FAILED:
            job.status = JobStatus.FAILED
            job.fail_code = str(fail_code) if fail_code is not None else None
            if job.fail_code == FAIL_CODE_CONTENT_FILTERED:
                raise ContentFiltered(
                    "Prompt or result was blocked by the content filter",
                    history_id=job.history_id,
                    fail_code=job.fail_code
                )
            raise GenerationFailed(
                f"Generation failed with fail_code={job.fail_code}",
                history_id=job.history_id,
                fail_code=job.fail_code
            )

        # A completed record can report before its items are attached
        if status in STATUS_COMPLETE and items:
            job.result_urls = extract_result_urls(job.kind, items, job.history_id)
            job.status = JobStatus.SUCCEEDED
            logger.info(f"Job {job.history_id} finished with {len(job.result_urls)} asset(s)")
            return

        job.status = JobStatus.PROCESSING

    async def _query(self, job: GenerationJob, alternate: bool) -> Any:
        if alternate:
            return await self.client.request(
                "POST",
                HISTORY_RECORDS_URI,
                self.token,
                data={"history_record_ids": [job.history_id]}
            )

        data: Dict[str, Any] = {"history_ids": [job.history_id]}
        if job.kind == JobKind.IMAGE:
            data["image_info"] = IMAGE_INFO
            data["http_common_info"] = {"aid": int(self.client.identity.assistant_id)}
        return await self.client.request("POST", HISTORY_BY_IDS_URI, self.token, data=data)

    def _match_raw(self, data: Any) -> List[str]:
        if self.policy.asset_url_pattern is None or data is None:
            return []
        match = self.policy.asset_url_pattern.search(json.dumps(data, ensure_ascii=False))
        return [match.group(0)] if match else []
