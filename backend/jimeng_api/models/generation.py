"""
In-memory domain types for generation jobs
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class JobKind(str, enum.Enum):
    """What a generation job produces"""
    IMAGE = "image"
    VIDEO = "video"


class JobStatus(str, enum.Enum):
    """Lifecycle of a generation job"""
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT})


class ReferenceRole(str, enum.Enum):
    """Position of a reference asset in the draft"""
    PRIMARY = "primary"  # first frame / first blend input
    SECONDARY = "secondary"  # last frame / further blend inputs


@dataclass
class ReferenceAsset:
    """A caller-supplied image to upload before generation"""
    source: str
    role: ReferenceRole = ReferenceRole.PRIMARY
    uri: Optional[str] = None
    width: int = 0
    height: int = 0

    @property
    def is_inline(self) -> bool:
        return self.source.startswith("data:")

    @property
    def is_uploaded(self) -> bool:
        return bool(self.uri)


@dataclass
class UploadTicket:
    """Short-lived storage credentials for a single upload"""
    access_key_id: str
    secret_access_key: str
    session_token: str
    service_id: str
    session_key: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any], default_service_id: str) -> "UploadTicket":
        return cls(
            access_key_id=data.get("access_key_id") or "",
            secret_access_key=data.get("secret_access_key") or "",
            session_token=data.get("session_token") or "",
            service_id=data.get("service_id") or default_service_id,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.session_token)


@dataclass
class GenerationJob:
    """A submitted generation tracked by its upstream history record id"""
    kind: JobKind
    model: str
    prompt: str
    width: int = 1024
    height: int = 1024
    references: List[ReferenceAsset] = field(default_factory=list)
    history_id: Optional[str] = None
    status: JobStatus = JobStatus.SUBMITTED
    result_urls: List[str] = field(default_factory=list)
    fail_code: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
