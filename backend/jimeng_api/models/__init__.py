from .generation import (
    GenerationJob, JobKind, JobStatus, ReferenceAsset, ReferenceRole,
    UploadTicket, TERMINAL_STATUSES
)
