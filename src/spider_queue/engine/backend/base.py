"""Launch settings for the external collection worker."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

JOB_PLACEHOLDER = "job"
PAYLOAD_PLACEHOLDER = "payload"


@dataclass(slots=True)
class WorkerCommand:
    """How to spawn the worker for a job run and for a validation check.

    ``command_template`` must contain ``{job}``, which receives the serialized
    job description as a single argv element; ``validate_template`` must
    contain ``{payload}``.
    """

    command_template: str
    validate_template: str
    cwd: Path | None = None
    extra_env: dict[str, str] = field(default_factory=dict)
    stop_grace_seconds: float = 2.0
    validate_timeout_seconds: float = 60.0
