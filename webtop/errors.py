"""Error kinds raised by pipeline jobs.

Every job-level failure is one of these (or an unexpected exception). The
scheduler catches them at the job boundary and records ``kind`` in the job
status so dashboards can tell a lagging cascade from a broken store.
"""

from __future__ import annotations

from datetime import datetime


class WebtopError(Exception):
    """Base class for pipeline errors."""

    kind = "WebtopError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RefreshLagExceeded(WebtopError):
    """A consumer level asked for data its upstream has not settled yet."""

    kind = "RefreshLagExceeded"

    def __init__(
        self,
        level: str,
        upstream: str,
        requested_until: datetime | None = None,
        settled_until: datetime | None = None,
    ) -> None:
        self.level = level
        self.upstream = upstream
        self.requested_until = requested_until
        self.settled_until = settled_until
        if settled_until is None:
            message = f"{level}: upstream '{upstream}' has not settled any window yet"
        else:
            message = (
                f"{level}: requested data until {requested_until} but upstream "
                f"'{upstream}' is only settled until {settled_until}"
            )
        super().__init__(message)


class MergeConflict(WebtopError):
    """A concurrent mutation was detected inside an atomic upsert."""

    kind = "MergeConflict"


class ConfigMissing(WebtopError):
    """No pipeline settings record exists in the store."""

    kind = "ConfigMissing"

    def __init__(self, message: str = "no pipeline settings record present") -> None:
        super().__init__(message)


class StoreUnavailable(WebtopError):
    """Transient I/O failure talking to the store."""

    kind = "StoreUnavailable"


def error_kind(exc: BaseException) -> str:
    """Return the error kind used in job status records."""
    if isinstance(exc, WebtopError):
        return exc.kind
    return type(exc).__name__
