from __future__ import annotations


class PermanentJobError(RuntimeError):
    """Fail the job now; retrying cannot help (bad payload, revoked credentials)."""


class JobConflictError(RuntimeError):
    pass
