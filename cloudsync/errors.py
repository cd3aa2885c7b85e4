from __future__ import annotations
from typing import Any, Optional

class CloudSyncError(Exception):
    pass

class TransportError(CloudSyncError):
    """Receiving from or committing to the log failed. Ends the consume loop."""

class DecodeError(CloudSyncError):
    reason = "decode"

class MalformedEnvelope(DecodeError):
    reason = "malformed"

class UnsupportedOperation(DecodeError):
    reason = "unsupported_operation"

    def __init__(self, op: Any):
        super().__init__(f"unsupported operation code: {op!r}")
        self.op = op

class InvalidRecord(DecodeError):
    reason = "invalid_record"

class ApplyError(CloudSyncError):
    def __init__(self, message: str, record_id: Optional[int] = None, operation: Optional[str] = None,
                 retriable: bool = True):
        super().__init__(message)
        self.record_id = record_id
        self.operation = operation
        self.retriable = retriable

class LatencyError(CloudSyncError):
    pass
