from __future__ import annotations
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

class Operation(str, Enum):
    CREATE = "c"
    UPDATE = "u"
    DELETE = "d"
    UNKNOWN = "?"

    @classmethod
    def from_code(cls, code: Any) -> "Operation":
        for op in (cls.CREATE, cls.UPDATE, cls.DELETE):
            if code == op.value:
                return op
        return cls.UNKNOWN

    @property
    def is_upsert(self) -> bool:
        return self in (Operation.CREATE, Operation.UPDATE)

    @property
    def label(self) -> str:
        return self.name.lower()

class Record(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    # destination id column is a 32-bit INTEGER
    id: int = Field(ge=-2**31, le=2**31 - 1)
    name: Optional[str] = None
    description: Optional[str] = None

class ChangeEvent(BaseModel):
    operation: Operation
    before: Optional[Record] = None
    after: Optional[Record] = None
    # source.ts_ms exactly as delivered; converted when latency is observed
    source_ts_ms: Optional[Any] = None

    @property
    def record(self) -> Record:
        """The side of the change that identifies the destination row."""
        rec = self.before if self.operation == Operation.DELETE else self.after
        if rec is None:
            raise ValueError(f"{self.operation.label} event carries no record")
        return rec

    @property
    def record_id(self) -> int:
        return self.record.id

