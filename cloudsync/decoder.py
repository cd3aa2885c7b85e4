"""
Turns a raw Debezium-style envelope into a ChangeEvent.

decode() is pure: it never logs, never touches the network, and either returns
a fully-formed event or raises a DecodeError subclass.
"""
from __future__ import annotations
from typing import Any, Dict, Union
import orjson
from pydantic import ValidationError
from cloudsync.errors import MalformedEnvelope, UnsupportedOperation, InvalidRecord
from cloudsync.models import ChangeEvent, Operation, Record

def _parse(raw: Union[str, bytes]) -> Dict[str, Any]:
    try:
        doc = orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError) as e:
        raise MalformedEnvelope(f"payload is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise MalformedEnvelope(f"expected a JSON object, got {type(doc).__name__}")

    # Converter with schemas.enable=true wraps the change in {"schema", "payload"}
    if "op" not in doc and isinstance(doc.get("payload"), dict):
        doc = doc["payload"]
    return doc

def _record(doc: Dict[str, Any], side: str) -> Record:
    data = doc.get(side)
    if not isinstance(data, dict):
        raise InvalidRecord(f"'{side}' must be an object, got {type(data).__name__}")
    try:
        return Record.model_validate(data)
    except ValidationError as e:
        raise InvalidRecord(f"invalid '{side}' record: {e.errors(include_url=False)}") from e

def _source_ts_ms(doc: Dict[str, Any]) -> Any:
    source = doc.get("source")
    if not isinstance(source, dict):
        return None
    return source.get("ts_ms")

def decode(raw: Union[str, bytes]) -> ChangeEvent:
    doc = _parse(raw)

    code = doc.get("op")
    op = Operation.from_code(code)
    if op == Operation.UNKNOWN:
        raise UnsupportedOperation(code)

    if op.is_upsert:
        return ChangeEvent(operation=op, after=_record(doc, "after"), source_ts_ms=_source_ts_ms(doc))
    return ChangeEvent(operation=op, before=_record(doc, "before"), source_ts_ms=_source_ts_ms(doc))
