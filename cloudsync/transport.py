from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Optional, Union
import logging
from confluent_kafka import Consumer, KafkaError, KafkaException
from cloudsync.errors import TransportError

logger = logging.getLogger(__name__)

@dataclass
class Envelope:
    value: Union[bytes, str, None]
    topic: str = ""
    partition: int = 0
    offset: int = -1
    key: Optional[bytes] = None
    raw: Any = field(default=None, repr=False)

    def text(self, limit: int = 500) -> str:
        v = self.value
        if isinstance(v, (bytes, bytearray)):
            v = v.decode("utf-8", errors="replace")
        v = "" if v is None else v
        return v if len(v) <= limit else v[:limit] + "..."

class KafkaTransport:
    def __init__(self, bootstrap: str, topic: str, group_id: str, poll_timeout: float = 1.0,
                 consumer: Optional[Consumer] = None):
        self.topic = topic
        self.group_id = group_id
        self.poll_timeout = poll_timeout
        self._consumer = consumer or Consumer({
            "bootstrap.servers": bootstrap,
            "group.id": group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        })
        self._consumer.subscribe([topic])
        self._closed = False
        logger.info("Subscribed to %s as group %s", topic, group_id)

    def receive(self) -> Optional[Envelope]:
        """Next envelope, or None when the poll timed out or hit a benign broker event."""
        try:
            msg = self._consumer.poll(self.poll_timeout)
        except KafkaException as e:
            raise TransportError(f"poll failed: {e}") from e
        if msg is None:
            return None

        err = msg.error()
        if err is not None:
            if err.code() == KafkaError._PARTITION_EOF:
                return None
            if err.fatal() or not err.retriable():
                raise TransportError(f"consumer error: {err}")
            logger.warning("Transient consumer error, continuing: %s", err)
            return None

        return Envelope(value=msg.value(), topic=msg.topic(), partition=msg.partition(),
                        offset=msg.offset(), key=msg.key(), raw=msg)

    def ack(self, envelope: Envelope) -> None:
        try:
            if envelope.raw is not None:
                self._consumer.commit(message=envelope.raw, asynchronous=False)
        except KafkaException as e:
            raise TransportError(f"commit failed at offset={envelope.offset}: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._consumer.close()
        logger.info("Consumer for %s closed", self.topic)

    def __enter__(self) -> "KafkaTransport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
