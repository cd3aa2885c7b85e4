from __future__ import annotations
from typing import List, Optional
import logging
from confluent_kafka import Producer, KafkaException
from cloudsync.transport import Envelope

logger = logging.getLogger(__name__)

def _headers(envelope: Envelope, reason: str, error: str) -> List[tuple]:
    return [
        ("dlq_reason", reason.encode("utf-8")),
        ("dlq_error", error[:1000].encode("utf-8")),
        ("source_topic", str(envelope.topic).encode("utf-8")),
        ("source_partition", str(envelope.partition).encode("utf-8")),
        ("source_offset", str(envelope.offset).encode("utf-8")),
    ]

class KafkaDeadLetter:
    """Publishes envelopes the pipeline gave up on to a side topic, payload untouched."""

    def __init__(self, bootstrap: str, topic: str, producer: Optional[Producer] = None, flush_timeout: float = 10.0):
        self.topic = topic
        self.flush_timeout = flush_timeout
        self.producer = producer or Producer({"bootstrap.servers": bootstrap})

    def publish(self, envelope: Envelope, reason: str, error: str) -> bool:
        failed = []

        def delivery(err, msg):
            if err is not None:
                failed.append(err)

        try:
            self.producer.produce(
                topic=self.topic,
                key=envelope.key,
                value=envelope.value,
                headers=_headers(envelope, reason, error),
                callback=delivery,
            )
            remaining = self.producer.flush(self.flush_timeout)
        except (KafkaException, BufferError) as e:
            logger.error("Dead-letter publish failed for offset=%s: %s", envelope.offset, e)
            return False

        if failed or remaining:
            logger.error("Dead-letter delivery failed for offset=%s: %s", envelope.offset,
                         failed[0] if failed else "flush timed out")
            return False
        return True

    def close(self) -> None:
        self.producer.flush(self.flush_timeout)
