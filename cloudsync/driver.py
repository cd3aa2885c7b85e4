"""
Per-message control loop.

Each envelope moves through

    RECEIVED -> DECODED -> LATENCY_CHECKED -> APPLIED -> ACKNOWLEDGED

or stops at ABANDONED. Nothing a single envelope does can stop the loop; only a
TransportError ends it.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging, threading, time

from cloudsync.decoder import decode
from cloudsync.errors import ApplyError, DecodeError, TransportError, UnsupportedOperation
from cloudsync.latency import LatencyObserver
from cloudsync.models import ChangeEvent
from cloudsync.transport import Envelope

logger = logging.getLogger(__name__)

class MessageState(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    LATENCY_CHECKED = "latency_checked"
    APPLIED = "applied"
    ACKNOWLEDGED = "acknowledged"
    ABANDONED = "abandoned"

@dataclass
class MessageOutcome:
    state: MessageState
    event: Optional[ChangeEvent] = None
    rows_affected: Optional[int] = None
    error: Optional[Exception] = None
    write_dropped: bool = False

@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (self.multiplier ** (attempt - 1))

class Driver:
    def __init__(self, transport, sink, metrics, observer: Optional[LatencyObserver] = None,
                 dead_letter=None, retry: Optional[RetryPolicy] = None):
        self.transport = transport
        self.sink = sink
        self.metrics = metrics
        self.observer = observer or LatencyObserver(metrics)
        self.dead_letter = dead_letter
        self.retry = retry or RetryPolicy()
        self.counts: Dict[str, int] = {s.value: 0 for s in (MessageState.ACKNOWLEDGED, MessageState.ABANDONED)}
        self.counts["dropped_writes"] = 0

    # ------------------------------------------------------------------
    # one message
    # ------------------------------------------------------------------

    def process(self, envelope: Envelope) -> MessageOutcome:
        outcome = self._process(envelope)
        self.counts[outcome.state.value] = self.counts.get(outcome.state.value, 0) + 1
        if outcome.write_dropped:
            self.counts["dropped_writes"] += 1
        self.metrics.inc("cloudsync_messages_total", outcome=outcome.state.value)

        # abandoned envelopes advance the position too, or the loop would re-read them forever
        self.transport.ack(envelope)
        return outcome

    def _process(self, envelope: Envelope) -> MessageOutcome:
        logger.debug("Message received at offset=%s: %s", envelope.offset, envelope.text())

        try:
            event = decode(envelope.value)
        except UnsupportedOperation as e:
            logger.warning("Received unknown operation %r at offset=%s, skipping", e.op, envelope.offset)
            self.metrics.inc("cloudsync_unknown_operations_total", op=str(e.op))
            self._dead_letter(envelope, e.reason, str(e))
            return MessageOutcome(MessageState.ABANDONED, error=e)
        except DecodeError as e:
            logger.error("Abandoning envelope at %s[%s]@%s: %s", envelope.topic, envelope.partition, envelope.offset, e)
            self.metrics.inc("cloudsync_decode_errors_total", reason=e.reason)
            self._dead_letter(envelope, e.reason, str(e))
            return MessageOutcome(MessageState.ABANDONED, error=e)

        self._observe_latency(event, envelope)

        outcome = self._apply(event, envelope)
        if outcome.state == MessageState.APPLIED:
            outcome.state = MessageState.ACKNOWLEDGED
        logger.info("Processed op=%s for id=%s at offset=%s", event.operation.value, event.record_id, envelope.offset)
        return outcome

    def _observe_latency(self, event: ChangeEvent, envelope: Envelope) -> None:
        if event.source_ts_ms is None:
            return
        try:
            delay = self.observer.observe_ms(event.source_ts_ms)
            logger.debug("Propagation latency for offset=%s: %.3fs", envelope.offset, delay.total_seconds())
        except Exception as e:
            self.metrics.inc("cloudsync_latency_errors_total")
            logger.warning("Skipping latency observation at offset=%s: %s", envelope.offset, e)

    def _apply(self, event: ChangeEvent, envelope: Envelope) -> MessageOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                rows = self.sink.apply(event)
                return MessageOutcome(MessageState.APPLIED, event=event, rows_affected=rows)
            except ApplyError as e:
                if e.retriable and attempt < self.retry.max_attempts:
                    delay = self.retry.delay(attempt)
                    logger.warning("%s failed for id=%s (attempt %d/%d), retrying in %.2fs: %s",
                                   event.operation.label, event.record_id, attempt, self.retry.max_attempts, delay, e)
                    self.metrics.inc("cloudsync_apply_retries_total")
                    self.retry.sleep(delay)
                    continue

                # the message still counts as handled; the write is lost unless dead-lettered
                logger.error("%s dropped for id=%s after %d attempt(s): %s",
                             event.operation.label, event.record_id, attempt, e)
                self.metrics.inc("cloudsync_apply_errors_total", operation=event.operation.label)
                self._dead_letter(envelope, "apply_failed", str(e))
                return MessageOutcome(MessageState.APPLIED, event=event, error=e, write_dropped=True)
            except Exception as e:
                # errors the sink did not classify are never retried
                logger.exception("%s dropped for id=%s, unexpected sink error",
                                 event.operation.label, event.record_id)
                self.metrics.inc("cloudsync_apply_errors_total", operation=event.operation.label)
                self._dead_letter(envelope, "apply_failed", f"{type(e).__name__}: {e}")
                return MessageOutcome(MessageState.APPLIED, event=event, error=e, write_dropped=True)

    def _dead_letter(self, envelope: Envelope, reason: str, error: str) -> None:
        if self.dead_letter is None:
            return
        try:
            if self.dead_letter.publish(envelope, reason, error):
                self.metrics.inc("cloudsync_dead_letters_total", reason=reason)
        except Exception:
            logger.exception("Dead-letter publish raised for offset=%s", envelope.offset)

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    def run(self, max_messages: int = 0, stop: Optional[threading.Event] = None) -> Dict[str, Any]:
        processed = 0
        try:
            while not (stop is not None and stop.is_set()):
                envelope = self.transport.receive()
                if envelope is None:
                    continue
                self.process(envelope)
                processed += 1
                if max_messages and processed >= max_messages:
                    break
        except TransportError:
            logger.exception("Error in consumer loop, stopping")
            raise
        finally:
            self.transport.close()

        return {"processed": processed, **self.counts}
