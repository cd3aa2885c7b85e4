import pytest
from confluent_kafka import KafkaError, KafkaException
from cloudsync.errors import TransportError
from cloudsync.transport import Envelope, KafkaTransport

class FakeError:
    def __init__(self, code=KafkaError._TRANSPORT, fatal=False, retriable=False):
        self._code, self._fatal, self._retriable = code, fatal, retriable

    def code(self):
        return self._code

    def fatal(self):
        return self._fatal

    def retriable(self):
        return self._retriable

class FakeMessage:
    def __init__(self, value=b"{}", offset=0, error=None):
        self._value, self._offset, self._error = value, offset, error

    def error(self):
        return self._error

    def value(self):
        return self._value

    def key(self):
        return b"k"

    def topic(self):
        return "t"

    def partition(self):
        return 0

    def offset(self):
        return self._offset

class FakeConsumer:
    def __init__(self, messages=(), commit_error=None):
        self.messages = list(messages)
        self.subscribed = None
        self.committed = []
        self.closed = 0
        self.commit_error = commit_error

    def subscribe(self, topics):
        self.subscribed = topics

    def poll(self, timeout):
        item = self.messages.pop(0) if self.messages else None
        if isinstance(item, Exception):
            raise item
        return item

    def commit(self, message=None, asynchronous=True):
        if self.commit_error:
            raise self.commit_error
        self.committed.append((message.offset(), asynchronous))

    def close(self):
        self.closed += 1

def _transport(consumer):
    return KafkaTransport("kafka:9092", "t", "g", poll_timeout=0.01, consumer=consumer)

def test_receive_wraps_message_and_ack_commits_synchronously():
    consumer = FakeConsumer([FakeMessage(b'{"op":"c"}', offset=42)])
    tr = _transport(consumer)
    assert consumer.subscribed == ["t"]

    env = tr.receive()
    assert env.value == b'{"op":"c"}'
    assert (env.topic, env.partition, env.offset, env.key) == ("t", 0, 42, b"k")

    tr.ack(env)
    assert consumer.committed == [(42, False)]

def test_poll_timeout_returns_none():
    assert _transport(FakeConsumer()).receive() is None

def test_partition_eof_and_retriable_errors_are_skipped():
    consumer = FakeConsumer([
        FakeMessage(error=FakeError(code=KafkaError._PARTITION_EOF)),
        FakeMessage(error=FakeError(retriable=True)),
    ])
    tr = _transport(consumer)
    assert tr.receive() is None
    assert tr.receive() is None

@pytest.mark.parametrize("err", [FakeError(fatal=True), FakeError(retriable=False)])
def test_fatal_consumer_error_raises(err):
    tr = _transport(FakeConsumer([FakeMessage(error=err)]))
    with pytest.raises(TransportError):
        tr.receive()

def test_poll_exception_raises_transport_error():
    tr = _transport(FakeConsumer([KafkaException(KafkaError(KafkaError._TRANSPORT))]))
    with pytest.raises(TransportError):
        tr.receive()

def test_commit_failure_raises_transport_error():
    consumer = FakeConsumer([FakeMessage()], commit_error=KafkaException(KafkaError(KafkaError._TRANSPORT)))
    tr = _transport(consumer)
    with pytest.raises(TransportError):
        tr.ack(tr.receive())

def test_close_is_idempotent_and_context_managed():
    consumer = FakeConsumer()
    with _transport(consumer) as tr:
        pass
    tr.close()
    assert consumer.closed == 1

def test_envelope_text_truncates_and_tolerates_bad_bytes():
    env = Envelope(value=b"\xff" + b"a" * 600)
    out = env.text(limit=10)
    assert out.endswith("...")
    assert len(out) == 13
    assert Envelope(value=None).text() == ""
