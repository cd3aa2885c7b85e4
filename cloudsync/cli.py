from __future__ import annotations
import argparse, logging, signal, sys, threading, time
import orjson
from cloudsync.config import settings, Settings
from cloudsync.errors import TransportError

logger = logging.getLogger("cloudsync")

def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

def _serve_metrics(app, port: int) -> threading.Thread:
    import uvicorn
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    t = threading.Thread(target=server.run, name="metrics-server", daemon=True)
    t.start()
    return t

def cmd_run(args):
    from cloudsync.api import create_app
    from cloudsync.driver import Driver, RetryPolicy
    from cloudsync.latency import LatencyObserver
    from cloudsync.metrics import PipelineMetrics
    from cloudsync.sinks.dead_letter import KafkaDeadLetter
    from cloudsync.sinks.postgres_sink import PostgresSink
    from cloudsync.transport import KafkaTransport

    s = Settings(
        kafka_bootstrap=args.kafka_bootstrap,
        database_url=args.database_url,
        topic=args.topic,
        group_prefix=args.group_prefix,
        group_ephemeral=args.ephemeral_group,
        dest_table=args.dest_table,
        db_pool_size=settings.db_pool_size,
        apply_max_attempts=args.max_attempts,
        apply_retry_backoff_seconds=settings.apply_retry_backoff_seconds,
        dead_letter_topic=args.dead_letter_topic,
        poll_timeout_seconds=settings.poll_timeout_seconds,
        metrics_port=args.metrics_port,
        log_level=args.log_level,
    )
    _configure_logging(s.log_level)
    logger.info("Using bootstrap servers: %s", s.kafka_bootstrap)

    metrics = PipelineMetrics()
    sink = PostgresSink(s.database_url, table=s.dest_table, metrics=metrics, pool_size=s.db_pool_size)
    dead_letter = KafkaDeadLetter(s.kafka_bootstrap, s.dead_letter_topic) if s.dead_letter_topic else None
    transport = KafkaTransport(s.kafka_bootstrap, s.topic, s.group_id(), poll_timeout=s.poll_timeout_seconds)
    driver = Driver(
        transport=transport,
        sink=sink,
        metrics=metrics,
        observer=LatencyObserver(metrics),
        dead_letter=dead_letter,
        retry=RetryPolicy(max_attempts=s.apply_max_attempts, backoff_seconds=s.apply_retry_backoff_seconds),
    )

    if s.metrics_port:
        _serve_metrics(create_app(metrics, driver), s.metrics_port)
        logger.info("Metrics on :%s/metrics", s.metrics_port)

    stop = threading.Event()

    def _signal_handler(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        res = driver.run(max_messages=args.max_messages, stop=stop)
    except TransportError:
        return 1
    finally:
        if dead_letter is not None:
            dead_letter.close()
        sink.close()
    print(res)
    return 0

def cmd_init_db(args):
    from cloudsync.db import init_db, make_engine
    engine = make_engine(args.database_url)
    init_db(engine, args.dest_table)
    print({"initialized": args.dest_table})
    return 0

def _now_ms() -> int:
    return int(time.time() * 1000)

def _sample_envelopes(count: int):
    for i in range(1, count + 1):
        row = {"id": i, "name": f"item-{i}", "description": "created by cloudsync produce"}
        yield {"op": "c", "before": None, "after": row, "source": {"ts_ms": _now_ms()}}
        yield {"op": "u", "before": None, "after": {**row, "name": f"item-{i}-v2"}, "source": {"ts_ms": _now_ms()}}
        if i % 3 == 0:
            yield {"op": "d", "before": {"id": i, "name": None, "description": None}, "after": None,
                   "source": {"ts_ms": _now_ms()}}

def cmd_produce(args):
    from confluent_kafka import Producer
    producer = Producer({"bootstrap.servers": args.kafka_bootstrap})
    errors = 0

    def delivery(err, msg):
        nonlocal errors
        if err is not None:
            errors += 1

    sent = 0
    for env in _sample_envelopes(args.count):
        key = orjson.dumps({"id": (env["after"] or env["before"])["id"]})
        producer.produce(topic=args.topic, key=key, value=orjson.dumps(env), callback=delivery)
        producer.poll(0)
        sent += 1
    producer.flush()
    print({"published": sent, "errors": errors})
    return 0 if errors == 0 else 1

def cmd_query(args):
    from cloudsync.sinks.postgres_sink import PostgresSink
    sink = PostgresSink(args.database_url, table=args.dest_table)
    try:
        for row in sink.rows(limit=args.limit):
            print(row)
    finally:
        sink.close()
    return 0

def main(argv=None) -> int:
    p = argparse.ArgumentParser(prog="cloudsync")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run")
    r.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    r.add_argument("--database-url", default=settings.database_url)
    r.add_argument("--topic", default=settings.topic)
    r.add_argument("--group-prefix", default=settings.group_prefix)
    r.add_argument("--ephemeral-group", action="store_true", default=settings.group_ephemeral,
                   help="random group id per run; restarts re-read from the earliest offset")
    r.add_argument("--dest-table", default=settings.dest_table)
    r.add_argument("--max-attempts", type=int, default=settings.apply_max_attempts)
    r.add_argument("--dead-letter-topic", default=settings.dead_letter_topic)
    r.add_argument("--metrics-port", type=int, default=settings.metrics_port, help="0=disabled")
    r.add_argument("--max-messages", type=int, default=0, help="0=run forever")
    r.add_argument("--log-level", default=settings.log_level)
    r.set_defaults(fn=cmd_run)

    i = sub.add_parser("init-db")
    i.add_argument("--database-url", default=settings.database_url)
    i.add_argument("--dest-table", default=settings.dest_table)
    i.set_defaults(fn=cmd_init_db)

    pr = sub.add_parser("produce")
    pr.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    pr.add_argument("--topic", default=settings.topic)
    pr.add_argument("--count", type=int, default=10)
    pr.set_defaults(fn=cmd_produce)

    q = sub.add_parser("query")
    q.add_argument("--database-url", default=settings.database_url)
    q.add_argument("--dest-table", default=settings.dest_table)
    q.add_argument("--limit", type=int, default=20)
    q.set_defaults(fn=cmd_query)

    args = p.parse_args(argv)
    return args.fn(args)

if __name__ == "__main__":
    sys.exit(main())
