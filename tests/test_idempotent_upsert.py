from sqlalchemy import create_engine, text
from sqlalchemy.exc import DataError, OperationalError
import pytest
from cloudsync.db import init_db
from cloudsync.errors import ApplyError
from cloudsync.metrics import PipelineMetrics
from cloudsync.models import ChangeEvent, Operation, Record
from cloudsync.sinks.postgres_sink import PostgresSink

def _sink(tmp_path, metrics=None):
    engine = create_engine(f"sqlite:///{tmp_path / 'dest.db'}")
    init_db(engine, "mytable")
    return PostgresSink(engine, table="mytable", metrics=metrics)

def _upsert(id, name, description=None, op=Operation.CREATE):
    return ChangeEvent(operation=op, after=Record(id=id, name=name, description=description))

def _delete(id):
    return ChangeEvent(operation=Operation.DELETE, before=Record(id=id))

def test_same_id_created_twice_keeps_one_row_with_latest_values(tmp_path):
    sink = _sink(tmp_path)
    sink.apply(_upsert(1, "first", "d1"))
    sink.apply(_upsert(1, "second", "d2"))

    rows = sink.rows()
    assert rows == [{"id": 1, "name": "second", "description": "d2"}]
    sink.close()

def test_create_then_update_leaves_update(tmp_path):
    sink = _sink(tmp_path)
    sink.apply(_upsert(1, "A"))
    sink.apply(_upsert(1, "B", op=Operation.UPDATE))
    assert sink.fetch(1)["name"] == "B"
    sink.close()

def test_update_of_missing_row_inserts_it(tmp_path):
    sink = _sink(tmp_path)
    assert sink.apply(_upsert(5, "late", op=Operation.UPDATE)) == 1
    assert sink.fetch(5) == {"id": 5, "name": "late", "description": None}
    sink.close()

def test_delete_of_missing_id_affects_nothing(tmp_path):
    sink = _sink(tmp_path)
    assert sink.apply(_delete(404)) == 0
    sink.close()

def test_delete_removes_row_and_is_repeatable(tmp_path):
    metrics = PipelineMetrics()
    sink = _sink(tmp_path, metrics)
    sink.apply(_upsert(2, "x"))
    assert sink.apply(_delete(2)) == 1
    assert sink.apply(_delete(2)) == 0
    assert sink.fetch(2) is None

    assert metrics.value("cloudsync_upserts_total") == 1
    assert metrics.value("cloudsync_deletes_total") == 2
    assert metrics.value("cloudsync_apply_latency_seconds") == 3
    sink.close()

def test_missing_table_raises_apply_error(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    sink = PostgresSink(engine, table="mytable")
    with pytest.raises(ApplyError) as exc:
        sink.apply(_upsert(1, "A"))
    assert exc.value.record_id == 1
    assert exc.value.operation == "create"
    assert exc.value.retriable
    sink.close()

def test_constraint_violation_is_not_retriable(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'strict.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE mytable (id INTEGER PRIMARY KEY, name TEXT NOT NULL, description TEXT)"))
    sink = PostgresSink(engine, table="mytable")
    with pytest.raises(ApplyError) as exc:
        sink.apply(_upsert(1, None))
    assert exc.value.retriable is False
    sink.close()

def test_unknown_operation_is_refused(tmp_path):
    sink = _sink(tmp_path)
    with pytest.raises(ValueError):
        sink.apply(ChangeEvent(operation=Operation.UNKNOWN, after=Record(id=1)))
    sink.close()

@pytest.mark.parametrize("name", ["mytable; DROP TABLE x", "1abc", ""])
def test_rejects_unsafe_table_names(tmp_path, name):
    engine = create_engine(f"sqlite:///{tmp_path / 'dest.db'}")
    with pytest.raises(ValueError):
        PostgresSink(engine, table=name)

def test_unbindable_value_is_not_retriable(tmp_path):
    sink = _sink(tmp_path)
    # skips validation so the value reaches the sqlite driver
    event = ChangeEvent(operation=Operation.CREATE, after=Record.model_construct(id=2**63, name="x", description=None))
    with pytest.raises(ApplyError) as exc:
        sink.apply(event)
    assert exc.value.retriable is False
    assert exc.value.record_id == 2**63
    sink.close()

class _FailingEngine:
    def __init__(self, error):
        self.error = error

    def begin(self):
        raise self.error

def test_data_error_is_not_retriable():
    err = DataError("INSERT INTO mytable ...", {"id": 1}, Exception("integer out of range"))
    sink = PostgresSink(_FailingEngine(err), table="mytable")
    with pytest.raises(ApplyError) as exc:
        sink.apply(_upsert(1, "A"))
    assert exc.value.retriable is False

def test_operational_error_stays_retriable():
    err = OperationalError("INSERT INTO mytable ...", {"id": 1}, Exception("connection refused"))
    sink = PostgresSink(_FailingEngine(err), table="mytable")
    with pytest.raises(ApplyError) as exc:
        sink.apply(_upsert(1, "A"))
    assert exc.value.retriable is True
