from __future__ import annotations
from typing import Optional, Union
import logging, time
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from cloudsync.db import check_table_name, make_engine
from cloudsync.errors import ApplyError
from cloudsync.models import ChangeEvent, Operation

logger = logging.getLogger(__name__)

APPLY_LATENCY_METRIC = "cloudsync_apply_latency_seconds"

class PostgresSink:
    """
    Applies change events to the destination table, keyed on id.

    Upserts are last-write-wins (no version comparison), deletes of a missing id
    affect zero rows. Both are safe to repeat when the log redelivers.
    """

    def __init__(self, engine: Union[str, Engine], table: str = "mytable", metrics=None, pool_size: int = 5):
        self.engine = make_engine(engine, pool_size=pool_size) if isinstance(engine, str) else engine
        self.table = check_table_name(table)
        self.metrics = metrics

        self._upsert_sql = text(f"""
        INSERT INTO {self.table} (id, name, description)
        VALUES (:id, :name, :description)
        ON CONFLICT (id) DO UPDATE SET
          name = excluded.name,
          description = excluded.description
        """)
        self._delete_sql = text(f"DELETE FROM {self.table} WHERE id = :id")

    def apply(self, event: ChangeEvent) -> int:
        if event.operation == Operation.UNKNOWN:
            raise ValueError("events with an unknown operation are never applied")

        record = event.record
        started = time.perf_counter()
        try:
            # connection is checked out of the pool for this statement only
            with self.engine.begin() as conn:
                if event.operation.is_upsert:
                    res = conn.execute(self._upsert_sql, {
                        "id": record.id,
                        "name": record.name,
                        "description": record.description,
                    })
                else:
                    res = conn.execute(self._delete_sql, {"id": record.id})
                rows = int(res.rowcount or 0)
        except (IntegrityError, DataError) as e:
            # the same row will fail the same way on every attempt
            raise ApplyError(f"rejected by destination: {e.orig}", record_id=record.id,
                             operation=event.operation.label, retriable=False) from e
        except SQLAlchemyError as e:
            raise ApplyError(f"destination write failed: {e}", record_id=record.id,
                             operation=event.operation.label) from e
        except (OverflowError, ValueError) as e:
            # raised by the DB driver while binding parameters, outside the DBAPI error hierarchy
            raise ApplyError(f"cannot bind row values: {e}", record_id=record.id,
                             operation=event.operation.label, retriable=False) from e
        finally:
            if self.metrics is not None:
                self.metrics.observe(APPLY_LATENCY_METRIC, time.perf_counter() - started)

        if self.metrics is not None:
            if event.operation.is_upsert:
                self.metrics.inc("cloudsync_upserts_total")
            else:
                self.metrics.inc("cloudsync_deletes_total")

        logger.info("%s applied for id=%s, rows affected: %s", event.operation.label, record.id, rows)
        return rows

    def fetch(self, record_id: int) -> Optional[dict]:
        with self.engine.connect() as conn:
            row = conn.execute(text(f"SELECT id, name, description FROM {self.table} WHERE id = :id"),
                               {"id": record_id}).mappings().first()
        return dict(row) if row else None

    def rows(self, limit: int = 20) -> list:
        with self.engine.connect() as conn:
            res = conn.execute(text(f"SELECT id, name, description FROM {self.table} ORDER BY id LIMIT :limit"),
                               {"limit": limit})
            return [dict(r) for r in res.mappings().all()]

    def close(self) -> None:
        self.engine.dispose()
