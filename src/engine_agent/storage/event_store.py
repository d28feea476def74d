from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import psycopg
from psycopg.rows import tuple_row

from engine_agent.core.models import ResourceSample
from engine_agent.utils.logger import get_logger

EVENT_TYPES = ("pull", "create", "start", "stop", "remove", "fail")


class PostgresEventStore:
    """
    Engine lifecycle events and resource samples in PostgreSQL.

      - record_event(payload) / list_events(name=None, limit=100)
      - record_sample(sample) / prune_samples(retention_days)

    On first connect it creates the tables if they don't exist. Without a DSN,
    or when the database is unreachable, ``enabled`` is False and every write
    is a no-op.
    """

    def __init__(self, dsn: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.dsn = dsn
        self.logger = logger or get_logger("store")
        self.enabled = False
        if not dsn:
            return
        try:
            with psycopg.connect(self.dsn, autocommit=True) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS engine_events (
                          id           BIGSERIAL PRIMARY KEY,
                          name         TEXT        NOT NULL,
                          container_id TEXT,
                          image        TEXT,
                          host         TEXT,
                          state        TEXT,
                          event        TEXT        NOT NULL CHECK (event IN ('pull','create','start','stop','remove','fail')),
                          detail       TEXT,
                          ts           TIMESTAMPTZ NOT NULL DEFAULT now()
                        )
                    """)
                    cur.execute("CREATE INDEX IF NOT EXISTS engine_events_name_ts_idx ON engine_events (name, ts DESC)")
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS resource_samples (
                          id             BIGSERIAL PRIMARY KEY,
                          ts             TIMESTAMPTZ NOT NULL,
                          cpu_percent    DOUBLE PRECISION NOT NULL,
                          memory_total   BIGINT,
                          memory_used    BIGINT,
                          memory_percent DOUBLE PRECISION,
                          disk_total     BIGINT,
                          disk_used      BIGINT,
                          disk_percent   DOUBLE PRECISION,
                          gpu_percent    JSONB,
                          errors         JSONB
                        )
                    """)
            self.enabled = True
            self.logger.info("PostgreSQL event store enabled")
        except psycopg.Error as e:
            self.logger.warning(f"PostgreSQL event store disabled - events will not be persisted: {e}")
            self.enabled = False

    # -------- engine_events --------
    def record_event(self, payload: Dict[str, Any]) -> None:
        if not self.enabled: return
        if payload.get("event") not in EVENT_TYPES:
            raise ValueError(f"unknown event type {payload.get('event')!r}")
        with psycopg.connect(self.dsn, autocommit=True) as conn, conn.cursor() as cur:
            cur.execute("""
                INSERT INTO engine_events(name,container_id,image,host,state,event,detail,ts)
                VALUES (%s,%s,%s,%s,%s,%s,%s,now())
            """, (
                payload.get("name"),
                payload.get("container_id"),
                payload.get("image"),
                payload.get("host"),
                payload.get("state"),
                payload.get("event"),
                payload.get("detail"),
            ))

    def list_events(self, name: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.enabled: return []
        with psycopg.connect(self.dsn) as conn, conn.cursor(row_factory=tuple_row) as cur:
            if name:
                cur.execute("""
                    SELECT name,container_id,image,host,state,event,detail,ts
                    FROM engine_events WHERE name=%s ORDER BY ts DESC LIMIT %s
                """, (name, limit))
            else:
                cur.execute("""
                    SELECT name,container_id,image,host,state,event,detail,ts
                    FROM engine_events ORDER BY ts DESC LIMIT %s
                """, (limit,))
            rows = cur.fetchall()
        return [
            {"name": r[0], "container_id": r[1], "image": r[2], "host": r[3],
             "state": r[4], "event": r[5], "detail": r[6], "ts": r[7].timestamp()}
            for r in rows
        ]

    # -------- resource_samples --------
    def record_sample(self, sample: ResourceSample) -> None:
        if not self.enabled: return
        with psycopg.connect(self.dsn, autocommit=True) as conn, conn.cursor() as cur:
            cur.execute("""
                INSERT INTO resource_samples(ts,cpu_percent,memory_total,memory_used,memory_percent,
                                             disk_total,disk_used,disk_percent,gpu_percent,errors)
                VALUES (to_timestamp(%s),%s,%s,%s,%s,%s,%s,%s,%s,%s)
            """, (
                sample.timestamp,
                sample.cpu_percent,
                sample.memory_total,
                sample.memory_used,
                sample.memory_percent,
                sample.disk_total,
                sample.disk_used,
                sample.disk_percent,
                json.dumps(list(sample.gpu_percent)),
                json.dumps(dict(sample.errors)),
            ))

    __call__ = record_sample

    def prune_samples(self, retention_days: int) -> int:
        if not self.enabled or retention_days <= 0: return 0
        with psycopg.connect(self.dsn, autocommit=True) as conn, conn.cursor() as cur:
            cur.execute(
                "DELETE FROM resource_samples WHERE ts < now() - make_interval(days => %s)",
                (retention_days,),
            )
            return cur.rowcount
