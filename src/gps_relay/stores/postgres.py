# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""PostgreSQL storage for transmission records."""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import psycopg
from jinja2 import Environment, FileSystemLoader
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..models import TransmissionRecord, TransmissionStatus
from .base import BaseTransmissionStore

SQL_DIR = Path(__file__).resolve().parent.parent / "sql"

COLUMNS = (
    "id",
    "entity_id",
    "payload",
    "status",
    "response_code",
    "response_body",
    "error_message",
    "sent_at",
    "retry_count",
    "created_at",
)


def render_sql(template_name: str, **kwargs: Any) -> str:
    """Render one of the packaged SQL templates."""
    env = Environment(loader=FileSystemLoader(SQL_DIR), autoescape=False)  # SQL is not HTML
    return env.get_template(template_name).render(**kwargs)


def prepare_schema(dsn: str, schema: str) -> None:
    """Create the relay's schema and tables if they do not exist yet."""
    with psycopg.connect(dsn) as conn, conn.transaction():
        ddl = render_sql("create_tables.sql", schema=sql.Identifier(schema).as_string(conn))
        conn.execute(ddl)


def _row_to_record(row: dict[str, Any]) -> TransmissionRecord:
    return TransmissionRecord(
        id=str(row["id"]),
        entity_id=str(row["entity_id"]),
        payload=row["payload"],
        status=TransmissionStatus(row["status"]),
        response_code=row["response_code"],
        response_body=row["response_body"],
        error_message=row["error_message"],
        sent_at=row["sent_at"],
        retry_count=row["retry_count"],
        created_at=row["created_at"],
    )


class PostgresTransmissionStore(BaseTransmissionStore[psycopg.Connection]):
    """PostgreSQL implementation of the transmission store."""

    def __init__(self, dsn: str, schema: str = "gps_relay") -> None:
        """Initializes the store with connection details.

        Args:
            dsn: The connection string for the PostgreSQL database.
            schema: The schema holding the relay's tables.
        """
        self.dsn = dsn
        self.schema = schema

    @property
    def _table(self) -> sql.Composed:
        return sql.SQL("{}.{}").format(
            sql.Identifier(self.schema), sql.Identifier("transmissions"),
        )

    def prepare_schema(self) -> None:
        prepare_schema(self.dsn, self.schema)

    @contextmanager
    def unit_of_work(self) -> Iterator[psycopg.Connection]:
        """Yields a connection inside a transaction; commits or rolls back on exit."""
        with psycopg.connect(self.dsn, row_factory=dict_row) as conn, conn.transaction():
            yield conn

    def create(self, record: TransmissionRecord, conn: psycopg.Connection) -> None:
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values})").format(
            table=self._table,
            columns=sql.SQL(", ").join(map(sql.Identifier, COLUMNS)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(COLUMNS)),
        )
        values = record.model_dump()
        values["payload"] = Jsonb(values["payload"])
        values["status"] = record.status.value
        with conn.cursor() as cur:
            cur.execute(query, [values[column] for column in COLUMNS])

    def update(self, record: TransmissionRecord, conn: psycopg.Connection) -> None:
        query = sql.SQL(
            "UPDATE {table} SET status = %s, response_code = %s, response_body = %s, "
            "error_message = %s, sent_at = %s, retry_count = %s, updated_at = now() "
            "WHERE id = %s",
        ).format(table=self._table)
        with conn.cursor() as cur:
            cur.execute(
                query,
                (
                    record.status.value,
                    record.response_code,
                    record.response_body,
                    record.error_message,
                    record.sent_at,
                    record.retry_count,
                    record.id,
                ),
            )
            if cur.rowcount != 1:
                raise LookupError(f"Transmission {record.id} does not exist")

    def get(self, record_id: str) -> TransmissionRecord | None:
        query = sql.SQL("SELECT * FROM {table} WHERE id = %s").format(table=self._table)
        with psycopg.connect(self.dsn, row_factory=dict_row) as conn:
            row = conn.execute(query, (record_id,)).fetchone()
        return _row_to_record(row) if row else None

    def list_for_entity(
        self, entity_id: str, status: TransmissionStatus | None = None,
    ) -> list[TransmissionRecord]:
        query = sql.SQL("SELECT * FROM {table} WHERE entity_id = %s").format(
            table=self._table,
        )
        params: list[Any] = [entity_id]
        if status is not None:
            query += sql.SQL(" AND status = %s")
            params.append(status.value)
        query += sql.SQL(" ORDER BY created_at DESC")
        with psycopg.connect(self.dsn, row_factory=dict_row) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]
