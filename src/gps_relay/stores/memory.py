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
"""In-process transmission store for tests and dry runs."""

import threading
from contextlib import contextmanager
from typing import Iterator

from ..models import TransmissionRecord, TransmissionStatus
from .base import BaseTransmissionStore


class StagedWrites:
    """Writes collected during one unit of work."""

    def __init__(self) -> None:
        self.rows: dict[str, TransmissionRecord] = {}


class InMemoryTransmissionStore(BaseTransmissionStore[StagedWrites]):
    """Dictionary-backed store with all-or-nothing commits."""

    def __init__(self) -> None:
        self._rows: dict[str, TransmissionRecord] = {}
        self._lock = threading.Lock()

    @contextmanager
    def unit_of_work(self) -> Iterator[StagedWrites]:
        staged = StagedWrites()
        yield staged
        with self._lock:
            self._rows.update(staged.rows)

    def create(self, record: TransmissionRecord, conn: StagedWrites) -> None:
        with self._lock:
            exists = record.id in self._rows
        if exists or record.id in conn.rows:
            raise ValueError(f"Transmission {record.id} already exists")
        conn.rows[record.id] = record.model_copy(deep=True)

    def update(self, record: TransmissionRecord, conn: StagedWrites) -> None:
        with self._lock:
            exists = record.id in self._rows
        if not exists and record.id not in conn.rows:
            raise LookupError(f"Transmission {record.id} does not exist")
        conn.rows[record.id] = record.model_copy(deep=True)

    def get(self, record_id: str) -> TransmissionRecord | None:
        with self._lock:
            row = self._rows.get(record_id)
        return row.model_copy(deep=True) if row else None

    def list_for_entity(
        self, entity_id: str, status: TransmissionStatus | None = None,
    ) -> list[TransmissionRecord]:
        with self._lock:
            rows = [
                row.model_copy(deep=True)
                for row in self._rows.values()
                if row.entity_id == entity_id and (status is None or row.status is status)
            ]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
