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
"""Defines the abstract base class for transmission stores."""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, ContextManager, Generic, TypeVar

from ..models import TransmissionRecord, TransmissionStatus

ConnType = TypeVar("ConnType")


class BaseTransmissionStore(ABC, Generic[ConnType]):
    """Abstract Base Class for transmission audit storage.

    Writes happen inside a unit of work so that the creation of a pending
    record and its terminal update become visible together.
    """

    @abstractmethod
    def unit_of_work(self) -> ContextManager[ConnType]:
        """Open a transaction.

        Should be implemented as a context manager that yields a connection
        object. It must commit on successful exit of the 'with' block and
        roll back on any exception.
        """
        ...

    @asynccontextmanager
    async def async_unit_of_work(self) -> AsyncIterator[ConnType]:
        """Run `unit_of_work` with its blocking open, commit and rollback in a worker thread."""
        context = self.unit_of_work()
        conn = await asyncio.to_thread(context.__enter__)
        try:
            yield conn
        except BaseException as e:
            if not await asyncio.to_thread(context.__exit__, type(e), e, e.__traceback__):
                raise
        else:
            await asyncio.to_thread(context.__exit__, None, None, None)

    @abstractmethod
    def create(self, record: TransmissionRecord, conn: ConnType) -> None:
        """Insert a new transmission record within the given transaction."""
        ...

    @abstractmethod
    def update(self, record: TransmissionRecord, conn: ConnType) -> None:
        """Persist the current state of an existing transmission record."""
        ...

    @abstractmethod
    def get(self, record_id: str) -> TransmissionRecord | None:
        """Read one committed transmission record."""
        ...

    @abstractmethod
    def list_for_entity(
        self, entity_id: str, status: TransmissionStatus | None = None,
    ) -> list[TransmissionRecord]:
        """Read committed records for an entity, newest first."""
        ...
