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
"""Read-only access to the registered source entities.

Two backends are provided: a YAML file for small deployments and local runs,
and the ``source_entities`` table for deployments that share a database with
the administrative tooling.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import psycopg
import yaml
from psycopg import sql
from psycopg.rows import dict_row
from pydantic import ValidationError

from .errors import RegistryError
from .models import SourceEntity

logger = logging.getLogger(__name__)


class BaseEntityRegistry(ABC):
    """Abstract Base Class for entity lookups."""

    @abstractmethod
    def get(self, entity_id: str) -> SourceEntity:
        """Return one entity or raise RegistryError if it is unknown."""
        ...

    def list_by_ids(self, ids: Iterable[str]) -> list[SourceEntity]:
        """Return the requested entities, in the order given."""
        return [self.get(entity_id) for entity_id in ids]

    # Defined last: the method name shadows the builtin in the class body.
    @abstractmethod
    def list(self, active_only: bool = True) -> list[SourceEntity]:
        ...


class YamlEntityRegistry(BaseEntityRegistry):
    """Registry loaded once from a YAML file with a top-level ``entities`` list."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._entities = self._load()

    def _load(self) -> dict[str, SourceEntity]:
        try:
            with open(self.path, "r") as f:
                document = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise RegistryError(f"Registry file not found: {self.path}") from e

        rows = document.get("entities", []) if isinstance(document, dict) else None
        if not isinstance(rows, list):
            raise RegistryError(f"'entities' must be a list in {self.path}")

        entities: dict[str, SourceEntity] = {}
        tokens: set[str] = set()
        for position, row in enumerate(rows):
            try:
                entity = SourceEntity.model_validate(row)
            except ValidationError as e:
                raise RegistryError(f"Invalid entity #{position} in {self.path}: {e}") from e
            if entity.token in tokens:
                raise RegistryError(f"Duplicate token for entity '{entity.name}'")
            if entity.id in entities:
                raise RegistryError(f"Duplicate entity id {entity.id}")
            tokens.add(entity.token)
            entities[entity.id] = entity

        logger.info("Loaded %d entities from %s", len(entities), self.path)
        return entities

    def get(self, entity_id: str) -> SourceEntity:
        try:
            return self._entities[entity_id]
        except KeyError:
            raise RegistryError(f"Unknown entity: {entity_id}") from None

    def list(self, active_only: bool = True) -> list[SourceEntity]:
        return [e for e in self._entities.values() if e.active or not active_only]


class PostgresEntityRegistry(BaseEntityRegistry):
    """Registry backed by the ``source_entities`` table."""

    def __init__(self, dsn: str, schema: str = "gps_relay") -> None:
        self.dsn = dsn
        self.schema = schema

    def _select(self) -> sql.Composed:
        return sql.SQL(
            "SELECT id, name, token, area_code, variant, station_code, active FROM {}.{}",
        ).format(sql.Identifier(self.schema), sql.Identifier("source_entities"))

    def _fetch(self, query: sql.Composable, params: tuple[Any, ...] = ()) -> list[dict]:
        with psycopg.connect(self.dsn, row_factory=dict_row) as conn:
            return conn.execute(query, params).fetchall()

    @staticmethod
    def _to_entity(row: dict[str, Any]) -> SourceEntity:
        return SourceEntity.model_validate({**row, "id": str(row["id"])})

    def get(self, entity_id: str) -> SourceEntity:
        rows = self._fetch(self._select() + sql.SQL(" WHERE id = %s"), (entity_id,))
        if not rows:
            raise RegistryError(f"Unknown entity: {entity_id}")
        return self._to_entity(rows[0])

    def list(self, active_only: bool = True) -> list[SourceEntity]:
        query = self._select()
        if active_only:
            query += sql.SQL(" WHERE active")
        query += sql.SQL(" ORDER BY name")
        return [self._to_entity(row) for row in self._fetch(query)]
