"""
Catalog boundary - publish an extracted dataset's schema and location.

The table catalog itself is an external collaborator. Lookups at this
boundary return None for "not found" instead of raising, and registration
is create-or-alter: a missing table is created, a table whose columns or
location changed is altered, and an identical table is left alone.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    """
    Schema and storage location of a dataset.

    Attributes:
        database: Catalog database (namespace)
        table: Table name
        columns: (name, type) pairs in column order
        location: Storage location of the data files
        partition_keys: Partition column names
    """
    database: str
    table: str
    columns: tuple[tuple[str, str], ...] = ()
    location: Optional[str] = None
    partition_keys: tuple[str, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.table}"

    def to_dict(self) -> dict:
        return {
            "database": self.database,
            "table": self.table,
            "columns": [list(c) for c in self.columns],
            "location": self.location,
            "partition_keys": list(self.partition_keys),
        }


@runtime_checkable
class Catalog(Protocol):
    """Protocol for a table catalog."""

    def get_table(self, database: str, table: str) -> Optional[TableSpec]:
        """Return the registered table, or None when it does not exist."""
        ...

    def create_table(self, definition: TableSpec) -> None:
        ...

    def alter_table(self, definition: TableSpec) -> None:
        ...


class Registration(str, Enum):
    CREATED = "created"
    ALTERED = "altered"
    UNCHANGED = "unchanged"


def register_dataset(catalog: Catalog, definition: TableSpec) -> Registration:
    """
    Create the table if it is missing, otherwise alter it when it differs.

    Args:
        catalog: Table catalog
        definition: Desired table definition

    Returns:
        What the registration did
    """
    existing = catalog.get_table(definition.database, definition.table)
    if existing is None:
        logger.info(f"Creating table {definition.qualified_name}")
        catalog.create_table(definition)
        return Registration.CREATED

    if existing == definition:
        logger.debug(f"Table {definition.qualified_name} is up to date")
        return Registration.UNCHANGED

    logger.info(f"Altering table {definition.qualified_name}")
    catalog.alter_table(definition)
    return Registration.ALTERED


@dataclass
class InMemoryCatalog:
    """Dict-backed Catalog for local runs and tests."""
    tables: dict[tuple[str, str], TableSpec] = field(default_factory=dict)

    def get_table(self, database: str, table: str) -> Optional[TableSpec]:
        return self.tables.get((database, table))

    def create_table(self, definition: TableSpec) -> None:
        key = (definition.database, definition.table)
        if key in self.tables:
            raise ValueError(f"Table already exists: {definition.qualified_name}")
        self.tables[key] = definition

    def alter_table(self, definition: TableSpec) -> None:
        key = (definition.database, definition.table)
        if key not in self.tables:
            raise KeyError(f"Table does not exist: {definition.qualified_name}")
        self.tables[key] = definition
