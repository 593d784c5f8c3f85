"""
Base repository class for async PostgreSQL access.
"""
from __future__ import annotations

import json
from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from health_alerts.storage.database import Database

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Base class for async repositories.

    Subclasses define table name and model type.
    """

    table_name: str
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, record) -> Optional[T]:
        """Convert asyncpg Record to Pydantic model."""
        if record is None:
            return None
        return self.model_class(**dict(record))

    def _records_to_models(self, records) -> list[T]:
        return [self._record_to_model(r) for r in records]

    @staticmethod
    def _to_json(value: Any) -> str:
        """Encode a JSONB parameter (datetimes and enums become strings)."""
        return json.dumps(value, default=str)

    async def delete(self, id_value, id_column: str = "id") -> bool:
        """Delete a record by ID. Returns True if deleted."""
        query = f"DELETE FROM {self.table_name} WHERE {id_column} = $1"
        result = await self.db.execute(query, id_value)
        return result != "DELETE 0"
