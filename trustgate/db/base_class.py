import uuid
from typing import Any

from sqlalchemy import JSON, Uuid
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import as_declarative, declared_attr
from sqlalchemy.types import TypeDecorator

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class UuidList(TypeDecorator):
    """UUID[] on PostgreSQL, JSON list of uuid strings elsewhere."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(ARRAY(Uuid()))
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        ids = [uuid.UUID(str(v)) for v in value]
        if dialect.name == "postgresql":
            return ids
        return [str(i) for i in ids]

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return [uuid.UUID(str(v)) for v in value]


@as_declarative()
class Base:
    id: Any
    __name__: str

    # Generate __tablename__ automatically
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()
