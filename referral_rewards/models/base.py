"""Base models and mixins for database models"""

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import DeclarativeBase, declared_attr
from sqlalchemy.sql import func
from datetime import datetime
import uuid

# Create declarative base
class Base(DeclarativeBase):
    pass

class TimestampedModel:
    """Mixin for adding created_at and updated_at timestamps"""

    @declared_attr
    def created_at(cls):
        return Column(
            DateTime(timezone=True),
            nullable=False,
            default=datetime.utcnow,
            server_default=func.now(),
            index=True
        )

    @declared_attr
    def updated_at(cls):
        return Column(
            DateTime(timezone=True),
            nullable=False,
            default=datetime.utcnow,
            server_default=func.now(),
            onupdate=datetime.utcnow
        )

class UUIDModel:
    """Mixin for adding UUID primary key"""

    @declared_attr
    def id(cls):
        return Column(
            Uuid(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False
        )

class TenantScopedModel:
    """Mixin for rows partitioned by (tenant, location)"""

    @declared_attr
    def tenant_id(cls):
        return Column(String(64), nullable=False, index=True)

    @declared_attr
    def location_id(cls):
        return Column(String(64), nullable=False, index=True)

__all__ = [
    "Base",
    "TimestampedModel",
    "UUIDModel",
    "TenantScopedModel",
]
