"""Tenant scope passed explicitly to every referral and reward service"""

from dataclasses import dataclass
from typing import Optional

@dataclass(frozen=True)
class TenantScope:
    """
    The (brand, location) pair every entity is partitioned by.

    Services receive the scope at construction time and apply it to every
    query and insert; there is no ambient per-request tenant state.
    """

    tenant_id: str
    location_id: str

    def as_filter(self, model) -> list:
        """SQLAlchemy criteria restricting ``model`` to this scope"""
        return [
            model.tenant_id == self.tenant_id,
            model.location_id == self.location_id,
        ]

    def as_values(self) -> dict:
        """Column values stamped on rows created inside this scope"""
        return {"tenant_id": self.tenant_id, "location_id": self.location_id}

    @classmethod
    def from_headers(cls, tenant_id: Optional[str], location_id: Optional[str]) -> "TenantScope":
        """Build a scope from raw request headers; blank values raise ValueError"""
        tenant_id = (tenant_id or "").strip()
        location_id = (location_id or "").strip()
        if not tenant_id or not location_id:
            raise ValueError("Both tenant and location are required")
        return cls(tenant_id=tenant_id, location_id=location_id)
