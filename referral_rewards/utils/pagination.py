"""
Pagination for admin listings
"""

from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20

class PaginationParams(BaseModel):
    page: int = Field(1, ge=1)
    size: int = Field(DEFAULT_PAGE_SIZE, ge=MIN_PAGE_SIZE, le=MAX_PAGE_SIZE)

    @classmethod
    def clamped(cls, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> "PaginationParams":
        """Build params from raw input, clamping instead of rejecting"""
        return cls(
            page=max(1, page or 1),
            size=min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, size or DEFAULT_PAGE_SIZE)),
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size

async def paginate(db: AsyncSession, query: Select, params: PaginationParams) -> dict:
    """
    Run ``query`` for one page

    Returns:
        Dict with items, total, page, size and pages
    """
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.offset(params.offset).limit(params.size))

    return {
        "items": result.scalars().all(),
        "total": total,
        "page": params.page,
        "size": params.size,
        "pages": (total + params.size - 1) // params.size,
    }
