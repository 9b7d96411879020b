"""
Configure generic models not specific
to a particular feature.
"""

from typing import Any, Generic, TypeVar
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DataT = TypeVar("DataT")


class CamelModel(BaseModel):
    """Public models serialize as camelCase and accept either spelling"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PageInfo(CamelModel):
    current_page: int
    limit: int
    total_items: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, *, page: int, limit: int, total_items: int) -> "PageInfo":
        total_pages = (total_items + limit - 1) // limit  # Ceiling division
        return cls(
            current_page=page,
            limit=limit,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class ApiResponse(BaseModel, Generic[DataT]):
    """Success envelope"""

    success: bool = True
    message: str
    data: DataT | None = None


class PaginatedResponse(ApiResponse[DataT], Generic[DataT]):
    """Success envelope of a listing"""

    pagination: PageInfo


class ErrorResponse(BaseModel):
    """Failure envelope"""

    success: bool = False
    message: str
    error: str
    details: Any | None = None
