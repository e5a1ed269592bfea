from decimal import Decimal
from typing import Annotated, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, PlainSerializer

from labledger.shared.utils.money import round_money

T = TypeVar("T")

# Amounts leave the API as fixed two-decimal strings ("120.00"), never floats
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: str(round_money(v)), return_type=str, when_used="json"),
]


class BaseSchema(BaseModel):
    """
    Base for request and response schemas.

    Requests accept the camelCase aliases declared on fields as well as the
    snake_case names; responses are built straight from ORM rows.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ErrorDetail(BaseSchema):
    field: str | None = None
    message: str


class SuccessResponse(BaseSchema, Generic[T]):
    success: bool = True
    data: T
    message: str | None = None


ApiResponse = SuccessResponse


class ErrorResponse(BaseSchema):
    """Error envelope: one stable code for clients to branch on plus a readable message."""

    success: bool = False
    data: None = None
    code: str
    message: str
    errors: list[ErrorDetail] = []


class PaginatedResponse(BaseSchema, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def create(cls, items: list[T], total: int, page: int, limit: int) -> "PaginatedResponse[T]":
        pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(items=items, total=total, page=page, limit=limit, pages=pages)
