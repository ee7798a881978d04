from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional

from circulation.status import (
    CopyStatus,
    LoanStatus,
    UserRole,
    UserStatus,
    as_utc,
    derive_status,
)


class CirculationModel(BaseModel):
    """Base for every record handed across the core's interfaces.

    Field names are snake_case in Python and camelCase on the wire, matching
    the field names the existing UI reads (``_id``, ``dueDate``...).
    """

    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel
        coerce_numbers_to_str = True


class BookBase(CirculationModel):
    title: str
    author: str
    isbn: Optional[str] = Field(None, alias="ISBN")
    category: Optional[str] = None
    description: Optional[str] = None
    publication_year: Optional[int] = None
    shelf_location: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("image_url")
    @classmethod
    def blank_image_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class BookCreate(BookBase):
    number_of_copies: int = Field(1, ge=0)


class BookUpdate(CirculationModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = Field(None, alias="ISBN")
    category: Optional[str] = None
    description: Optional[str] = None
    publication_year: Optional[int] = None
    shelf_location: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None
    number_of_copies: Optional[int] = Field(None, ge=0)


class BookSchema(BookBase):
    id: str = Field(alias="_id")
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookWithAvailability(BookSchema):
    total_copies: int = 0
    available_copies: int = 0


class CopySchema(CirculationModel):
    id: str = Field(alias="_id")
    book_id: str
    sequence: int
    copy_code: str
    status: CopyStatus = CopyStatus.AVAILABLE


class CopyCount(CirculationModel):
    total: int
    available: int


class UserBase(CirculationModel):
    name: str
    email: str
    student_id: Optional[str] = None
    role: UserRole = UserRole.USER

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class UserCreate(UserBase):
    password: str = Field(min_length=1)


class UserSchema(UserBase):
    id: str = Field(alias="_id")
    status: UserStatus = UserStatus.ACTIVE


class LoanCreate(CirculationModel):
    user_id: str
    book_id: str
    due_date: Optional[datetime] = None

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class LoanSchema(CirculationModel):
    id: str = Field(alias="_id")
    user_id: str
    book_id: str
    copy_id: str
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.BORROWED
    reminder_sent: bool = False

    @field_validator("borrow_date", "due_date", "return_date")
    @classmethod
    def timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class LoanView(LoanSchema):
    book: Optional[BookSchema] = None
    book_copy: Optional[CopySchema] = Field(None, alias="copy")
    user: Optional[UserSchema] = None


class DashboardStats(CirculationModel):
    active_book_count: int = Field(alias="activeBooks")
    user_count: int = Field(alias="totalUsers")
    active_loan_count: int = Field(alias="activeLoans")
    overdue_loan_count: int = Field(alias="overdueLoans")
    recent_loans: List[LoanView] = Field(default_factory=list, alias="recentLoans")


def build_loan_view(
    loan: LoanSchema,
    book: Optional[BookSchema],
    book_copy: Optional[CopySchema],
    user: Optional[UserSchema],
    now: Optional[datetime] = None,
) -> LoanView:
    data = loan.model_dump()
    data["status"] = derive_status(loan, now)
    return LoanView(**data, book=book, book_copy=book_copy, user=user)
