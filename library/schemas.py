from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional

from library.models import BorrowStatus, StockStatus, UserRole


class BookBase(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    shelf: str = Field(..., min_length=1)
    price: float = Field(0.0, ge=0)
    description: str | None = None
    cover_image: str | None = None


class BookCreate(BookBase):
    copies: int = Field(..., ge=0)


class BookUpdate(BaseModel):
    # no available_copies: it moves only with copies and loans
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    shelf: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    cover_image: Optional[str] = None
    copies: Optional[int] = Field(None, ge=0)


class BookSchema(BookBase):
    id: int
    copies: int
    available_copies: int
    stock_status: StockStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaginationSchema(BaseModel):
    total_items: int
    total_pages: int
    current_page: int
    items_per_page: int


class BookPageSchema(BaseModel):
    books: List[BookSchema]
    pagination: PaginationSchema


class BookFilterParams(BaseModel):
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=50)


class UserBase(BaseModel):
    email: str
    first_name: str
    last_name: str


class UserCreate(UserBase):
    password: str = Field(..., min_length=6)


class UserSchema(UserBase):
    id: int
    role: UserRole
    is_active: bool

    class Config:
        from_attributes = True


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenSchema(BaseModel):
    access_token: str
    token_type: str = "bearer"


class BookSummary(BaseModel):
    id: int
    title: str

    class Config:
        from_attributes = True


class UserSummary(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str

    class Config:
        from_attributes = True


class BorrowRequestSchema(BaseModel):
    id: int
    book_id: int
    user_id: int
    status: BorrowStatus
    rejection_reason: Optional[str] = None
    approval_code: Optional[str] = None
    requested_at: datetime
    decided_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    book: Optional[BookSummary] = None

    class Config:
        from_attributes = True


class BorrowRequestDetailSchema(BorrowRequestSchema):
    user: Optional[UserSummary] = None


class BorrowStatusUpdate(BaseModel):
    status: BorrowStatus
    rejection_reason: Optional[str] = None


class NotificationSchema(BaseModel):
    id: int
    user_id: int
    message: str
    created_at: datetime
    is_read: bool

    class Config:
        from_attributes = True


class ActivitySchema(BaseModel):
    id: int
    user_id: int
    book_id: int
    action: str
    timestamp: datetime
    book: Optional[BookSummary] = None

    class Config:
        from_attributes = True


class BorrowEventSchema(BaseModel):
    """Payload published to the notification queue."""

    event: str
    borrow_request_id: int
    book_id: int
    user_id: int
    status: BorrowStatus
    book_title: str
    occurred_at: datetime


class CountSchema(BaseModel):
    count: int


class MessageSchema(BaseModel):
    message: str
