import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class BorrowStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class StockStatus(str, enum.Enum):
    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    hashed_password = Column(String)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)
    is_active = Column(Boolean, default=True)


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("copies >= 0", name="ck_books_copies_non_negative"),
        CheckConstraint(
            "available_copies >= 0", name="ck_books_available_non_negative"
        ),
        CheckConstraint(
            "available_copies <= copies", name="ck_books_available_within_copies"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, nullable=False)
    category = Column(String, nullable=False)
    shelf = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    description = Column(Text, nullable=True)
    cover_image = Column(String, nullable=True)

    copies = Column(Integer, nullable=False, default=0)
    # Written only through conditional updates in lifecycle and crud.update_book
    available_copies = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def stock_status(self) -> StockStatus:
        if self.available_copies and self.available_copies > 0:
            return StockStatus.IN_STOCK
        return StockStatus.OUT_OF_STOCK


class BorrowRequest(Base):
    __tablename__ = "borrow_requests"
    __table_args__ = (
        CheckConstraint(
            "(status = 'REJECTED') = (rejection_reason IS NOT NULL)",
            name="ck_borrow_requests_rejection_reason",
        ),
        Index(
            "uq_borrow_requests_open",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    status = Column(
        Enum(BorrowStatus), nullable=False, default=BorrowStatus.PENDING, index=True
    )
    rejection_reason = Column(String, nullable=True)
    approval_code = Column(String, nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    returned_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="borrow_requests")
    book = relationship("Book", back_populates="borrow_requests")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    is_read = Column(Boolean, default=False)

    user = relationship("User", back_populates="notifications")


class Activity(Base):
    """Recent-activity audit log entry."""

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    action = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")
    book = relationship("Book")


User.borrow_requests = relationship("BorrowRequest", back_populates="user")
User.notifications = relationship("Notification", back_populates="user")
Book.borrow_requests = relationship("BorrowRequest", back_populates="book")
