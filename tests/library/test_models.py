import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library.models import (
    Book,
    BorrowRequest,
    BorrowStatus,
    StockStatus,
    User,
    UserRole,
)


def test_user_model(db_session: Session, test_user: User):
    assert test_user.email == "test@example.com"
    assert test_user.first_name == "Test"
    assert test_user.last_name == "User"
    assert test_user.role == UserRole.USER
    assert test_user.hashed_password != "testpassword"


def test_book_model(db_session: Session, test_book: Book):
    assert test_book.title == "Test Book"
    assert test_book.isbn == "1234567890"
    assert test_book.copies == 2
    assert test_book.available_copies == 2
    assert test_book.stock_status == StockStatus.IN_STOCK


def test_stock_status_follows_available_copies(db_session: Session, test_book: Book):
    test_book.available_copies = 0
    assert test_book.stock_status == StockStatus.OUT_OF_STOCK


def test_available_copies_cannot_exceed_copies(db_session: Session, test_book: Book):
    test_book.available_copies = test_book.copies + 1
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_available_copies_cannot_go_negative(db_session: Session, test_book: Book):
    test_book.available_copies = -1
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_rejected_request_requires_reason(
    db_session: Session, test_user: User, test_book: Book
):
    borrow = BorrowRequest(
        user_id=test_user.id, book_id=test_book.id, status=BorrowStatus.REJECTED
    )
    db_session.add(borrow)
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_reason_only_on_rejected_requests(
    db_session: Session, test_user: User, test_book: Book
):
    borrow = BorrowRequest(
        user_id=test_user.id,
        book_id=test_book.id,
        status=BorrowStatus.PENDING,
        rejection_reason="not yet decided",
    )
    db_session.add(borrow)
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_user_book_relationship(db_session: Session, test_user: User, test_book: Book):
    borrow = BorrowRequest(user_id=test_user.id, book_id=test_book.id)

    db_session.add(borrow)
    db_session.commit()
    db_session.refresh(test_user)
    db_session.refresh(test_book)

    assert borrow.status == BorrowStatus.PENDING
    assert borrow.requested_at is not None
    assert len(test_user.borrow_requests) == 1
    assert test_user.borrow_requests[0].book_id == test_book.id
    assert len(test_book.borrow_requests) == 1
    assert test_book.borrow_requests[0].user_id == test_user.id


def test_one_open_request_per_user_and_book(
    db_session: Session, test_user: User, test_book: Book
):
    db_session.add(BorrowRequest(user_id=test_user.id, book_id=test_book.id))
    db_session.commit()

    db_session.add(BorrowRequest(user_id=test_user.id, book_id=test_book.id))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_closed_requests_do_not_block_a_new_one(
    db_session: Session, test_user: User, test_book: Book
):
    db_session.add_all(
        [
            BorrowRequest(
                user_id=test_user.id, book_id=test_book.id, status=BorrowStatus.RETURNED
            ),
            BorrowRequest(
                user_id=test_user.id,
                book_id=test_book.id,
                status=BorrowStatus.REJECTED,
                rejection_reason="Lost card",
            ),
            BorrowRequest(user_id=test_user.id, book_id=test_book.id),
        ]
    )
    db_session.commit()

    assert len(test_user.borrow_requests) == 3


@pytest.mark.parametrize(
    "column", ["requested_at", "decided_at", "returned_at"]
)
def test_borrow_timestamps_are_timezone_aware(column):
    assert BorrowRequest.__table__.c[column].type.timezone is True
