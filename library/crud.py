import logging
import math
from sqlalchemy import func, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from typing import List, Optional
import bcrypt

from library import models, schemas
from exceptions.exceptions import (
    BookNotFoundError,
    BorrowRequestNotFoundError,
    DatabaseError,
    InvalidStateError,
    NotificationNotFoundError,
    UserNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

BORROW_EVENT_MESSAGES = {
    "created": (
        'Your borrow request for the book "{title}" has been created.',
        'A new borrow request has been made for the book "{title}".',
    ),
    "approved": (
        'Your borrow request for the book "{title}" has been approved.',
        'The borrow request for the book "{title}" has been approved.',
    ),
    "rejected": (
        'Your borrow request for the book "{title}" has been rejected.',
        'The borrow request for the book "{title}" has been rejected.',
    ),
    "returned": (
        'Your return of the book "{title}" has been confirmed.',
        'The book "{title}" has been returned.',
    ),
}

BORROW_EVENT_ACTIONS = {
    "created": "Borrow request submitted",
    "approved": "Borrow request approved",
    "rejected": "Borrow request rejected",
    "returned": "Book returned",
}


# Users


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_by_id(db: Session, user_id: int):
    try:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if user is None:
            raise UserNotFoundError(user_id)
        return user
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def find_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.email == email).first()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_admins(db: Session) -> List[models.User]:
    try:
        return (
            db.query(models.User)
            .filter(models.User.role == models.UserRole.ADMIN)
            .filter(models.User.is_active.is_(True))
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def count_users(db: Session) -> int:
    try:
        return db.query(func.count(models.User.id)).scalar()
    except SQLAlchemyError as e:
        raise DatabaseError("count", str(e))


def create_user_record(
    db: Session, user: schemas.UserCreate, role: models.UserRole = models.UserRole.USER
):
    if find_user_by_email(db, user.email) is not None:
        raise ValidationError(f"A user with email {user.email} already exists")
    try:
        db_user = models.User(
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            hashed_password=hash_password(user.password),
            role=role,
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


# Books


def get_book(db: Session, book_id: int):
    try:
        book = db.query(models.Book).filter(models.Book.id == book_id).first()
        if book is None:
            raise BookNotFoundError(book_id)
        return book
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def list_books(db: Session, page: int = 1, limit: int = 10) -> dict:
    try:
        count = db.query(func.count(models.Book.id)).scalar()
        books = (
            db.query(models.Book)
            .order_by(models.Book.created_at.desc(), models.Book.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))

    return {
        "books": books,
        "pagination": {
            "total_items": count,
            "total_pages": math.ceil(count / limit) if limit else 0,
            "current_page": page,
            "items_per_page": limit,
        },
    }


def filter_books(
    db: Session,
    category: Optional[str] = None,
    author: Optional[str] = None,
) -> List[models.Book]:
    try:
        query = db.query(models.Book)
        if category:
            query = query.filter(models.Book.category.ilike(f"%{category}%"))
        if author:
            query = query.filter(models.Book.author.ilike(f"%{author}%"))
        return query.order_by(models.Book.id).all()
    except SQLAlchemyError as e:
        raise DatabaseError("filter", str(e))


def create_book(db: Session, item: schemas.BookCreate):
    try:
        db_item = models.Book(**item.model_dump(), available_copies=item.copies)
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        return db_item
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"A book with ISBN {item.isbn} already exists")
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def update_book(db: Session, book_id: int, book_update: schemas.BookUpdate):
    book = get_book(db, book_id)
    update_data = book_update.model_dump(exclude_unset=True)
    new_copies = update_data.pop("copies", None)

    try:
        if new_copies is not None:
            # Shift available_copies by the same delta, unless that would
            # drop copies below what is currently on loan.
            result = db.execute(
                update(models.Book)
                .where(models.Book.id == book_id)
                .where(models.Book.copies - models.Book.available_copies <= new_copies)
                .values(
                    copies=new_copies,
                    available_copies=models.Book.available_copies
                    + (new_copies - models.Book.copies),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise ValidationError(
                    f"Book with id {book_id} has more copies on loan than {new_copies}"
                )

        for field, value in update_data.items():
            setattr(book, field, value)

        db.commit()
        db.refresh(book)
        return book
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"A book with ISBN {update_data.get('isbn')} already exists")
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def delete_book(db: Session, book_id: int):
    book = get_book(db, book_id)
    try:
        has_history = (
            db.query(models.BorrowRequest.id)
            .filter(models.BorrowRequest.book_id == book_id)
            .first()
            is not None
        )
        if has_history:
            raise InvalidStateError(
                f"Book with id {book_id} has borrow history and cannot be deleted"
            )
        db.delete(book)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


# Borrow requests


def get_borrow_request(db: Session, request_id: int, user_id: Optional[int] = None):
    try:
        query = (
            db.query(models.BorrowRequest)
            .options(
                selectinload(models.BorrowRequest.book),
                selectinload(models.BorrowRequest.user),
            )
            .filter(models.BorrowRequest.id == request_id)
        )
        if user_id is not None:
            query = query.filter(models.BorrowRequest.user_id == user_id)
        borrow_request = query.first()
        if borrow_request is None:
            raise BorrowRequestNotFoundError(request_id)
        return borrow_request
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_borrow_requests(
    db: Session,
    status: Optional[models.BorrowStatus] = None,
    user_id: Optional[int] = None,
) -> List[models.BorrowRequest]:
    try:
        query = db.query(models.BorrowRequest).options(
            selectinload(models.BorrowRequest.book),
            selectinload(models.BorrowRequest.user),
        )
        if status is not None:
            query = query.filter(models.BorrowRequest.status == status)
        if user_id is not None:
            query = query.filter(models.BorrowRequest.user_id == user_id)
        return query.order_by(models.BorrowRequest.id.desc()).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def has_open_request(db: Session, user_id: int, book_id: int) -> bool:
    try:
        return (
            db.query(models.BorrowRequest.id)
            .filter(
                models.BorrowRequest.user_id == user_id,
                models.BorrowRequest.book_id == book_id,
                models.BorrowRequest.status.in_(
                    [models.BorrowStatus.PENDING, models.BorrowStatus.APPROVED]
                ),
            )
            .first()
            is not None
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


# Notifications and activities


def create_notifications(
    db: Session, user_id: int, user_message: str, admin_message: str
) -> List[models.Notification]:
    try:
        notifications = [models.Notification(user_id=user_id, message=user_message)]
        notifications.extend(
            models.Notification(user_id=admin.id, message=admin_message)
            for admin in get_admins(db)
            if admin.id != user_id
        )
        db.add_all(notifications)
        db.commit()
        return notifications
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def create_borrow_event_notifications(
    db: Session, borrow_request: models.BorrowRequest, event: str
):
    user_template, admin_template = BORROW_EVENT_MESSAGES[event]
    title = borrow_request.book.title
    return create_notifications(
        db,
        borrow_request.user_id,
        user_template.format(title=title),
        admin_template.format(title=title),
    )


def get_notifications(db: Session, user_id: int) -> List[models.Notification]:
    try:
        return (
            db.query(models.Notification)
            .filter(models.Notification.user_id == user_id)
            .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def mark_notification_read(db: Session, notification_id: int, user_id: int):
    try:
        notification = (
            db.query(models.Notification)
            .filter(
                models.Notification.id == notification_id,
                models.Notification.user_id == user_id,
            )
            .first()
        )
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        notification.is_read = True
        db.commit()
        db.refresh(notification)
        return notification
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def log_activity(db: Session, user_id: int, book_id: int, action: str):
    try:
        activity = models.Activity(user_id=user_id, book_id=book_id, action=action)
        db.add(activity)
        db.commit()
        db.refresh(activity)
        return activity
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def get_activities(db: Session, user_id: Optional[int] = None) -> List[models.Activity]:
    try:
        query = db.query(models.Activity).options(selectinload(models.Activity.book))
        if user_id is not None:
            query = query.filter(models.Activity.user_id == user_id)
        return query.order_by(
            models.Activity.timestamp.desc(), models.Activity.id.desc()
        ).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def record_borrow_event(db: Session, borrow_request: models.BorrowRequest, event: str):
    """Write notifications and the activity entry for a committed borrow event.

    Failures are logged and never touch the borrow request itself.
    """
    try:
        create_borrow_event_notifications(db, borrow_request, event)
        log_activity(
            db,
            borrow_request.user_id,
            borrow_request.book_id,
            BORROW_EVENT_ACTIONS[event],
        )
    except (DatabaseError, SQLAlchemyError) as e:
        db.rollback()
        logger.error(
            f"Failed to record '{event}' event for borrow request {borrow_request.id}: {e}"
        )
