"""Borrow-request lifecycle and book-copy accounting.

Every legal status change is one row of ``TRANSITIONS``. Applying a
transition is a single transaction made of two conditional updates:

* the request row moves from the expected source status to the target
  status (``WHERE status = <source>``), and
* the book's ``available_copies`` moves by the transition's copy delta,
  guarded so it never leaves ``[0, copies]``.

A zero rowcount on either update rolls the whole transaction back, so
concurrent callers racing on the same request or the same book settle in
the store without any in-process locking.
"""

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from library import crud, models
from exceptions.exceptions import (
    BorrowRequestNotFoundError,
    DatabaseError,
    InvalidStateError,
    LibraryException,
    OutOfStockError,
    ValidationError,
)

logger = logging.getLogger(__name__)

APPROVAL_CODE_BYTES = 12
OPEN_REQUEST_MESSAGE = (
    "You already have an open borrow request for this book. "
    "Please return it before borrowing again."
)


class BorrowAction(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"


@dataclass(frozen=True)
class Transition:
    action: BorrowAction
    source: models.BorrowStatus
    target: models.BorrowStatus
    copy_delta: int
    timestamp_field: str


TRANSITIONS = {
    (models.BorrowStatus.PENDING, BorrowAction.APPROVE): Transition(
        BorrowAction.APPROVE,
        models.BorrowStatus.PENDING,
        models.BorrowStatus.APPROVED,
        -1,
        "decided_at",
    ),
    (models.BorrowStatus.PENDING, BorrowAction.REJECT): Transition(
        BorrowAction.REJECT,
        models.BorrowStatus.PENDING,
        models.BorrowStatus.REJECTED,
        0,
        "decided_at",
    ),
    (models.BorrowStatus.APPROVED, BorrowAction.RETURN): Transition(
        BorrowAction.RETURN,
        models.BorrowStatus.APPROVED,
        models.BorrowStatus.RETURNED,
        1,
        "returned_at",
    ),
}

DECISIONS = {
    models.BorrowStatus.APPROVED: BorrowAction.APPROVE,
    models.BorrowStatus.REJECTED: BorrowAction.REJECT,
}


def plan_transition(status: models.BorrowStatus, action: BorrowAction) -> Transition:
    """Look up the transition for ``action`` taken from ``status``.

    Raises InvalidStateError for any pair not in the table.
    """
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise InvalidStateError(
            f"Cannot {action.value.lower()} a borrow request that is {status.value}"
        )
    return transition


class BorrowLifecycleManager:
    """Creates borrow requests and moves them through their statuses."""

    def __init__(self, db: Session):
        self.db = db

    def create_request(self, book_id: int, user_id: int) -> models.BorrowRequest:
        book = crud.get_book(self.db, book_id)
        crud.get_user_by_id(self.db, user_id)

        if crud.has_open_request(self.db, user_id, book_id):
            raise ValidationError(OPEN_REQUEST_MESSAGE)

        try:
            borrow_request = models.BorrowRequest(
                book_id=book.id,
                user_id=user_id,
                status=models.BorrowStatus.PENDING,
                requested_at=datetime.now(timezone.utc),
            )
            self.db.add(borrow_request)
            self.db.commit()
            self.db.refresh(borrow_request)
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(OPEN_REQUEST_MESSAGE)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("create borrow request", str(e))

        logger.info(
            f"Borrow request {borrow_request.id} created for book {book_id} by user {user_id}"
        )
        return borrow_request

    def decide(
        self,
        request_id: int,
        decision: models.BorrowStatus,
        rejection_reason: Optional[str] = None,
    ) -> models.BorrowRequest:
        borrow_request = self._get(request_id)

        action = DECISIONS.get(decision)
        if action is None:
            raise ValidationError(
                f"Decision must be APPROVED or REJECTED, got {decision.value}"
            )

        transition = self._plan(borrow_request, action)

        values = {}
        if action is BorrowAction.REJECT:
            reason = (rejection_reason or "").strip()
            if not reason:
                raise ValidationError("A rejection reason is required to reject a request")
            values["rejection_reason"] = reason
        else:
            values["approval_code"] = secrets.token_urlsafe(APPROVAL_CODE_BYTES)

        return self._apply(borrow_request, transition, values)

    def return_book(self, request_id: int) -> models.BorrowRequest:
        borrow_request = self._get(request_id)
        transition = self._plan(borrow_request, BorrowAction.RETURN)
        return self._apply(borrow_request, transition, {})

    def _get(self, request_id: int) -> models.BorrowRequest:
        try:
            borrow_request = self.db.get(models.BorrowRequest, request_id)
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        if borrow_request is None:
            raise BorrowRequestNotFoundError(request_id)
        return borrow_request

    def _plan(self, borrow_request: models.BorrowRequest, action: BorrowAction):
        try:
            return plan_transition(borrow_request.status, action)
        except InvalidStateError:
            logger.warning(
                f"Rejected {action.value} on borrow request {borrow_request.id} "
                f"in status {borrow_request.status.value}"
            )
            raise

    def _apply(
        self, borrow_request: models.BorrowRequest, transition: Transition, values: dict
    ) -> models.BorrowRequest:
        request_id = borrow_request.id
        book_id = borrow_request.book_id
        values = {
            "approval_code": None,
            **values,
            "status": transition.target,
            transition.timestamp_field: datetime.now(timezone.utc),
        }

        try:
            result = self.db.execute(
                update(models.BorrowRequest)
                .where(models.BorrowRequest.id == request_id)
                .where(models.BorrowRequest.status == transition.source)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateError(
                    f"Borrow request {request_id} is no longer {transition.source.value}"
                )

            if transition.copy_delta < 0:
                self._reserve_copy(book_id)
            elif transition.copy_delta > 0:
                self._release_copy(book_id)

            self.db.commit()
        except LibraryException:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError(f"{transition.action.value.lower()} borrow request", str(e))

        self.db.refresh(borrow_request)
        logger.info(
            f"Borrow request {request_id} moved {transition.source.value} -> "
            f"{transition.target.value} (book {book_id}, copies {transition.copy_delta:+d})"
        )
        return borrow_request

    def _reserve_copy(self, book_id: int):
        result = self.db.execute(
            update(models.Book)
            .where(models.Book.id == book_id)
            .where(models.Book.available_copies >= 1)
            .values(available_copies=models.Book.available_copies - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise OutOfStockError(book_id)

    def _release_copy(self, book_id: int):
        result = self.db.execute(
            update(models.Book)
            .where(models.Book.id == book_id)
            .where(models.Book.available_copies < models.Book.copies)
            .values(available_copies=models.Book.available_copies + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # capped at copies
            logger.warning(f"Book {book_id} already at full copies; return not counted")
