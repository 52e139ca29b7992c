import os
from contextlib import asynccontextmanager
import logging
from fastapi import BackgroundTasks, FastAPI, HTTPException, Depends, status
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from library import crud, models
from library.auth import (
    admin_required,
    authenticate_user,
    create_access_token,
    get_current_user,
)
from library.lifecycle import BorrowLifecycleManager
from exceptions.exceptions import add_exception_handlers
from library.schemas import (
    ActivitySchema,
    BookCreate,
    BookFilterParams,
    BookPageSchema,
    BookSchema,
    BookUpdate,
    BorrowRequestDetailSchema,
    BorrowRequestSchema,
    BorrowStatusUpdate,
    CountSchema,
    LoginRequest,
    MessageSchema,
    NotificationSchema,
    TokenSchema,
    UserCreate,
    UserSchema,
)
from library.storage import SessionLocal, engine, get_db
from library.internal_message import (
    build_borrow_event,
    cleanup_messaging,
    dispatch_notification,
    setup_messaging,
)

from typing import List, Optional

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


def bootstrap_admin():
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password:
        return

    db = SessionLocal()
    try:
        if crud.find_user_by_email(db, email) is None:
            crud.create_user_record(
                db,
                UserCreate(
                    email=email, password=password, first_name="Library", last_name="Admin"
                ),
                role=models.UserRole.ADMIN,
            )
            logger.info(f"Bootstrapped admin account {email}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        models.Base.metadata.create_all(bind=engine)
        bootstrap_admin()
        await setup_messaging(app)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)


app = FastAPI(
    title="Library API",
    lifespan=lifespan,
    description="Book inventory, borrow requests and notifications for the library",
    version="1.0.0",
)

add_exception_handlers(app)


def notify(
    background_tasks: BackgroundTasks,
    db: Session,
    borrow_request: models.BorrowRequest,
    event: str,
):
    crud.record_borrow_event(db, borrow_request, event)
    background_tasks.add_task(
        dispatch_notification, app, build_borrow_event(borrow_request, event)
    )


@app.get("/health")
def health_check():
    return {"status": "ok"}


# Auth
@app.post("/auth/register", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
def register(user: UserCreate, db: Session = Depends(get_db)):
    return crud.create_user_record(db, user)


@app.post("/auth/login", response_model=TokenSchema)
def login(credentials: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate_user(db, credentials.email, credentials.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.info(f"User {user.id} logged in")
    return TokenSchema(access_token=create_access_token(user))


@app.post("/auth/admin/login", response_model=TokenSchema)
def admin_login(credentials: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate_user(
        db, credentials.email, credentials.password, role=models.UserRole.ADMIN
    )
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.info(f"Admin {user.id} logged in")
    return TokenSchema(access_token=create_access_token(user))


@app.get("/auth/me", response_model=UserSchema)
def read_current_user(current_user: models.User = Depends(get_current_user)):
    return current_user


# Books
@app.get("/books/", response_model=BookPageSchema)
def list_books(page: int = 1, limit: int = 10, db: Session = Depends(get_db)):
    if page < 1 or limit < 1 or limit > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="page must be >= 1 and limit between 1 and 100",
        )
    return crud.list_books(db, page, limit)


@app.get("/books/filter", response_model=List[BookSchema])
def filter_book_records(
    params: BookFilterParams = Depends(), db: Session = Depends(get_db)
):
    books = crud.filter_books(db, params.category, params.author)
    if not books:
        raise HTTPException(status_code=404, detail="Books matching filter not found")
    return books


@app.get("/books/{id}", response_model=BookSchema)
def fetch_single_book(id: int, db: Session = Depends(get_db)):
    return crud.get_book(db, id)


@app.post(
    "/books/{id}/borrow",
    response_model=BorrowRequestSchema,
    status_code=status.HTTP_201_CREATED,
)
def borrow_book(
    id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    borrow_request = BorrowLifecycleManager(db).create_request(id, current_user.id)
    notify(background_tasks, db, borrow_request, "created")
    return borrow_request


# Borrow requests (own)
@app.get("/borrow-requests/", response_model=List[BorrowRequestSchema])
def my_borrow_requests(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.get_borrow_requests(db, user_id=current_user.id)


@app.get("/borrow-requests/{id}", response_model=BorrowRequestSchema)
def my_borrow_request(
    id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.get_borrow_request(db, id, user_id=current_user.id)


@app.post("/borrow-requests/{id}/return", response_model=BorrowRequestSchema)
def return_borrowed_book(
    id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    owner_id = None if current_user.role == models.UserRole.ADMIN else current_user.id
    crud.get_borrow_request(db, id, user_id=owner_id)

    borrow_request = BorrowLifecycleManager(db).return_book(id)
    notify(background_tasks, db, borrow_request, "returned")
    return borrow_request


# Notifications and activities
@app.get("/notifications/", response_model=List[NotificationSchema])
def my_notifications(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.get_notifications(db, current_user.id)


@app.patch("/notifications/{id}/read", response_model=NotificationSchema)
def read_notification(
    id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.mark_notification_read(db, id, current_user.id)


@app.get("/activities/", response_model=List[ActivitySchema])
def my_activities(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.get_activities(db, user_id=current_user.id)


# Admin
@app.post(
    "/admin/books",
    response_model=BookSchema,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(admin_required)],
)
def create_book(book: BookCreate, db: Session = Depends(get_db)):
    db_book = crud.create_book(db, book)
    logger.info(f"Book {db_book.id} created with {db_book.copies} copies")
    return db_book


@app.patch(
    "/admin/books/{id}",
    response_model=BookSchema,
    dependencies=[Depends(admin_required)],
)
def modify_book(id: int, book_update: BookUpdate, db: Session = Depends(get_db)):
    return crud.update_book(db, id, book_update)


@app.delete(
    "/admin/books/{id}",
    response_model=MessageSchema,
    dependencies=[Depends(admin_required)],
)
def remove_book(id: int, db: Session = Depends(get_db)):
    crud.delete_book(db, id)
    logger.info(f"Book {id} deleted")
    return {"message": "Book deleted successfully"}


@app.get(
    "/admin/borrow-requests",
    response_model=List[BorrowRequestDetailSchema],
    dependencies=[Depends(admin_required)],
)
def list_borrow_requests(
    status: Optional[models.BorrowStatus] = None, db: Session = Depends(get_db)
):
    return crud.get_borrow_requests(db, status=status)


@app.get(
    "/admin/borrow-requests/{id}",
    response_model=BorrowRequestDetailSchema,
    dependencies=[Depends(admin_required)],
)
def get_borrow_request(id: int, db: Session = Depends(get_db)):
    return crud.get_borrow_request(db, id)


@app.patch(
    "/admin/borrow-requests/{id}/status",
    response_model=BorrowRequestDetailSchema,
    dependencies=[Depends(admin_required)],
)
def update_borrow_request_status(
    id: int,
    body: BorrowStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    manager = BorrowLifecycleManager(db)
    if body.status == models.BorrowStatus.RETURNED:
        borrow_request = manager.return_book(id)
    else:
        borrow_request = manager.decide(id, body.status, body.rejection_reason)

    notify(background_tasks, db, borrow_request, borrow_request.status.value.lower())
    return borrow_request


@app.get(
    "/admin/activities",
    response_model=List[ActivitySchema],
    dependencies=[Depends(admin_required)],
)
def all_activities(db: Session = Depends(get_db)):
    return crud.get_activities(db)


@app.get(
    "/admin/users/count",
    response_model=CountSchema,
    dependencies=[Depends(admin_required)],
)
def user_count(db: Session = Depends(get_db)):
    return {"count": crud.count_users(db)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    print(f"Starting library server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
