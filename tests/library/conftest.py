import os
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from library.main import app, get_db
from library.models import Base, UserRole
from library.auth import create_access_token
from library.crud import create_user_record, create_book
from library.schemas import UserCreate, BookCreate
from dotenv import load_dotenv

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def other_session(db_session):
    """A second session on the same store, used to simulate a concurrent caller."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="module")
def client():
    app.state.testing = True

    def override_get_db():
        try:
            db = TestingSessionLocal()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def test_user(db_session):
    user_data = UserCreate(
        email="test@example.com",
        password="testpassword",
        first_name="Test",
        last_name="User",
    )
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def other_user(db_session):
    user_data = UserCreate(
        email="other@example.com",
        password="otherpassword",
        first_name="Other",
        last_name="Reader",
    )
    return create_user_record(db_session, user_data)


@pytest.fixture(scope="function")
def test_admin(db_session):
    admin_data = UserCreate(
        email="admin@example.com",
        password="adminpassword",
        first_name="Head",
        last_name="Librarian",
    )
    return create_user_record(db_session, admin_data, role=UserRole.ADMIN)


@pytest.fixture(scope="function")
def test_book(db_session):
    book_data = BookCreate(
        title="Test Book",
        author="Test Author",
        isbn="1234567890",
        category="Test Category",
        shelf="A1",
        price=12.5,
        description="Test Description",
        copies=2,
    )
    return create_book(db_session, book_data)


@pytest.fixture(scope="function")
def single_copy_book(db_session):
    book_data = BookCreate(
        title="Rare Book",
        author="Someone Obscure",
        isbn="0000000001",
        category="Archive",
        shelf="Z9",
        copies=1,
    )
    return create_book(db_session, book_data)


@pytest.fixture(scope="function")
def user_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token(test_user)}"}


@pytest.fixture(scope="function")
def other_user_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(other_user)}"}


@pytest.fixture(scope="function")
def admin_headers(test_admin):
    return {"Authorization": f"Bearer {create_access_token(test_admin)}"}
