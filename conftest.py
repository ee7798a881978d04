from datetime import datetime, timezone
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from circulation.main import app, get_db
from circulation.models import Base
from circulation.schemas import BookCreate, UserCreate
from circulation.service import memory_circulation, sql_circulation
from circulation.status import UserRole

# Use a throwaway SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(db_session):
    app.state.testing = True
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sql_service(db_session):
    return sql_circulation(db_session)


@pytest.fixture
def memory_service():
    return memory_circulation()


@pytest.fixture(params=["sql", "memory"])
def service(request):
    """The circulation service over each storage implementation."""
    if request.param == "sql":
        return request.getfixturevalue("sql_service")
    return request.getfixturevalue("memory_service")


@pytest.fixture
def test_user(service):
    return service.catalog.create_user(
        UserCreate(
            name="Test User",
            email="Test@Example.com",
            password="testpassword",
            student_id="S-0001",
        )
    )


@pytest.fixture
def other_user(service):
    return service.catalog.create_user(
        UserCreate(name="Other User", email="other@example.com", password="secret")
    )


@pytest.fixture
def staff_user(service):
    return service.catalog.create_user(
        UserCreate(
            name="Staff Member",
            email="staff@example.com",
            password="secret",
            role=UserRole.STAFF,
        )
    )


@pytest.fixture
def test_book(service):
    return service.create_book(
        BookCreate(
            title="Clean Code",
            author="Robert C. Martin",
            isbn="9780132350884",
            category="Software",
            number_of_copies=2,
        )
    )
