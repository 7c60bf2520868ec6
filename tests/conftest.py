from types import SimpleNamespace

import pytest

from library_service.app import create_app
from library_service.auth import ROLE_ADMIN, AuthContext, AuthService
from library_service.catalog import AuthorService, BookService, CategoryService
from library_service.config import Config
from library_service.db import SessionLocal
from library_service.employees import EmployeeService


@pytest.fixture
def app(tmp_path):
    # Every test gets its own database file and log directory
    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'library.db'}"
        JWT_SECRET = "test-secret-key-long-enough-for-hs256-signing"
        JWT_EXP_MINUTES = 60
        LOG_DIR = str(tmp_path / "logs")

    yield create_app(TestConfig)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def library(session):
    """One category, two authors, two books and two employees."""
    category = CategoryService(session).create_category("Programming", "Writing software")
    authors = AuthorService(session)
    martin = authors.create_author("Robert", "Martin")
    fowler = authors.create_author("Martin", "Fowler")

    books = BookService(session)
    clean_code = books.create_book(
        "Clean Code", "9780132350884", "Prentice Hall", 2008, 464, "", category.id, [martin.id]
    )
    refactoring = books.create_book(
        "Refactoring",
        "9780201485677",
        "Addison-Wesley",
        1999,
        431,
        "Improving the design of existing code",
        category.id,
        [fowler.id],
    )

    employees = EmployeeService(session)
    anna = employees.create_employee(
        "Anna", "Kowalska", "anna@company.local", "Engineering", "Developer"
    )
    piotr = employees.create_employee("Piotr", "Nowak", "piotr@company.local", "Operations", "SRE")

    return SimpleNamespace(
        category_id=category.id,
        author_ids=[martin.id, fowler.id],
        book_id=clean_code.id,
        book2_id=refactoring.id,
        employee_id=anna.id,
        employee2_id=piotr.id,
    )


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def users(app, session, library):
    """
    Admin (bootstrap account), a librarian, an employee linked to Anna and
    an employee account with no linked employee.  Values are request headers.
    """
    auth = AuthService(session, app.config)
    admin = auth.register("admin", "admin@company.local", "admin123")
    admin_ctx = AuthContext(user_id=1, username="admin", role=ROLE_ADMIN)

    librarian = auth.register(
        "librarian", "librarian@company.local", "librarian123", role="Librarian", auth=admin_ctx
    )
    anna = auth.register(
        "anna",
        "anna.user@company.local",
        "employee123",
        role="Employee",
        employee_id=library.employee_id,
        auth=admin_ctx,
    )
    guest = auth.register(
        "guest", "guest@company.local", "employee123", role="Employee", auth=admin_ctx
    )
    return SimpleNamespace(
        admin=bearer(admin["token"]),
        librarian=bearer(librarian["token"]),
        employee=bearer(anna["token"]),
        unlinked=bearer(guest["token"]),
    )
