import io
import os
import logging
from datetime import datetime

from flask import Blueprint, Flask, current_app, g, jsonify, request, send_file
from flask_cors import CORS
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.routing import IntegerConverter

from .auth import (
    ROLE_ADMIN,
    ROLES,
    STAFF_ROLES,
    AuthService,
    optional_auth,
    require_auth,
)
from .catalog import AuthorService, BookService, CategoryService
from .config import Config
from .db import SessionLocal, init_db
from .employees import EmployeeService
from .errors import LibraryError, NotFoundError
from .loans import LoanService
from .reports import (
    books_csv,
    books_pdf,
    dashboard_stats,
    export_filename,
    loans_csv,
    loans_pdf,
    read_recent_logs,
)
from .serializers import (
    author_to_dict,
    book_to_dict,
    category_to_dict,
    employee_to_dict,
    loan_to_dict,
    user_to_dict,
)
from .validation import MAX_ID, Payload

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

api = Blueprint("api", __name__, url_prefix="/api")


class IdConverter(IntegerConverter):
    """Path ids; anything outside 1..MAX_ID does not match the route (404)."""

    def __init__(self, url_map, *args, **kwargs):
        kwargs.setdefault("min", 1)
        kwargs.setdefault("max", MAX_ID)
        super().__init__(url_map, *args, **kwargs)


# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------

def configure_logging(app):
    """
    Console logging plus a daily log-YYYYMMDD.txt file in LOG_DIR, which
    is what GET /api/logs reads back.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    log_dir = app.config.get("LOG_DIR")
    if not log_dir:
        return

    # replace the file handler of a previous app instance in this process
    for handler in list(root.handlers):
        if getattr(handler, "library_log_file", False):
            root.removeHandler(handler)
            handler.close()

    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, f"log-{datetime.now():%Y%m%d}.txt")
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.library_log_file = True
    root.addHandler(handler)


# ---------------------------------------------------------
# App factory
# ---------------------------------------------------------

def create_app(config_object=Config):
    app = Flask(__name__, static_folder=None)
    app.config.from_object(config_object)
    app.url_map.converters["id"] = IdConverter
    CORS(app)

    configure_logging(app)
    init_db(app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config.get("SQLALCHEMY_ECHO", False))

    @app.errorhandler(LibraryError)
    def handle_library_error(err):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(err):
        logger.warning("Integrity error on %s: %s", request.path, err.orig)
        return jsonify({"message": "The change conflicts with existing data"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify({"message": err.description}), err.code

    app.register_blueprint(api)
    return app


def _settings():
    return current_app.config


def _files(payload_bytes, mimetype, filename):
    return send_file(
        io.BytesIO(payload_bytes),
        mimetype=mimetype,
        as_attachment=True,
        download_name=filename,
    )


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health_check():
    return jsonify({"status": "ok", "service": "library_service"}), 200


# ----------------- auth endpoints -----------------

@api.post("/auth/login")
def login():
    body = Payload(request.get_json(force=True, silent=True))
    username = body.string("username", "Username", min_len=3, max_len=50)
    password = body.string("password", "Password", min_len=6, max_len=100)
    body.validate()

    session = SessionLocal()
    try:
        result = AuthService(session, _settings()).login(username, password)
        if result is None:
            return jsonify({"message": "Invalid username or password"}), 401
        return jsonify(result)
    finally:
        session.close()


@api.post("/auth/register")
def register():
    auth = optional_auth()
    body = Payload(request.get_json(force=True, silent=True))
    username = body.string("username", "Username", min_len=3, max_len=50)
    email = body.email("email")
    password = body.string("password", "Password", min_len=6, max_len=100)
    role = body.choice("role", "Role", ROLES)
    employee_id = body.id("employeeId", "Employee id", required=False)
    body.validate()

    session = SessionLocal()
    try:
        result = AuthService(session, _settings()).register(
            username, email, password, role=role, employee_id=employee_id, auth=auth
        )
        return jsonify(result), 201
    finally:
        session.close()


@api.get("/auth/me")
@require_auth()
def current_user():
    session = SessionLocal()
    try:
        user = AuthService(session, _settings()).get_user(g.auth.user_id)
        if not user:
            raise NotFoundError("User not found")
        return jsonify(user_to_dict(user))
    finally:
        session.close()


@api.get("/auth/users")
@require_auth(*STAFF_ROLES)
def list_users():
    session = SessionLocal()
    try:
        users = AuthService(session, _settings()).list_users()
        return jsonify([user_to_dict(u) for u in users])
    finally:
        session.close()


@api.get("/auth/users/<id:user_id>")
@require_auth(*STAFF_ROLES)
def get_user(user_id):
    session = SessionLocal()
    try:
        user = AuthService(session, _settings()).get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return jsonify(user_to_dict(user))
    finally:
        session.close()


@api.post("/auth/change-password")
@require_auth()
def change_password():
    body = Payload(request.get_json(force=True, silent=True))
    old_password = body.string("oldPassword", "Current password")
    new_password = body.string("newPassword", "New password", min_len=6, max_len=100)
    body.validate()

    session = SessionLocal()
    try:
        changed = AuthService(session, _settings()).change_password(
            g.auth.user_id, old_password, new_password
        )
        if not changed:
            return jsonify({"message": "Current password is incorrect"}), 400
        return jsonify({"message": "Password has been changed"})
    finally:
        session.close()


# ----------------- category endpoints -----------------

def _category_payload():
    body = Payload(request.get_json(force=True, silent=True))
    fields = {
        "name": body.string("name", "Category name", min_len=2, max_len=100),
        "description": body.string("description", "Description", max_len=500, required=False) or "",
    }
    body.validate()
    return fields


@api.get("/categories")
@require_auth()
def list_categories():
    session = SessionLocal()
    try:
        categories = CategoryService(session).list_categories()
        return jsonify([category_to_dict(c) for c in categories])
    finally:
        session.close()


@api.get("/categories/<id:category_id>")
@require_auth()
def get_category(category_id):
    session = SessionLocal()
    try:
        category = CategoryService(session).get_category(category_id)
        if not category:
            raise NotFoundError("Category not found")
        return jsonify(category_to_dict(category))
    finally:
        session.close()


@api.post("/categories")
@require_auth(*STAFF_ROLES)
def create_category():
    fields = _category_payload()
    session = SessionLocal()
    try:
        category = CategoryService(session).create_category(**fields)
        logger.info("User %s created category %s", g.auth.username, category.id)
        return jsonify(category_to_dict(category)), 201
    finally:
        session.close()


@api.put("/categories/<id:category_id>")
@require_auth(*STAFF_ROLES)
def update_category(category_id):
    fields = _category_payload()
    session = SessionLocal()
    try:
        category = CategoryService(session).update_category(category_id, **fields)
        if not category:
            raise NotFoundError("Category not found")
        return jsonify(category_to_dict(category))
    finally:
        session.close()


@api.delete("/categories/<id:category_id>")
@require_auth(*STAFF_ROLES)
def delete_category(category_id):
    session = SessionLocal()
    try:
        if not CategoryService(session).delete_category(category_id):
            raise NotFoundError("Category not found")
        logger.info("User %s deleted category %s", g.auth.username, category_id)
        return "", 204
    finally:
        session.close()


# ----------------- author endpoints -----------------

def _author_payload():
    body = Payload(request.get_json(force=True, silent=True))
    fields = {
        "first_name": body.string("firstName", "First name", min_len=2, max_len=50),
        "last_name": body.string("lastName", "Last name", min_len=2, max_len=50),
        "biography": body.string("biography", "Biography", max_len=1000, required=False),
    }
    body.validate()
    return fields


@api.get("/authors")
@require_auth()
def list_authors():
    session = SessionLocal()
    try:
        authors = AuthorService(session).list_authors()
        return jsonify([author_to_dict(a) for a in authors])
    finally:
        session.close()


@api.get("/authors/<id:author_id>")
@require_auth()
def get_author(author_id):
    session = SessionLocal()
    try:
        author = AuthorService(session).get_author(author_id)
        if not author:
            raise NotFoundError("Author not found")
        return jsonify(author_to_dict(author))
    finally:
        session.close()


@api.post("/authors")
@require_auth(*STAFF_ROLES)
def create_author():
    fields = _author_payload()
    session = SessionLocal()
    try:
        author = AuthorService(session).create_author(**fields)
        logger.info("User %s created author %s", g.auth.username, author.id)
        return jsonify(author_to_dict(author)), 201
    finally:
        session.close()


@api.put("/authors/<id:author_id>")
@require_auth(*STAFF_ROLES)
def update_author(author_id):
    fields = _author_payload()
    session = SessionLocal()
    try:
        author = AuthorService(session).update_author(author_id, **fields)
        if not author:
            raise NotFoundError("Author not found")
        return jsonify(author_to_dict(author))
    finally:
        session.close()


@api.delete("/authors/<id:author_id>")
@require_auth(*STAFF_ROLES)
def delete_author(author_id):
    session = SessionLocal()
    try:
        if not AuthorService(session).delete_author(author_id):
            raise NotFoundError("Author not found")
        logger.info("User %s deleted author %s", g.auth.username, author_id)
        return "", 204
    finally:
        session.close()


# ----------------- book endpoints -----------------

def _book_payload():
    body = Payload(request.get_json(force=True, silent=True))
    fields = {
        "title": body.string("title", "Title", min_len=1, max_len=200),
        "isbn": body.isbn("isbn"),
        "publisher": body.string("publisher", "Publisher", max_len=100),
        "year": body.integer("year", "Year", min_value=1000, max_value=2100),
        "pages": body.integer("pages", "Pages", min_value=1, max_value=10000),
        "description": body.string("description", "Description", max_len=2000, required=False) or "",
        "category_id": body.id("categoryId", "Category"),
        "author_ids": body.int_list("authorIds", "Authors", min_items=1),
    }
    body.validate()
    return fields


@api.get("/books")
@require_auth()
def list_books():
    session = SessionLocal()
    try:
        books = BookService(session).list_books()
        return jsonify([book_to_dict(b) for b in books])
    finally:
        session.close()


@api.get("/books/<id:book_id>")
@require_auth()
def get_book(book_id):
    session = SessionLocal()
    try:
        book = BookService(session).get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return jsonify(book_to_dict(book))
    finally:
        session.close()


@api.get("/books/search")
@require_auth()
def search_books():
    """
    Case-insensitive match on title, ISBN, publisher, description or
    author name.  ?term=...
    """
    term = request.args.get("term", "")
    session = SessionLocal()
    try:
        books = BookService(session).search(term)
        return jsonify([book_to_dict(b) for b in books])
    finally:
        session.close()


@api.get("/books/category/<id:category_id>")
@require_auth()
def books_by_category(category_id):
    session = SessionLocal()
    try:
        books = BookService(session).list_by_category(category_id)
        return jsonify([book_to_dict(b) for b in books])
    finally:
        session.close()


@api.get("/books/available")
@require_auth()
def available_books():
    session = SessionLocal()
    try:
        books = BookService(session).list_available()
        return jsonify([book_to_dict(b) for b in books])
    finally:
        session.close()


@api.post("/books")
@require_auth(*STAFF_ROLES)
def create_book():
    fields = _book_payload()
    session = SessionLocal()
    try:
        logger.info("User %s creating book '%s'", g.auth.username, fields["title"])
        book = BookService(session).create_book(**fields)
        return jsonify(book_to_dict(book)), 201
    finally:
        session.close()


@api.put("/books/<id:book_id>")
@require_auth(*STAFF_ROLES)
def update_book(book_id):
    fields = _book_payload()
    session = SessionLocal()
    try:
        book = BookService(session).update_book(book_id, **fields)
        if not book:
            raise NotFoundError("Book not found")
        logger.info("User %s updated book %s", g.auth.username, book_id)
        return jsonify(book_to_dict(book))
    finally:
        session.close()


@api.delete("/books/<id:book_id>")
@require_auth(*STAFF_ROLES)
def delete_book(book_id):
    session = SessionLocal()
    try:
        if not BookService(session).delete_book(book_id):
            raise NotFoundError("Book not found")
        logger.info("User %s deleted book %s", g.auth.username, book_id)
        return "", 204
    finally:
        session.close()


@api.delete("/books/bulk")
@require_auth(*STAFF_ROLES)
def delete_books_bulk():
    """
    Body is a JSON list of book ids.  Unknown ids are skipped.
    """
    book_ids = request.get_json(force=True, silent=True)
    if (
        not isinstance(book_ids, list)
        or not book_ids
        or any(isinstance(i, bool) or not isinstance(i, int) for i in book_ids)
        or any(not 1 <= i <= MAX_ID for i in book_ids)
    ):
        return jsonify({"message": f"Book ids must be a non-empty list of ids between 1 and {MAX_ID}"}), 400

    session = SessionLocal()
    try:
        deleted = BookService(session).delete_books(book_ids)
        logger.info(
            "User %s bulk deleted %s of %s books", g.auth.username, deleted, len(book_ids)
        )
        return jsonify(
            {
                "message": f"Deleted {deleted} of {len(book_ids)} books",
                "deletedCount": deleted,
                "requestedCount": len(book_ids),
            }
        )
    finally:
        session.close()


# ----------------- employee endpoints -----------------

def _employee_payload():
    body = Payload(request.get_json(force=True, silent=True))
    fields = {
        "first_name": body.string("firstName", "First name", min_len=2, max_len=50),
        "last_name": body.string("lastName", "Last name", min_len=2, max_len=50),
        "email": body.email("email"),
        "department": body.string("department", "Department", max_len=100),
        "position": body.string("position", "Position", max_len=100),
    }
    body.validate()
    return fields


@api.get("/employees")
@require_auth()
def list_employees():
    session = SessionLocal()
    try:
        employees = EmployeeService(session).list_employees()
        return jsonify([employee_to_dict(e) for e in employees])
    finally:
        session.close()


@api.get("/employees/<id:employee_id>")
@require_auth()
def get_employee(employee_id):
    session = SessionLocal()
    try:
        employee = EmployeeService(session).get_employee(employee_id)
        if not employee:
            raise NotFoundError("Employee not found")
        return jsonify(employee_to_dict(employee))
    finally:
        session.close()


@api.post("/employees")
@require_auth(*STAFF_ROLES)
def create_employee():
    fields = _employee_payload()
    session = SessionLocal()
    try:
        employee = EmployeeService(session).create_employee(**fields)
        logger.info("User %s created employee %s", g.auth.username, employee.id)
        return jsonify(employee_to_dict(employee)), 201
    finally:
        session.close()


@api.put("/employees/<id:employee_id>")
@require_auth(*STAFF_ROLES)
def update_employee(employee_id):
    fields = _employee_payload()
    session = SessionLocal()
    try:
        employee = EmployeeService(session).update_employee(employee_id, **fields)
        if not employee:
            raise NotFoundError("Employee not found")
        return jsonify(employee_to_dict(employee))
    finally:
        session.close()


@api.delete("/employees/<id:employee_id>")
@require_auth(*STAFF_ROLES)
def delete_employee(employee_id):
    session = SessionLocal()
    try:
        if not EmployeeService(session).delete_employee(employee_id):
            raise NotFoundError("Employee not found")
        logger.info("User %s deleted employee %s", g.auth.username, employee_id)
        return "", 204
    finally:
        session.close()


# ----------------- loan endpoints -----------------

@api.get("/loans")
@require_auth()
def list_loans():
    session = SessionLocal()
    try:
        loans = LoanService(session).list_loans()
        return jsonify([loan_to_dict(l) for l in loans])
    finally:
        session.close()


@api.get("/loans/<id:loan_id>")
@require_auth()
def get_loan(loan_id):
    session = SessionLocal()
    try:
        loan = LoanService(session).get_loan(loan_id)
        if not loan:
            raise NotFoundError("Loan not found")
        return jsonify(loan_to_dict(loan))
    finally:
        session.close()


@api.post("/loans")
@require_auth()
def borrow_book():
    """
    Staff may lend to any employee; everyone else borrows as the employee
    linked to their account, whatever employeeId says.
    """
    auth = g.auth
    body = Payload(request.get_json(force=True, silent=True))
    book_id = body.id("bookId", "Book id")
    employee_id = body.id("employeeId", "Employee id", required=auth.is_staff)
    due_date = body.datetime("dueDate", "Due date")
    notes = body.string("notes", "Notes", max_len=500, required=False)
    body.validate()

    logger.info(
        "User %s (id %s) borrowing book %s for employee %s",
        auth.username,
        auth.user_id,
        book_id,
        employee_id,
    )
    session = SessionLocal()
    try:
        loan = LoanService(session).create_loan(
            book_id, employee_id, due_date, notes=notes, auth=auth
        )
        return jsonify(loan_to_dict(loan)), 201
    finally:
        session.close()


@api.post("/loans/<id:loan_id>/return")
@require_auth()
def return_book(loan_id):
    body = Payload(request.get_json(force=True, silent=True))
    return_date = body.datetime("returnDate", "Return date", required=False)
    notes = body.string("notes", "Notes", max_len=500, required=False)
    body.validate()

    session = SessionLocal()
    try:
        loan = LoanService(session).return_loan(
            loan_id, return_date=return_date, notes=notes, auth=g.auth
        )
        if not loan:
            raise NotFoundError("Loan not found")
        logger.info("User %s returned loan %s", g.auth.username, loan_id)
        return jsonify(loan_to_dict(loan)), 200
    finally:
        session.close()


@api.get("/loans/employee/<id:employee_id>")
@require_auth()
def loans_by_employee(employee_id):
    session = SessionLocal()
    try:
        loans = LoanService(session).list_by_employee(employee_id)
        return jsonify([loan_to_dict(l) for l in loans])
    finally:
        session.close()


@api.get("/loans/active")
@require_auth()
def active_loans():
    session = SessionLocal()
    try:
        loans = LoanService(session).list_active()
        return jsonify([loan_to_dict(l) for l in loans])
    finally:
        session.close()


@api.get("/loans/overdue")
@require_auth(*STAFF_ROLES)
def overdue_loans():
    session = SessionLocal()
    try:
        loans = LoanService(session).list_overdue()
        return jsonify([loan_to_dict(l) for l in loans])
    finally:
        session.close()


# ----------------- report endpoints -----------------

@api.get("/reports/dashboard")
def dashboard():
    session = SessionLocal()
    try:
        return jsonify(dashboard_stats(session))
    finally:
        session.close()


@api.get("/reports/export/books")
@require_auth()
def export_books_csv():
    session = SessionLocal()
    try:
        data = books_csv(session).encode("utf-8")
    finally:
        session.close()
    return _files(data, "text/csv", export_filename("books", "csv"))


@api.get("/reports/export/loans")
@require_auth()
def export_loans_csv():
    session = SessionLocal()
    try:
        data = loans_csv(session).encode("utf-8")
    finally:
        session.close()
    return _files(data, "text/csv", export_filename("loans", "csv"))


@api.get("/reports/export/books/pdf")
@require_auth()
def export_books_pdf():
    session = SessionLocal()
    try:
        data = books_pdf(session)
    finally:
        session.close()
    return _files(data, "application/pdf", export_filename("books", "pdf"))


@api.get("/reports/export/loans/pdf")
@require_auth()
def export_loans_pdf():
    session = SessionLocal()
    try:
        data = loans_pdf(session)
    finally:
        session.close()
    return _files(data, "application/pdf", export_filename("loans", "pdf"))


# ----------------- log viewer -----------------

@api.get("/logs")
@require_auth(ROLE_ADMIN)
def recent_logs():
    return jsonify(read_recent_logs(_settings().get("LOG_DIR")))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
