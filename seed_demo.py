# seed_demo.py
import os
from datetime import datetime, timedelta

import requests

LIBRARY_BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")

ADMIN = {
    "username": "admin",
    "email": "admin@company.local",
    "password": "admin123",
}
EMPLOYEE_PASSWORD = "employee123"

CATEGORIES = [
    {"name": "Software Engineering", "description": "Craft, design and practice"},
    {"name": "Computer Science", "description": "Algorithms and systems"},
    {"name": "Operations", "description": "Running software in production"},
]

AUTHORS = [
    {"firstName": "Robert", "lastName": "Martin"},
    {"firstName": "Andrew", "lastName": "Hunt"},
    {"firstName": "David", "lastName": "Thomas"},
    {"firstName": "Martin", "lastName": "Kleppmann"},
    {"firstName": "Thomas", "lastName": "Cormen"},
    {"firstName": "Kelsey", "lastName": "Hightower"},
]

# category / authors are indexes into the lists above
BOOKS = [
    {
        "isbn": "9780132350884",
        "title": "Clean Code",
        "publisher": "Prentice Hall",
        "year": 2008,
        "pages": 464,
        "category": 0,
        "authors": [0],
    },
    {
        "isbn": "9780201616224",
        "title": "The Pragmatic Programmer",
        "publisher": "Addison-Wesley",
        "year": 1999,
        "pages": 352,
        "category": 0,
        "authors": [1, 2],
    },
    {
        "isbn": "9780134494166",
        "title": "Clean Architecture",
        "publisher": "Prentice Hall",
        "year": 2017,
        "pages": 432,
        "category": 0,
        "authors": [0],
    },
    {
        "isbn": "9781449373320",
        "title": "Designing Data-Intensive Applications",
        "publisher": "O'Reilly Media",
        "year": 2017,
        "pages": 616,
        "category": 1,
        "authors": [3],
    },
    {
        "isbn": "9780262033848",
        "title": "Introduction to Algorithms",
        "publisher": "MIT Press",
        "year": 2009,
        "pages": 1312,
        "category": 1,
        "authors": [4],
    },
    {
        "isbn": "9781491935675",
        "title": "Kubernetes: Up & Running",
        "publisher": "O'Reilly Media",
        "year": 2017,
        "pages": 202,
        "category": 2,
        "authors": [5],
    },
]

EMPLOYEES = [
    {
        "firstName": "Anna",
        "lastName": "Kowalska",
        "email": "anna.kowalska@company.local",
        "department": "Engineering",
        "position": "Backend Developer",
        "username": "akowalska",
    },
    {
        "firstName": "Piotr",
        "lastName": "Nowak",
        "email": "piotr.nowak@company.local",
        "department": "Operations",
        "position": "SRE",
        "username": "pnowak",
    },
    {
        "firstName": "Maria",
        "lastName": "Wisniewska",
        "email": "maria.wisniewska@company.local",
        "department": "HR",
        "position": "Recruiter",
        "username": "mwisniewska",
    },
]


def _url(base_url, path):
    return f"{base_url.rstrip('/')}/api{path}"


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def check_service(url, http=requests):
    """Hit /api/health and return True/False."""
    health_url = _url(url, "/health")
    try:
        r = http.get(health_url, timeout=3)
        print(f"[CHECK] library -> {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] library not reachable at {health_url}: {e}")
        return False


def post(http, base_url, path, token, payload, label):
    """POST a JSON body; print the outcome and return the decoded body or None."""
    resp = http.post(_url(base_url, path), headers=_auth(token), json=payload, timeout=5)
    print(f"  {label} -> {resp.status_code}")
    if not resp.ok:
        print(f"      Body: {resp.text.strip()}")
        return None
    return resp.json()


def admin_token(base_url, http=requests):
    """
    Register the bootstrap admin on an empty database, otherwise log in.
    """
    print("\n== Admin account ==")
    resp = http.post(_url(base_url, "/auth/register"), json=ADMIN, timeout=5)
    if resp.ok:
        print(f"  registered {ADMIN['username']} -> {resp.status_code}")
        return resp.json()["token"]

    resp = http.post(
        _url(base_url, "/auth/login"),
        json={"username": ADMIN["username"], "password": ADMIN["password"]},
        timeout=5,
    )
    print(f"  login {ADMIN['username']} -> {resp.status_code}")
    if not resp.ok:
        return None
    return resp.json()["token"]


def seed_catalog(base_url, token, http=requests):
    """Create categories, authors and books; return the new book ids."""
    print("\n== Seeding catalog ==")
    category_ids = []
    for c in CATEGORIES:
        body = post(http, base_url, "/categories", token, c, f"category {c['name']}")
        category_ids.append(body["id"] if body else None)

    author_ids = []
    for a in AUTHORS:
        body = post(http, base_url, "/authors", token, a, f"author {a['firstName']} {a['lastName']}")
        author_ids.append(body["id"] if body else None)

    book_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = {k: v for k, v in book.items() if k not in ("category", "authors")}
        payload["categoryId"] = category_ids[book["category"]]
        payload["authorIds"] = [author_ids[a] for a in book["authors"]]
        body = post(http, base_url, "/books", token, payload, f"[{i:02}] {book['title']}")
        if body:
            book_ids.append(body["id"])
    return book_ids


def seed_employees(base_url, token, http=requests):
    """Create employees, each with a linked Employee-role login."""
    print("\n== Seeding employees ==")
    employee_ids = []
    for e in EMPLOYEES:
        payload = {k: v for k, v in e.items() if k != "username"}
        body = post(http, base_url, "/employees", token, payload, f"employee {e['email']}")
        if not body:
            continue
        employee_ids.append(body["id"])
        post(
            http,
            base_url,
            "/auth/register",
            token,
            {
                "username": e["username"],
                "email": e["email"],
                "password": EMPLOYEE_PASSWORD,
                "role": "Employee",
                "employeeId": body["id"],
            },
            f"user {e['username']}",
        )
    return employee_ids


def seed_loans(base_url, token, book_ids, employee_ids, http=requests, now=None):
    """
    One returned loan, one on loan and one overdue, so the dashboard and
    the exports have something to show.
    """
    print("\n== Seeding loans ==")
    if len(book_ids) < 3 or not employee_ids:
        print("  not enough books or employees, skipping")
        return []

    now = now or datetime.utcnow()
    plans = [
        (book_ids[0], employee_ids[0], now + timedelta(days=14), True),
        (book_ids[1], employee_ids[-1], now + timedelta(days=14), False),
        (book_ids[2], employee_ids[0], now - timedelta(days=3), False),
    ]

    loan_ids = []
    for book_id, employee_id, due, returned in plans:
        payload = {"bookId": book_id, "employeeId": employee_id, "dueDate": due.isoformat()}
        body = post(http, base_url, "/loans", token, payload, f"loan book {book_id} -> employee {employee_id}")
        if not body:
            continue
        loan_ids.append(body["id"])
        if returned:
            post(http, base_url, f"/loans/{body['id']}/return", token, {}, f"return loan {body['id']}")
    return loan_ids


def main():
    # 0) Make sure the service is up
    print("Checking library service...")
    if not check_service(LIBRARY_BASE_URL):
        print("\nLibrary service is not reachable. Make sure it is running on 5000.")
        return

    # 1) Admin token
    token = admin_token(LIBRARY_BASE_URL)
    if not token:
        print("\nCould not register or log in the admin user.")
        return

    # 2) Catalog, people, loans
    book_ids = seed_catalog(LIBRARY_BASE_URL, token)
    employee_ids = seed_employees(LIBRARY_BASE_URL, token)
    seed_loans(LIBRARY_BASE_URL, token, book_ids, employee_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {LIBRARY_BASE_URL}/api/reports/dashboard")
    print(f"  and log in as {EMPLOYEES[0]['username']} / {EMPLOYEE_PASSWORD}")


if __name__ == "__main__":
    main()
