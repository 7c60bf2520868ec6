from datetime import datetime, timedelta


def due(days=14):
    return (datetime.utcnow() + timedelta(days=days)).isoformat() + "Z"


def borrow(client, headers, book_id, employee_id=None, days=14):
    payload = {"bookId": book_id, "dueDate": due(days)}
    if employee_id is not None:
        payload["employeeId"] = employee_id
    return client.post("/api/loans", json=payload, headers=headers)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_loans_require_a_token(client, library):
    assert client.get("/api/loans").status_code == 401
    response = borrow(client, {}, library.book_id, library.employee_id)
    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required"


def test_librarian_lends_a_book(client, library, users):
    response = borrow(client, users.librarian, library.book_id, library.employee2_id)

    assert response.status_code == 201
    body = response.get_json()
    assert body["bookId"] == library.book_id
    assert body["bookTitle"] == "Clean Code"
    assert body["employeeId"] == library.employee2_id
    assert body["employeeName"] == "Piotr Nowak"
    assert body["isReturned"] is False
    assert body["returnDate"] is None

    book = client.get(f"/api/books/{library.book_id}", headers=users.librarian).get_json()
    assert book["isAvailable"] is False


def test_borrowing_a_lent_book_fails(client, library, users):
    borrow(client, users.librarian, library.book_id, library.employee2_id)

    response = borrow(client, users.librarian, library.book_id, library.employee_id)

    assert response.status_code == 400
    assert response.get_json()["message"] == "Book is not available"


def test_borrow_unknown_book(client, library, users):
    response = borrow(client, users.librarian, 999, library.employee_id)
    assert response.status_code == 400
    assert response.get_json()["message"] == "Book not found"


def test_borrow_validation_errors(client, library, users):
    response = client.post(
        "/api/loans", json={"bookId": library.book_id}, headers=users.librarian
    )

    assert response.status_code == 400
    body = response.get_json()
    assert body["message"] == "Validation failed"
    assert "Due date is required" in body["errors"]
    assert "Employee id is required" in body["errors"]


def test_employee_borrows_for_themselves(client, library, users):
    response = borrow(client, users.employee, library.book_id, library.employee2_id)

    assert response.status_code == 201
    assert response.get_json()["employeeId"] == library.employee_id


def test_employee_may_omit_employee_id(client, library, users):
    response = borrow(client, users.employee, library.book_id)

    assert response.status_code == 201
    assert response.get_json()["employeeId"] == library.employee_id


def test_unlinked_user_cannot_borrow(client, library, users):
    response = borrow(client, users.unlinked, library.book_id, library.employee_id)

    assert response.status_code == 400
    assert "not linked to an employee" in response.get_json()["message"]


def test_return_flow(client, library, users):
    loan = borrow(client, users.employee, library.book_id).get_json()

    response = client.post(
        f"/api/loans/{loan['id']}/return", json={"notes": "all good"}, headers=users.employee
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["isReturned"] is True
    assert body["returnDate"] is not None
    assert body["notes"] == "all good"

    again = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=users.employee)
    assert again.status_code == 400
    assert again.get_json()["message"] == "Loan has already been returned"

    book = client.get(f"/api/books/{library.book_id}", headers=users.employee).get_json()
    assert book["isAvailable"] is True


def test_return_unknown_loan(client, library, users):
    response = client.post("/api/loans/404/return", json={}, headers=users.librarian)
    assert response.status_code == 404
    assert response.get_json()["message"] == "Loan not found"


def test_employee_cannot_return_other_loans(client, library, users):
    loan = borrow(client, users.librarian, library.book_id, library.employee2_id).get_json()

    response = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=users.employee)

    assert response.status_code == 403


def test_staff_can_return_any_loan(client, library, users):
    loan = borrow(client, users.employee, library.book_id).get_json()

    response = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=users.librarian)

    assert response.status_code == 200


def test_loan_queries(client, library, users):
    first = borrow(client, users.librarian, library.book_id, library.employee_id).get_json()
    second = borrow(client, users.librarian, library.book2_id, library.employee2_id, days=-3).get_json()
    client.post(f"/api/loans/{first['id']}/return", json={}, headers=users.librarian)

    all_loans = client.get("/api/loans", headers=users.employee).get_json()
    assert [l["id"] for l in all_loans] == [first["id"], second["id"]]

    active = client.get("/api/loans/active", headers=users.employee).get_json()
    assert [l["id"] for l in active] == [second["id"]]

    mine = client.get(f"/api/loans/employee/{library.employee_id}", headers=users.employee).get_json()
    assert [l["id"] for l in mine] == [first["id"]]

    single = client.get(f"/api/loans/{second['id']}", headers=users.employee)
    assert single.status_code == 200
    assert single.get_json()["bookTitle"] == "Refactoring"

    assert client.get("/api/loans/999", headers=users.employee).status_code == 404


def test_overdue_is_staff_only(client, library, users):
    late = borrow(client, users.librarian, library.book_id, library.employee_id, days=-1).get_json()

    assert client.get("/api/loans/overdue", headers=users.employee).status_code == 403

    response = client.get("/api/loans/overdue", headers=users.librarian)
    assert response.status_code == 200
    assert [l["id"] for l in response.get_json()] == [late["id"]]


def test_out_of_range_ids(client, library, users):
    huge = 10**20

    response = client.post(
        "/api/loans",
        json={"bookId": huge, "employeeId": huge, "dueDate": due()},
        headers=users.librarian,
    )
    assert response.status_code == 400
    errors = response.get_json()["errors"]
    assert "Book id must be between 1 and 2147483647" in errors
    assert "Employee id must be between 1 and 2147483647" in errors

    assert client.post(f"/api/loans/{huge}/return", json={}, headers=users.librarian).status_code == 404
    assert client.get(f"/api/loans/{huge}", headers=users.librarian).status_code == 404
    assert client.get(f"/api/loans/employee/{huge}", headers=users.librarian).status_code == 404
    assert client.get(f"/api/books/{huge}", headers=users.librarian).status_code == 404
