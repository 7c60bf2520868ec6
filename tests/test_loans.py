from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from library_service.auth import ROLE_EMPLOYEE, ROLE_LIBRARIAN, AuthContext
from library_service.db import SessionLocal
from library_service.errors import ConflictError, ForbiddenError, InvalidReferenceError
from library_service.loans import LoanService
from library_service.models import Book, Loan


def due_in(days):
    return datetime.utcnow() + timedelta(days=days)


def book_available(book_id):
    s = SessionLocal()
    try:
        return s.get(Book, book_id).is_available
    finally:
        s.close()


def test_create_loan_takes_the_book(session, library):
    loan = LoanService(session).create_loan(
        library.book_id, library.employee_id, due_in(14), notes="desk 4"
    )

    assert loan.id is not None
    assert loan.is_returned is False
    assert loan.return_date is None
    assert loan.notes == "desk 4"
    assert loan.book.title == "Clean Code"
    assert loan.employee.full_name == "Anna Kowalska"
    assert book_available(library.book_id) is False


def test_second_loan_of_same_book_is_rejected(session, library):
    service = LoanService(session)
    service.create_loan(library.book_id, library.employee_id, due_in(14))

    with pytest.raises(ConflictError) as exc:
        service.create_loan(library.book_id, library.employee2_id, due_in(7))
    assert exc.value.message == "Book is not available"
    assert len(service.list_loans()) == 1


def test_missing_book_is_invalid_reference(session, library):
    with pytest.raises(InvalidReferenceError) as exc:
        LoanService(session).create_loan(9999, library.employee_id, due_in(14))
    assert exc.value.message == "Book not found"


def test_missing_employee_leaves_book_available(session, library):
    with pytest.raises(InvalidReferenceError) as exc:
        LoanService(session).create_loan(library.book_id, 9999, due_in(14))
    assert exc.value.message == "Employee not found"
    assert book_available(library.book_id) is True
    assert LoanService(session).list_loans() == []


def test_return_loan_frees_the_book(session, library):
    service = LoanService(session)
    loan = service.create_loan(library.book_id, library.employee_id, due_in(14), notes="first")

    returned = service.return_loan(loan.id)

    assert returned.is_returned is True
    assert returned.return_date is not None
    assert returned.notes == "first"
    assert book_available(library.book_id) is True


def test_return_loan_with_notes_and_date(session, library):
    service = LoanService(session)
    loan = service.create_loan(library.book_id, library.employee_id, due_in(14), notes="first")
    when = datetime(2030, 1, 2, 10, 30)

    returned = service.return_loan(loan.id, return_date=when, notes="cover torn")

    assert returned.return_date == when
    assert returned.notes == "cover torn"


def test_return_twice_is_rejected(session, library):
    service = LoanService(session)
    loan = service.create_loan(library.book_id, library.employee_id, due_in(14))
    service.return_loan(loan.id)

    with pytest.raises(ConflictError) as exc:
        service.return_loan(loan.id)
    assert exc.value.message == "Loan has already been returned"


def test_return_missing_loan_returns_none(session, library):
    assert LoanService(session).return_loan(12345) is None


def test_book_can_be_borrowed_again_after_return(session, library):
    service = LoanService(session)
    first = service.create_loan(library.book_id, library.employee_id, due_in(14))
    service.return_loan(first.id)

    second = service.create_loan(library.book_id, library.employee2_id, due_in(14))

    assert second.id != first.id
    assert [l.id for l in service.list_active()] == [second.id]
    assert [l.id for l in service.list_by_employee(library.employee_id)] == [first.id]


def test_overdue_lists_only_active_loans_past_due(session, library):
    service = LoanService(session)
    late = service.create_loan(library.book_id, library.employee_id, due_in(-2))
    on_time = service.create_loan(library.book2_id, library.employee2_id, due_in(5))

    assert [l.id for l in service.list_overdue()] == [late.id]
    assert [l.id for l in service.list_active()] == [late.id, on_time.id]

    service.return_loan(late.id)
    assert service.list_overdue() == []


def test_overdue_is_ordered_by_due_date(session, library):
    service = LoanService(session)
    later = service.create_loan(library.book_id, library.employee_id, due_in(-1))
    earlier = service.create_loan(library.book2_id, library.employee2_id, due_in(-5))

    assert [l.id for l in service.list_overdue()] == [earlier.id, later.id]


def test_non_staff_always_borrows_for_own_employee(session, library):
    auth = AuthContext(user_id=7, username="anna", role=ROLE_EMPLOYEE, employee_id=library.employee_id)

    loan = LoanService(session).create_loan(
        library.book_id, library.employee2_id, due_in(14), auth=auth
    )

    assert loan.employee_id == library.employee_id


def test_staff_lends_to_any_employee(session, library):
    auth = AuthContext(user_id=2, username="librarian", role=ROLE_LIBRARIAN)

    loan = LoanService(session).create_loan(
        library.book_id, library.employee2_id, due_in(14), auth=auth
    )

    assert loan.employee_id == library.employee2_id


def test_unlinked_account_cannot_borrow(session, library):
    auth = AuthContext(user_id=9, username="guest", role=ROLE_EMPLOYEE, employee_id=None)

    with pytest.raises(InvalidReferenceError) as exc:
        LoanService(session).create_loan(library.book_id, library.employee_id, due_in(14), auth=auth)
    assert "not linked to an employee" in exc.value.message
    assert book_available(library.book_id) is True


def test_non_staff_cannot_return_someone_elses_loan(session, library):
    service = LoanService(session)
    loan = service.create_loan(library.book_id, library.employee2_id, due_in(14))
    anna = AuthContext(user_id=7, username="anna", role=ROLE_EMPLOYEE, employee_id=library.employee_id)

    with pytest.raises(ForbiddenError):
        service.return_loan(loan.id, auth=anna)
    assert book_available(library.book_id) is False


def test_stale_availability_read_cannot_double_lend(app, library):
    first = SessionLocal()
    second = SessionLocal()
    try:
        # first session has already seen the book as available
        assert first.get(Book, library.book_id).is_available is True

        LoanService(second).create_loan(library.book_id, library.employee2_id, due_in(14))

        with pytest.raises(ConflictError):
            LoanService(first).create_loan(library.book_id, library.employee_id, due_in(14))
    finally:
        first.close()
        second.close()

    s = SessionLocal()
    try:
        count = s.scalar(
            select(func.count(Loan.id)).where(Loan.book_id == library.book_id, Loan.is_returned.is_(False))
        )
    finally:
        s.close()
    assert count == 1


def test_stale_loan_read_cannot_return_twice(app, library):
    setup = SessionLocal()
    try:
        loan_id = LoanService(setup).create_loan(
            library.book_id, library.employee_id, due_in(14)
        ).id
    finally:
        setup.close()

    first = SessionLocal()
    second = SessionLocal()
    try:
        assert LoanService(first).get_loan(loan_id).is_returned is False

        LoanService(second).return_loan(loan_id)

        with pytest.raises(ConflictError):
            LoanService(first).return_loan(loan_id)
    finally:
        first.close()
        second.close()

    assert book_available(library.book_id) is True
