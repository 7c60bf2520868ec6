"""Loan lifecycle.

A loan is Active from creation until it is returned; Returned is terminal.
``Book.is_available`` mirrors "this book has no active loan".  Both the
create and the return path flip that flag with a conditional UPDATE
(``... WHERE is_available = <expected>``) inside the same transaction as the
loan write, so two concurrent requests can never both take the same book or
both return the same loan: the loser sees zero affected rows and gets a
ConflictError, and its transaction is rolled back.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import joinedload

from .errors import ConflictError, ForbiddenError, InvalidReferenceError
from .models import Book, Employee, Loan

logger = logging.getLogger(__name__)


class LoanService:
    def __init__(self, session):
        self.session = session

    def _query(self):
        return select(Loan).options(joinedload(Loan.book), joinedload(Loan.employee))

    # ---- queries

    def list_loans(self):
        return self.session.execute(self._query().order_by(Loan.id)).scalars().all()

    def get_loan(self, loan_id):
        return self.session.execute(
            self._query().where(Loan.id == loan_id)
        ).scalar_one_or_none()

    def list_by_employee(self, employee_id):
        q = self._query().where(Loan.employee_id == employee_id).order_by(Loan.id)
        return self.session.execute(q).scalars().all()

    def list_active(self):
        q = self._query().where(Loan.is_returned.is_(False)).order_by(Loan.id)
        return self.session.execute(q).scalars().all()

    def list_overdue(self, now=None):
        """Active loans past their due date, earliest due first."""
        now = now or datetime.utcnow()
        q = (
            self._query()
            .where(Loan.is_returned.is_(False), Loan.due_date < now)
            .order_by(Loan.due_date, Loan.id)
        )
        return self.session.execute(q).scalars().all()

    # ---- transitions

    def create_loan(self, book_id, employee_id, due_date, notes=None, auth=None):
        if auth is not None and not auth.is_staff:
            if auth.employee_id is None:
                logger.warning(
                    "User %s (id %s) tried to borrow without a linked employee",
                    auth.username,
                    auth.user_id,
                )
                raise InvalidReferenceError(
                    "Your account is not linked to an employee. Contact an administrator."
                )
            # non-staff always borrow for themselves
            employee_id = auth.employee_id

        logger.info("Creating loan: book %s for employee %s", book_id, employee_id)

        book = self.session.get(Book, book_id)
        if book is None:
            logger.warning("Loan rejected: book %s not found", book_id)
            raise InvalidReferenceError("Book not found")
        if not book.is_available:
            logger.warning("Loan rejected: book %s (%s) is not available", book.id, book.title)
            raise ConflictError("Book is not available")

        employee = self.session.get(Employee, employee_id)
        if employee is None:
            logger.warning("Loan rejected: employee %s not found", employee_id)
            raise InvalidReferenceError("Employee not found")

        try:
            taken = self.session.execute(
                update(Book)
                .where(Book.id == book_id, Book.is_available.is_(True))
                .values(is_available=False)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                logger.warning("Loan rejected: book %s was taken concurrently", book_id)
                raise ConflictError("Book is not available")

            loan = Loan(
                book_id=book_id,
                employee_id=employee_id,
                loan_date=datetime.utcnow(),
                due_date=due_date,
                return_date=None,
                is_returned=False,
                notes=notes,
            )
            self.session.add(loan)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "Loan %s created: '%s' to %s, due %s",
            loan.id,
            book.title,
            employee.full_name,
            loan.due_date.isoformat(),
        )
        return self.get_loan(loan.id)

    def return_loan(self, loan_id, return_date=None, notes=None, auth=None):
        """
        Return None if the loan does not exist.
        """
        logger.info("Returning loan %s", loan_id)

        loan = self.get_loan(loan_id)
        if loan is None:
            logger.warning("Return rejected: loan %s not found", loan_id)
            return None
        if auth is not None and not auth.is_staff and loan.employee_id != auth.employee_id:
            logger.warning(
                "User %s tried to return loan %s of employee %s",
                auth.username,
                loan_id,
                loan.employee_id,
            )
            raise ForbiddenError("You can only return your own loans")
        if loan.is_returned:
            logger.warning("Return rejected: loan %s ('%s') already returned", loan_id, loan.book.title)
            raise ConflictError("Loan has already been returned")

        return_date = return_date or datetime.utcnow()
        values = {"return_date": return_date, "is_returned": True}
        if notes is not None:
            values["notes"] = notes

        try:
            closed = self.session.execute(
                update(Loan)
                .where(Loan.id == loan_id, Loan.is_returned.is_(False))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount != 1:
                raise ConflictError("Loan has already been returned")

            self.session.execute(
                update(Book)
                .where(Book.id == loan.book_id)
                .values(is_available=True)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        # bulk updates bypass the identity map
        self.session.expire_all()
        loan = self.get_loan(loan_id)
        logger.info("Loan %s returned, '%s' available again", loan.id, loan.book.title)
        return loan
