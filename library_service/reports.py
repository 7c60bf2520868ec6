"""
Dashboard counters and CSV / PDF exports of books and loans.
"""

import csv
import io
import os
from datetime import datetime
from glob import glob
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import func, select
from sqlalchemy.orm import joinedload, selectinload

from .models import Book, Employee, Loan

STATUS_RETURNED = "Returned"
STATUS_OVERDUE = "Overdue"
STATUS_ON_LOAN = "On loan"

BOOK_COLUMNS = ["Id", "Title", "ISBN", "Publisher", "Year", "Category", "Authors", "Available"]
LOAN_COLUMNS = ["Id", "Book", "Employee", "Loan date", "Due date", "Return date", "Status"]

LOG_TAIL = 100


def loan_status(loan, now):
    if loan.return_date is not None:
        return STATUS_RETURNED
    if loan.due_date < now:
        return STATUS_OVERDUE
    return STATUS_ON_LOAN


def export_filename(prefix, extension, now=None):
    now = now or datetime.now()
    return f"{prefix}_{now:%Y%m%d_%H%M}.{extension}"


def dashboard_stats(session, now=None):
    now = now or datetime.utcnow()
    active = Loan.return_date.is_(None)
    return {
        "totalBooks": session.scalar(select(func.count(Book.id))),
        "totalEmployees": session.scalar(select(func.count(Employee.id))),
        "activeLoans": session.scalar(select(func.count(Loan.id)).where(active)),
        "overdueLoans": session.scalar(
            select(func.count(Loan.id)).where(active, Loan.due_date < now)
        ),
    }


def _books(session):
    q = (
        select(Book)
        .options(selectinload(Book.authors), selectinload(Book.category))
        .order_by(Book.id)
    )
    return session.execute(q).scalars().all()


def _loans(session):
    q = (
        select(Loan)
        .options(joinedload(Loan.book), joinedload(Loan.employee))
        .order_by(Loan.id)
    )
    return session.execute(q).scalars().all()


def _book_rows(session, author_sep):
    for book in _books(session):
        yield [
            book.id,
            book.title,
            book.isbn,
            book.publisher,
            book.year,
            book.category.name if book.category else "",
            author_sep.join(a.full_name for a in book.authors),
            "Yes" if book.is_available else "No",
        ]


def _loan_rows(session, now):
    for loan in _loans(session):
        yield [
            loan.id,
            loan.book.title,
            loan.employee.full_name,
            f"{loan.loan_date:%Y-%m-%d}",
            f"{loan.due_date:%Y-%m-%d}",
            f"{loan.return_date:%Y-%m-%d}" if loan.return_date else "",
            loan_status(loan, now),
        ]


def _to_csv(header, rows):
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(header)
    writer.writerows(rows)
    return out.getvalue()


def books_csv(session):
    return _to_csv(BOOK_COLUMNS, _book_rows(session, author_sep="; "))


def loans_csv(session, now=None):
    return _to_csv(LOAN_COLUMNS, _loan_rows(session, now or datetime.utcnow()))


# ---------------------------------------------------------
# PDF
# ---------------------------------------------------------

def _page_footer(canvas, doc):
    canvas.saveState()
    canvas.setFont("Helvetica", 9)
    canvas.drawCentredString(A4[0] / 2, 1 * cm, f"Page {doc.page}")
    canvas.restoreState()


def _render_pdf(title, header, rows, col_widths):
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=2 * cm,
        rightMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        title=title,
    )
    styles = getSampleStyleSheet()
    cell = ParagraphStyle("cell", parent=styles["BodyText"], fontSize=8, leading=10)

    data = [header]
    for row in rows:
        data.append([Paragraph(escape(str(value)), cell) for value in row])

    table = Table(data, colWidths=[w * cm for w in col_widths], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, 0), 9),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.grey),
            ]
        )
    )

    story = [
        Paragraph(escape(title), styles["Title"]),
        Paragraph(f"Generated {datetime.now():%Y-%m-%d %H:%M}", styles["Normal"]),
        Spacer(1, 0.5 * cm),
        table,
    ]
    doc.build(story, onFirstPage=_page_footer, onLaterPages=_page_footer)
    return buffer.getvalue()


def books_pdf(session):
    return _render_pdf(
        "Book catalog",
        ["Id", "Title", "ISBN", "Authors", "Category", "Year", "Available"],
        ([r[0], r[1], r[2], r[6], r[5], r[4], r[7]] for r in _book_rows(session, author_sep=", ")),
        col_widths=[1.0, 4.5, 2.6, 3.9, 2.5, 1.2, 1.3],
    )


def loans_pdf(session, now=None):
    return _render_pdf(
        "Loan report",
        LOAN_COLUMNS,
        _loan_rows(session, now or datetime.utcnow()),
        col_widths=[1.0, 4.5, 3.5, 2.0, 2.0, 2.0, 2.0],
    )


# ---------------------------------------------------------
# Log viewer
# ---------------------------------------------------------

def read_recent_logs(log_dir, limit=LOG_TAIL):
    """Newest lines first from the latest log-*.txt file in log_dir."""
    if not log_dir or not os.path.isdir(log_dir):
        return ["Log directory does not exist or is empty."]

    files = sorted(glob(os.path.join(log_dir, "log-*.txt")), reverse=True)
    if not files:
        return ["No log files found."]

    with open(files[0], "r", encoding="utf-8", errors="replace") as f:
        lines = [line.rstrip("\n") for line in f if line.strip()]
    return list(reversed(lines))[:limit]
