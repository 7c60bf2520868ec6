# library_service/models.py
from datetime import datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Table,
    Text,
)

Base = declarative_base()


book_author = Table(
    "book_author",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("book.id", ondelete="CASCADE"), primary_key=True),
    Column("author_id", Integer, ForeignKey("author.id", ondelete="CASCADE"), primary_key=True),
)


class Category(Base):
    __tablename__ = "category"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False, default="")

    books = relationship("Book", back_populates="category")


class Author(Base):
    __tablename__ = "author"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    biography = Column(Text)

    books = relationship("Book", secondary=book_author, back_populates="authors")

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    isbn = Column(String(13), unique=True, nullable=False)
    publisher = Column(String(100), nullable=False, default="")
    year = Column(Integer, nullable=False)
    pages = Column(Integer, nullable=False)
    description = Column(Text, nullable=False, default="")
    # Cached "has no open loan" flag; only LoanService flips it, with a
    # conditional UPDATE in the same transaction as the loan row.
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime)

    category_id = Column(Integer, ForeignKey("category.id"), nullable=False)

    category = relationship("Category", back_populates="books")
    authors = relationship(
        "Author",
        secondary=book_author,
        back_populates="books",
        order_by="Author.id",
    )
    loans = relationship("Loan", back_populates="book")


class Employee(Base):
    __tablename__ = "employee"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(100), unique=True, nullable=False)
    department = Column(String(100), nullable=False)
    position = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    loans = relationship("Loan", back_populates="employee")
    user = relationship("User", back_populates="employee", uselist=False)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Loan(Base):
    __tablename__ = "loan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    employee_id = Column(Integer, ForeignKey("employee.id"), nullable=False)
    loan_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    is_returned = Column(Boolean, nullable=False, default=False)
    notes = Column(String(500))

    book = relationship("Book", back_populates="loans")
    employee = relationship("Employee", back_populates="loans")


class User(Base):
    """
    Login identity. Optionally linked to the Employee it borrows as.
    """
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(100), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="Employee")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_login_at = Column(DateTime)

    employee_id = Column(
        Integer,
        ForeignKey("employee.id", ondelete="SET NULL"),
        unique=True,
    )

    employee = relationship("Employee", back_populates="user")
