import logging
from datetime import datetime

from sqlalchemy import String, func, or_, select
from sqlalchemy.orm import selectinload

from .errors import ConflictError, InvalidReferenceError
from .models import Author, Book, Category, Loan

logger = logging.getLogger(__name__)


class CategoryService:
    def __init__(self, session):
        self.session = session

    def list_categories(self):
        return self.session.execute(select(Category).order_by(Category.id)).scalars().all()

    def get_category(self, category_id):
        return self.session.get(Category, category_id)

    def create_category(self, name, description=""):
        logger.info("Creating category %s", name)
        category = Category(name=name, description=description or "")
        self.session.add(category)
        self.session.commit()
        logger.info("Category %s created: %s", category.id, category.name)
        return category

    def update_category(self, category_id, name, description=""):
        category = self.session.get(Category, category_id)
        if category is None:
            logger.warning("Update of missing category %s", category_id)
            return None
        logger.info("Updating category %s: %s -> %s", category_id, category.name, name)
        category.name = name
        category.description = description or ""
        self.session.commit()
        return category

    def delete_category(self, category_id):
        category = self.session.get(Category, category_id)
        if category is None:
            logger.warning("Delete of missing category %s", category_id)
            return False
        in_use = self.session.execute(
            select(Book.id).where(Book.category_id == category_id).limit(1)
        ).first()
        if in_use:
            raise ConflictError("Category still has books and cannot be deleted")
        self.session.delete(category)
        self.session.commit()
        logger.info("Category %s deleted", category_id)
        return True


class AuthorService:
    def __init__(self, session):
        self.session = session

    def list_authors(self):
        return self.session.execute(select(Author).order_by(Author.id)).scalars().all()

    def get_author(self, author_id):
        return self.session.get(Author, author_id)

    def create_author(self, first_name, last_name, biography=None):
        author = Author(first_name=first_name, last_name=last_name, biography=biography)
        self.session.add(author)
        self.session.commit()
        logger.info("Author %s created: %s", author.id, author.full_name)
        return author

    def update_author(self, author_id, first_name, last_name, biography=None):
        author = self.session.get(Author, author_id)
        if author is None:
            logger.warning("Update of missing author %s", author_id)
            return None
        logger.info("Updating author %s: %s -> %s %s", author_id, author.full_name, first_name, last_name)
        author.first_name = first_name
        author.last_name = last_name
        author.biography = biography
        self.session.commit()
        return author

    def delete_author(self, author_id):
        author = self.session.get(Author, author_id)
        if author is None:
            logger.warning("Delete of missing author %s", author_id)
            return False
        # association rows go with the author
        author.books = []
        self.session.delete(author)
        self.session.commit()
        logger.info("Author %s deleted", author_id)
        return True


class BookService:
    def __init__(self, session):
        self.session = session

    def _query(self):
        return select(Book).options(selectinload(Book.authors), selectinload(Book.category))

    def _resolve(self, category_id, author_ids):
        if self.session.get(Category, category_id) is None:
            raise InvalidReferenceError(f"Category {category_id} does not exist")
        authors = self.session.execute(
            select(Author).where(Author.id.in_(author_ids))
        ).scalars().all()
        missing = sorted(set(author_ids) - {a.id for a in authors})
        if missing:
            raise InvalidReferenceError(
                "Authors not found: " + ", ".join(str(i) for i in missing)
            )
        return authors

    def _check_isbn(self, isbn, book_id=None):
        q = select(Book.id).where(Book.isbn == isbn)
        if book_id is not None:
            q = q.where(Book.id != book_id)
        if self.session.execute(q).first():
            raise ConflictError(f"A book with ISBN {isbn} already exists")

    def list_books(self):
        return self.session.execute(self._query().order_by(Book.id)).scalars().all()

    def get_book(self, book_id):
        return self.session.execute(self._query().where(Book.id == book_id)).scalar_one_or_none()

    def search(self, term):
        term = (term or "").strip().lower()

        def matches(column):
            # % and _ in the term are literal characters, not wildcards
            return func.lower(column, type_=String).contains(term, autoescape=True)

        q = self._query().where(
            or_(
                matches(Book.title),
                matches(Book.isbn),
                matches(Book.publisher),
                matches(Book.description),
                Book.authors.any(
                    or_(matches(Author.first_name), matches(Author.last_name))
                ),
            )
        )
        return self.session.execute(q.order_by(Book.id)).scalars().all()

    def list_by_category(self, category_id):
        q = self._query().where(Book.category_id == category_id).order_by(Book.id)
        return self.session.execute(q).scalars().all()

    def list_available(self):
        q = self._query().where(Book.is_available.is_(True)).order_by(Book.id)
        return self.session.execute(q).scalars().all()

    def create_book(self, title, isbn, publisher, year, pages, description, category_id, author_ids):
        logger.info("Creating book '%s' (ISBN %s)", title, isbn)
        self._check_isbn(isbn)
        authors = self._resolve(category_id, author_ids)

        book = Book(
            title=title,
            isbn=isbn,
            publisher=publisher,
            year=year,
            pages=pages,
            description=description or "",
            category_id=category_id,
            is_available=True,
            created_at=datetime.utcnow(),
        )
        book.authors = authors
        self.session.add(book)
        self.session.commit()
        logger.info("Book %s created with %d author(s)", book.id, len(authors))
        return self.get_book(book.id)

    def update_book(self, book_id, title, isbn, publisher, year, pages, description, category_id, author_ids):
        book = self.get_book(book_id)
        if book is None:
            logger.warning("Update of missing book %s", book_id)
            return None
        logger.info("Updating book %s: '%s' -> '%s'", book_id, book.title, title)
        self._check_isbn(isbn, book_id=book_id)
        authors = self._resolve(category_id, author_ids)

        book.title = title
        book.isbn = isbn
        book.publisher = publisher
        book.year = year
        book.pages = pages
        book.description = description or ""
        book.category_id = category_id
        book.authors = authors
        book.updated_at = datetime.utcnow()
        self.session.commit()
        return self.get_book(book_id)

    def _has_loans(self, book_ids):
        q = select(Loan.book_id).where(Loan.book_id.in_(book_ids)).distinct()
        return set(self.session.execute(q).scalars().all())

    def delete_book(self, book_id):
        book = self.session.get(Book, book_id)
        if book is None:
            logger.warning("Delete of missing book %s", book_id)
            return False
        if self._has_loans([book_id]):
            raise ConflictError("Book has loan history and cannot be deleted")
        title = book.title
        book.authors = []
        self.session.delete(book)
        self.session.commit()
        logger.info("Book %s ('%s') deleted", book_id, title)
        return True

    def delete_books(self, book_ids):
        """Delete every listed book that exists; return how many were removed."""
        ids = list(dict.fromkeys(book_ids))
        if not ids:
            return 0
        books = self.session.execute(select(Book).where(Book.id.in_(ids))).scalars().all()
        if not books:
            logger.warning("Bulk delete matched no books")
            return 0

        missing = sorted(set(ids) - {b.id for b in books})
        if missing:
            logger.warning("Bulk delete skipping unknown book ids: %s", missing)
        blocked = self._has_loans([b.id for b in books])
        if blocked:
            raise ConflictError(
                "Books with loan history cannot be deleted: "
                + ", ".join(str(i) for i in sorted(blocked))
            )

        for book in books:
            book.authors = []
            self.session.delete(book)
        self.session.commit()
        logger.info("Bulk deleted %d book(s)", len(books))
        return len(books)
