"""JSON shapes returned by the API (camelCase keys)."""


def _iso(value):
    return value.isoformat() if value else None


def category_to_dict(category):
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
    }


def author_to_dict(author):
    return {
        "id": author.id,
        "firstName": author.first_name,
        "lastName": author.last_name,
        "fullName": author.full_name,
        "biography": author.biography,
    }


def book_to_dict(book):
    return {
        "id": book.id,
        "title": book.title,
        "isbn": book.isbn,
        "publisher": book.publisher,
        "year": book.year,
        "pages": book.pages,
        "description": book.description,
        "isAvailable": book.is_available,
        "categoryId": book.category_id,
        "categoryName": book.category.name if book.category else "",
        "authors": [author_to_dict(a) for a in book.authors],
    }


def employee_to_dict(employee):
    return {
        "id": employee.id,
        "firstName": employee.first_name,
        "lastName": employee.last_name,
        "fullName": employee.full_name,
        "email": employee.email,
        "department": employee.department,
        "position": employee.position,
        "createdAt": _iso(employee.created_at),
    }


def loan_to_dict(loan):
    return {
        "id": loan.id,
        "loanDate": _iso(loan.loan_date),
        "returnDate": _iso(loan.return_date),
        "dueDate": _iso(loan.due_date),
        "isReturned": loan.is_returned,
        "notes": loan.notes,
        "bookId": loan.book_id,
        "bookTitle": loan.book.title,
        "employeeId": loan.employee_id,
        "employeeName": loan.employee.full_name,
    }


def user_to_dict(user):
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "isActive": user.is_active,
        "createdAt": _iso(user.created_at),
        "lastLoginAt": _iso(user.last_login_at),
        "employeeId": user.employee_id,
        "employeeName": user.employee.full_name if user.employee else None,
    }
