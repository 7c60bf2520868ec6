import logging
from datetime import datetime

from sqlalchemy import func, select

from .errors import ConflictError
from .models import Employee, Loan

logger = logging.getLogger(__name__)


class EmployeeService:
    def __init__(self, session):
        self.session = session

    def _check_email(self, email, employee_id=None):
        q = select(Employee.id).where(func.lower(Employee.email) == email.lower())
        if employee_id is not None:
            q = q.where(Employee.id != employee_id)
        if self.session.execute(q).first():
            raise ConflictError(f"An employee with email {email} already exists")

    def list_employees(self):
        return self.session.execute(select(Employee).order_by(Employee.id)).scalars().all()

    def get_employee(self, employee_id):
        return self.session.get(Employee, employee_id)

    def create_employee(self, first_name, last_name, email, department, position):
        logger.info("Creating employee %s %s (%s, %s)", first_name, last_name, email, department)
        self._check_email(email)
        employee = Employee(
            first_name=first_name,
            last_name=last_name,
            email=email,
            department=department,
            position=position,
            created_at=datetime.utcnow(),
        )
        self.session.add(employee)
        self.session.commit()
        logger.info("Employee %s created: %s", employee.id, employee.full_name)
        return employee

    def update_employee(self, employee_id, first_name, last_name, email, department, position):
        employee = self.session.get(Employee, employee_id)
        if employee is None:
            logger.warning("Update of missing employee %s", employee_id)
            return None
        self._check_email(email, employee_id=employee_id)
        logger.info(
            "Updating employee %s: %s -> %s %s", employee_id, employee.full_name, first_name, last_name
        )
        employee.first_name = first_name
        employee.last_name = last_name
        employee.email = email
        employee.department = department
        employee.position = position
        self.session.commit()
        return employee

    def delete_employee(self, employee_id):
        employee = self.session.get(Employee, employee_id)
        if employee is None:
            logger.warning("Delete of missing employee %s", employee_id)
            return False
        has_loans = self.session.execute(
            select(Loan.id).where(Loan.employee_id == employee_id).limit(1)
        ).first()
        if has_loans:
            raise ConflictError("Employee has loan history and cannot be deleted")
        # unlink the login account, if any
        if employee.user is not None:
            employee.user.employee_id = None
        self.session.delete(employee)
        self.session.commit()
        logger.info("Employee %s deleted", employee_id)
        return True
