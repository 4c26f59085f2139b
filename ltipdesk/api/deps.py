from collections.abc import Generator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ltipdesk.core.config import get_settings
from ltipdesk.core.database import get_db
from ltipdesk.models import Employee, User, UserRole, utcnow

settings = get_settings()


def get_db_session() -> Generator[Session, None, None]:
    yield from get_db()


def _forwarded_email(request: Request) -> str | None:
    raw = request.headers.get(settings.identity_header, "").strip().lower()
    if not raw or "@" not in raw:
        return None
    return raw


def _provision_user(db: Session, email: str) -> User:
    user = db.scalar(select(User).where(User.email == email).limit(1))
    role = UserRole.ADMIN if email in settings.admin_email_list else None

    if user is None:
        user = User(email=email, full_name=email, role=role or UserRole.EMPLOYEE)
        db.add(user)
    elif role is not None:
        user.role = role

    if user.employee_id is None:
        matching_employee = db.scalar(select(Employee).where(Employee.email == email).limit(1))
        if matching_employee is not None:
            user.employee_id = matching_employee.id
            user.full_name = matching_employee.full_name

    user.last_seen_at = utcnow()
    db.commit()
    db.refresh(user)
    return user


def get_current_user(request: Request, db: Session = Depends(get_db_session)) -> User:
    if not settings.auth_enabled:
        stub = db.scalar(select(User).where(User.role == UserRole.ADMIN).limit(1))
        if stub is not None:
            return stub
        raise HTTPException(status_code=503, detail="Auth disabled but no admin user exists")

    email = _forwarded_email(request)
    if email is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return _provision_user(db, email)


def get_current_user_optional(request: Request, db: Session = Depends(get_db_session)) -> User | None:
    if not settings.auth_enabled:
        return db.scalar(select(User).where(User.role == UserRole.ADMIN).limit(1))

    email = _forwarded_email(request)
    if email is None:
        return None
    return _provision_user(db, email)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def get_current_employee_record(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> Employee | None:
    if current_user.employee_id is not None:
        employee = db.get(Employee, current_user.employee_id)
        if employee is not None:
            return employee

    return db.scalar(select(Employee).where(Employee.email == current_user.email).limit(1))
