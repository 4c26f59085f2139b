from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ltipdesk.api.deps import get_current_employee_record, get_current_user, get_db_session, require_admin
from ltipdesk.models import Employee, EmployeeStatus, GrantStatus, User, UserRole
from ltipdesk.schemas import EmployeeCreate, EmployeeRead, EmployeeUpdate

router = APIRouter(prefix="/api/employees", tags=["employees"])


def _assert_unique(db: Session, *, employee_code: str | None, email: str | None, exclude_id: int | None = None) -> None:
    if employee_code is not None:
        stmt = select(func.count()).select_from(Employee).where(Employee.employee_code == employee_code)
        if exclude_id is not None:
            stmt = stmt.where(Employee.id != exclude_id)
        if db.scalar(stmt):
            raise HTTPException(status_code=409, detail="Employee code already exists")

    if email is not None:
        stmt = select(func.count()).select_from(Employee).where(Employee.email == email)
        if exclude_id is not None:
            stmt = stmt.where(Employee.id != exclude_id)
        if db.scalar(stmt):
            raise HTTPException(status_code=409, detail="Employee email already exists")


@router.post("", response_model=EmployeeRead, status_code=status.HTTP_201_CREATED)
def create_employee(
    payload: EmployeeCreate,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Employee:
    _assert_unique(db, employee_code=payload.employee_code, email=payload.email)

    employee = Employee(**payload.model_dump())
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


@router.get("", response_model=list[EmployeeRead])
def list_employees(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    status_filter: EmployeeStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> list[Employee]:
    if current_user.role == UserRole.EMPLOYEE:
        return [current_employee] if current_employee is not None else []

    stmt = select(Employee).order_by(Employee.id.desc()).limit(limit).offset(offset)
    if status_filter is not None:
        stmt = stmt.where(Employee.status == status_filter)
    return list(db.scalars(stmt).all())


@router.get("/{employee_id}", response_model=EmployeeRead)
def get_employee(
    employee_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail="Employee not found")
    if current_user.role != UserRole.ADMIN and (current_employee is None or current_employee.id != employee_id):
        raise HTTPException(status_code=403, detail="Not allowed")
    return employee


@router.patch("/{employee_id}", response_model=EmployeeRead)
def update_employee(
    employee_id: int,
    payload: EmployeeUpdate,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail="Employee not found")

    data = payload.model_dump(exclude_unset=True)
    _assert_unique(db, employee_code=data.get("employee_code"), email=data.get("email"), exclude_id=employee_id)

    for key, value in data.items():
        setattr(employee, key, value)

    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


@router.delete("/{employee_id}", response_model=EmployeeRead)
def deactivate_employee(
    employee_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail="Employee not found")

    open_grants = [grant for grant in employee.grants if grant.status in {GrantStatus.PENDING_SIGNATURE, GrantStatus.ACTIVE}]
    if open_grants:
        raise HTTPException(status_code=409, detail="Forfeit or cancel the employee's open grants first")

    employee.status = EmployeeStatus.INACTIVE
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee
