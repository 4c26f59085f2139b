from fastapi import APIRouter, Depends

from ltipdesk.api.deps import get_current_user, get_current_user_optional
from ltipdesk.models import User
from ltipdesk.schemas import AuthSession, AuthUser

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _auth_user(user: User) -> AuthUser:
    return AuthUser(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        employee_id=user.employee_id,
    )


@router.get("/me", response_model=AuthSession)
def me(current_user: User | None = Depends(get_current_user_optional)) -> AuthSession:
    if current_user is None:
        return AuthSession(authenticated=False, user=None)
    return AuthSession(authenticated=True, user=_auth_user(current_user))


@router.get("/require", response_model=AuthUser)
def require_user(current_user: User = Depends(get_current_user)) -> AuthUser:
    return _auth_user(current_user)
