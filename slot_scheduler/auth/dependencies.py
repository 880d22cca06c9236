from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from slot_scheduler.auth import jwt_handler
from slot_scheduler.database import get_db
from slot_scheduler.models.user import STAFF_ROLES, StaffUser

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> StaffUser:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

    user = db.query(StaffUser).filter(StaffUser.email == email).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    token_establishment = payload.get("est")
    if token_establishment and token_establishment != user.establishment_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token establishment does not match the staff user.")
    return user


def require_establishment_staff(establishment_id: str, user: StaffUser) -> StaffUser:
    if user.role not in STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only staff can manage slots.")
    if user.establishment_id != establishment_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff user belongs to another establishment.")
    return user


def get_establishment_staff(
    establishment_id: str,
    current_user: StaffUser = Depends(get_current_user),
) -> StaffUser:
    return require_establishment_staff(establishment_id, current_user)
