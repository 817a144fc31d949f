from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from stoodio.database.db import get_db
from stoodio.models.users import User


def get_current_user(
    x_user_id: int = Header(..., alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller's user record. Authentication itself happens upstream."""
    user = db.get(User, x_user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user
