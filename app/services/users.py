from __future__ import annotations

import logging

from fastapi import Request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.user import User
from app.schemas.admin import UserUpdate
from app.services.audit import audit_events
from app.services.common import apply_ordering, apply_pagination, get_or_404

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {
    "username": User.username,
    "email": User.email,
    "created_at": User.created_at,
    "last_login_at": User.last_login_at,
    "upload_used_monthly": User.upload_used_monthly,
}


class Users:
    @staticmethod
    def list(
        db: Session,
        search: str | None = None,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[User], int]:
        query = db.query(User)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    User.username.ilike(pattern),
                    User.email.ilike(pattern),
                    User.display_name.ilike(pattern),
                )
            )
        if is_active is not None:
            query = query.filter(User.is_active.is_(is_active))
        total = query.count()
        query = apply_ordering(query, order_by, order_dir, SORTABLE_COLUMNS)
        return apply_pagination(query, limit, offset).all(), total

    @staticmethod
    def update(
        db: Session, user_id, payload: UserUpdate, actor: User, request: Request | None = None
    ) -> User:
        user = get_or_404(db, User, user_id, "User not found")
        changes = payload.model_dump(exclude_unset=True)
        old_values = {key: getattr(user, key) for key in changes}
        for key, value in changes.items():
            setattr(user, key, value)
        db.commit()
        db.refresh(user)
        audit_events.log_admin_action(
            db,
            "UPDATE_USER",
            actor.id,
            resource_type="user",
            resource_id=user.id,
            old_values=old_values,
            new_values=changes,
            request=request,
        )
        logger.info("user_updated user_id=%s admin_id=%s fields=%s", user.id, actor.id, ",".join(changes))
        return user


users = Users()
