# utils/admin_users.py
# System-wide user administration for super admins.

from flask import current_app
from sqlalchemy import or_

from models import db, SystemRole, User, utcnow
from utils.errors import ActionError
from utils.passwords import MIN_SYSTEM_PASSWORD_LENGTH
from utils.schools import pagination

STATUSES = ("active", "pending", "inactive")


def user_status(user):
    if not user.is_active:
        return "inactive"
    return "active" if user.email_verified else "pending"


def admin_user_dict(user):
    data = user.to_dict()
    data["status"] = user_status(user)
    data["schools"] = [m.to_dict(include_school=True) for m in user.active_memberships()]
    return data


def get_admin_dashboard(recent=5):
    total = User.query.count()
    active = User.query.filter(User.is_active.is_(True)).count()
    admins = User.query.filter(User.system_role == SystemRole.SUPER_ADMIN).count()
    latest = User.query.order_by(User.created_at.desc(), User.id.desc()).limit(recent).all()
    return {
        "total_users": total,
        "active_users": active,
        "admin_users": admins,
        "users": [admin_user_dict(u) for u in latest],
        "last_updated": utcnow().isoformat(),
    }


def list_users(page=1, limit=20, search=None, status=None):
    page = max(1, page or 1)
    limit = max(1, min(limit or 20, 100))

    query = User.query
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            User.username.ilike(like), User.email.ilike(like), User.name.ilike(like),
            User.first_name.ilike(like), User.last_name.ilike(like),
        ))
    if status == "inactive":
        query = query.filter(User.is_active.is_(False))
    elif status == "active":
        query = query.filter(User.is_active.is_(True), User.email_verified.isnot(None))
    elif status == "pending":
        query = query.filter(User.is_active.is_(True), User.email_verified.is_(None))

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"users": [admin_user_dict(u) for u in users], "pagination": pagination(page, limit, total)}


def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise ActionError("User not found", 404)
    return user


def _check_identity_free(email=None, username=None, exclude_id=None):
    if email:
        query = User.query.filter(User.email == email)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ActionError("User with this email already exists")
    if username:
        query = User.query.filter(User.username == username)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise ActionError("Username is already taken")


def _system_role(value):
    if not value:
        return None
    try:
        return SystemRole(value)
    except ValueError:
        raise ActionError("Invalid role specified") from None


def create_system_user(name, username, email, password, system_role=None):
    if not password or len(password) < MIN_SYSTEM_PASSWORD_LENGTH:
        raise ActionError(f"Password must be at least {MIN_SYSTEM_PASSWORD_LENGTH} characters long")
    _check_identity_free(email=email, username=username)

    user = User(name=name, username=username, email=email, system_role=_system_role(system_role),
                is_active=True, email_verified=utcnow())
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info(f"System user '{username}' created.")
    return user


def update_user(user_id, changes):
    user = get_user(user_id)
    _check_identity_free(
        email=changes.get("email") if changes.get("email") != user.email else None,
        username=changes.get("username") if changes.get("username") != user.username else None,
        exclude_id=user.id,
    )

    for field in ("name", "email", "username"):
        if changes.get(field):
            setattr(user, field, changes[field])
    if changes.get("password"):
        if len(changes["password"]) < MIN_SYSTEM_PASSWORD_LENGTH:
            raise ActionError(f"Password must be at least {MIN_SYSTEM_PASSWORD_LENGTH} characters long")
        user.set_password(changes["password"])
    if "system_role" in changes:
        user.system_role = _system_role(changes["system_role"])

    status = changes.get("status")
    if status:
        if status not in STATUSES:
            raise ActionError("Invalid status")
        user.is_active = status != "inactive"
        if status == "active" and not user.email_verified:
            user.email_verified = utcnow()
        elif status == "pending":
            user.email_verified = None

    db.session.commit()
    return user


def delete_user(user_id, acting_user):
    user = get_user(user_id)
    if user.id == acting_user.id:
        raise ActionError("Cannot delete your own account")
    user.is_active = False
    db.session.commit()
    current_app.logger.info(f"User '{user.username}' deactivated by '{acting_user.username}'.")
    return user
