# utils/school_users.py
# Managing the users that belong to one school.

from flask import current_app
from sqlalchemy import or_

from models import (
    db, SchoolClass, SchoolMembership, SchoolRole, StudentClass, TeacherClass, User
)
from utils.errors import ActionError
from utils.identity import compute_display_name, construct_login_identifier
from utils.passwords import generate_password
from utils.permissions import is_username_unique_in_school
from utils.school_classes import CLASS_NOT_FOUND, get_active_class, link_to_class
from utils.schools import get_school, pagination

NOT_A_MEMBER = "User not found or does not belong to this school"
NO_SCHOOL_EMAIL = "School email not configured. Please contact administrator."

USER_FIELDS = ("username", "email", "first_name", "last_name", "student_id", "grade_level", "department")


def school_role(value):
    try:
        return SchoolRole(value)
    except ValueError:
        raise ActionError("Invalid role specified") from None


def require_school_email(school):
    if not school.email:
        raise ActionError(NO_SCHOOL_EMAIL)
    return school.email


def class_assignments(user, school_id):
    """Active class links of ``user`` inside one school."""
    teaching = (
        TeacherClass.query.join(SchoolClass)
        .filter(TeacherClass.user_id == user.id, TeacherClass.is_active.is_(True), SchoolClass.school_id == school_id)
        .all()
    )
    enrolled = (
        StudentClass.query.join(SchoolClass)
        .filter(StudentClass.user_id == user.id, StudentClass.is_active.is_(True), SchoolClass.school_id == school_id)
        .all()
    )
    return {
        "teacher_classes": [
            {"assigned_at": tc.assigned_at.isoformat(), "class": tc.school_class.to_dict()} for tc in teaching
        ],
        "student_classes": [
            {"enrolled_at": sc.enrolled_at.isoformat(), "class": sc.school_class.to_dict()} for sc in enrolled
        ],
    }


def member_dict(user, membership, school, include_classes=False):
    data = user.to_dict()
    data["role"] = membership.role.value
    data["joined_at"] = membership.joined_at.isoformat()
    data["login_identifier"] = construct_login_identifier(user.username, school.email) if school.email else None
    if include_classes:
        data.update(class_assignments(user, school.id))
    return data


def get_membership(school_id, user_id):
    membership = SchoolMembership.query.filter_by(user_id=user_id, school_id=school_id, is_active=True).first()
    if membership is None:
        raise ActionError(NOT_A_MEMBER, 404)
    return membership


def list_school_users(school_id, page=1, limit=20, search=None, role=None, status=None,
                      grade_level=None, department=None, include_classes=False):
    school = get_school(school_id)
    limit = max(1, min(limit or 20, 100))
    page = max(1, page or 1)

    query = (
        db.session.query(User, SchoolMembership)
        .join(SchoolMembership, SchoolMembership.user_id == User.id)
        .filter(SchoolMembership.school_id == school_id, SchoolMembership.is_active.is_(True))
    )
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            User.username.ilike(like),
            User.email.ilike(like),
            User.first_name.ilike(like),
            User.last_name.ilike(like),
            User.student_id.ilike(like),
        ))
    if role:
        query = query.filter(SchoolMembership.role == school_role(role))
    if status == "active":
        query = query.filter(User.is_active.is_(True))
    elif status == "inactive":
        query = query.filter(User.is_active.is_(False))
    if grade_level:
        query = query.filter(User.grade_level == grade_level)
    if department:
        query = query.filter(User.department == department)

    total = query.count()
    rows = (
        query.order_by(SchoolMembership.joined_at.desc(), SchoolMembership.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "users": [member_dict(u, m, school, include_classes) for u, m in rows],
        "pagination": pagination(page, limit, total),
    }


def create_school_user(school_id, username, first_name, last_name, role, password=None,
                       generate=False, email=None, student_id=None, grade_level=None, department=None):
    """
    Creates a user and their membership in one transaction.

    Returns:
        tuple: (member dict, generated password or None)
    """
    school = get_school(school_id)

    if not is_username_unique_in_school(username, school_id):
        raise ActionError("Username already exists in this school")
    require_school_email(school)

    generated = None
    if generate:
        generated = generate_password()
        password = generated
    if not password:
        raise ActionError("Password is required")

    user = User(
        username=username,
        first_name=first_name,
        last_name=last_name,
        name=compute_display_name(first_name, last_name),
        email=email or None,
        student_id=student_id or None,
        grade_level=grade_level or None,
        department=department or None,
        is_active=True,
    )
    user.set_password(password)
    try:
        db.session.add(user)
        db.session.flush()
        membership = SchoolMembership(user_id=user.id, school_id=school.id, role=school_role(role))
        db.session.add(membership)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(f"User '{username}' added to school {school.id} as {role}.")
    return member_dict(user, membership, school), generated


def update_school_user(school_id, user_id, changes):
    """Applies a partial update; ``changes`` may include any of USER_FIELDS plus role/is_active."""
    school = get_school(school_id)
    membership = get_membership(school_id, user_id)
    user = membership.user

    new_username = changes.get("username")
    if new_username and new_username != user.username:
        if not is_username_unique_in_school(new_username, school_id, exclude_user_id=user.id):
            raise ActionError("Username already exists in this school")

    new_email = changes.get("email")
    if new_email and new_email != user.email:
        if User.query.filter(User.email == new_email, User.id != user.id).first():
            raise ActionError("Email is already taken by another user")

    for field in USER_FIELDS:
        if field in changes:
            value = changes[field]
            if field == "username" and not value:
                continue
            setattr(user, field, value or None)
    if "first_name" in changes or "last_name" in changes:
        user.name = compute_display_name(user.first_name, user.last_name)
    if "is_active" in changes and changes["is_active"] is not None:
        user.is_active = bool(changes["is_active"])
    if changes.get("role"):
        membership.role = school_role(changes["role"])

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return member_dict(user, membership, school)


def reset_school_user_password(school_id, user_id, new_password=None, generate=True):
    membership = get_membership(school_id, user_id)
    user = membership.user

    generated = None
    if generate or not new_password:
        generated = generate_password()
        new_password = generated

    user.set_password(new_password)
    db.session.commit()
    return generated


def _require_members(school_id, user_ids):
    memberships = SchoolMembership.query.filter(
        SchoolMembership.school_id == school_id,
        SchoolMembership.is_active.is_(True),
        SchoolMembership.user_id.in_(user_ids),
    ).all()
    found = {m.user_id for m in memberships}
    missing = [str(uid) for uid in user_ids if uid not in found]
    if missing:
        raise ActionError(f"Some users are not members of this school: {', '.join(missing)}")
    return memberships


def bulk_update_school_users(school_id, user_ids, operation, value=None):
    """
    Runs one operation over several members.

    Returns:
        dict: {"message": str, "password_resets": list (password-reset only)}
    """
    school = get_school(school_id)
    user_ids = list(dict.fromkeys(user_ids or []))
    if not user_ids:
        raise ActionError("No users selected")
    memberships = _require_members(school_id, user_ids)
    result = {}

    try:
        if operation == "role":
            if not value:
                raise ActionError("Role is required")
            role = school_role(value)
            for m in memberships:
                m.role = role
            result["message"] = f"Updated role to {role.value} for {len(memberships)} users"

        elif operation == "status":
            active = str(value).lower() in ("active", "true")
            for m in memberships:
                m.user.is_active = active
            verb = "Activated" if active else "Deactivated"
            result["message"] = f"{verb} {len(memberships)} users"

        elif operation in ("class-assign", "class-remove"):
            if not value:
                raise ActionError("Class ID is required")
            try:
                class_id = int(value)
            except (TypeError, ValueError):
                raise ActionError(CLASS_NOT_FOUND, 404) from None
            school_class = get_active_class(school_id, class_id)
            if operation == "class-assign":
                assigned = 0
                for m in memberships:
                    if m.role == SchoolRole.TEACHER:
                        assigned += link_to_class(TeacherClass, m.user_id, school_class.id)
                    elif m.role == SchoolRole.STUDENT:
                        assigned += link_to_class(StudentClass, m.user_id, school_class.id)
                result["message"] = f"Assigned {assigned} users to class {school_class.name}"
            else:
                for link_model in (TeacherClass, StudentClass):
                    link_model.query.filter(
                        link_model.class_id == school_class.id,
                        link_model.user_id.in_(user_ids),
                    ).update({"is_active": False}, synchronize_session=False)
                result["message"] = f"Removed {len(memberships)} users from class {school_class.name}"

        elif operation == "password-reset":
            resets = []
            for m in memberships:
                new_password = generate_password()
                m.user.set_password(new_password)
                resets.append({
                    "user_id": m.user_id,
                    "username": m.user.username,
                    "login_identifier": construct_login_identifier(m.user.username, school.email),
                    "new_password": new_password,
                })
            result["message"] = f"Reset passwords for {len(memberships)} users"
            result["password_resets"] = resets

        else:
            raise ActionError("Invalid operation type")

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return result
