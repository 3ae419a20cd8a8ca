# utils/permissions.py
# Role -> permission table and the membership checks built on it.

from models import db, School, SchoolMembership, SchoolRole, SystemRole, User
from utils.errors import ActionError

CREATE_SCHOOL = "CREATE_SCHOOL"
MANAGE_SCHOOL = "MANAGE_SCHOOL"
MANAGE_ASSIGNMENTS = "MANAGE_ASSIGNMENTS"

PERMISSIONS = {
    CREATE_SCHOOL: {
        "category": "system",
        "description": "Allows creating new schools (SUPER_ADMIN only)",
    },
    MANAGE_SCHOOL: {
        "category": "school",
        "description": "Allows managing school info, users, classes, and role assignments",
    },
    MANAGE_ASSIGNMENTS: {
        "category": "school",
        "description": "Allows managing assignments and class content",
    },
}

ROLE_PERMISSIONS = {
    SystemRole.SUPER_ADMIN.value: [CREATE_SCHOOL],
    SchoolRole.ADMIN.value: [MANAGE_SCHOOL],
    SchoolRole.TEACHER.value: [MANAGE_ASSIGNMENTS],
    SchoolRole.STUDENT.value: [],
}

ROLE_DESCRIPTIONS = {
    SystemRole.SUPER_ADMIN.value: "System Super Administrator - can create and manage schools",
    SchoolRole.ADMIN.value: "School Administrator - can manage school info, users, classes, and role assignments",
    SchoolRole.TEACHER.value: "Teacher - can manage assignments in assigned classes",
    SchoolRole.STUDENT.value: "Student - can view classes and assignments",
}

# Which membership roles count as "managing" a school for a permission
MANAGING_ROLES = {
    MANAGE_SCHOOL: [SchoolRole.ADMIN],
    MANAGE_ASSIGNMENTS: [SchoolRole.TEACHER, SchoolRole.ADMIN],
}


def _role_value(role):
    return role.value if hasattr(role, "value") else role


def is_valid_school_role(role):
    return _role_value(role) in {r.value for r in SchoolRole}


def role_has_permission(role, permission):
    return permission in ROLE_PERMISSIONS.get(_role_value(role), [])


def get_all_permissions(category=None):
    permissions = [
        {"name": name, "category": info["category"], "description": info["description"]}
        for name, info in PERMISSIONS.items()
    ]
    if category:
        permissions = [p for p in permissions if p["category"] == category]
    return permissions


def has_system_permission(user, permission):
    if user is None or not user.is_authenticated or not user.system_role:
        return False
    return role_has_permission(user.system_role, permission)


def get_active_membership(user_id, school_id):
    return SchoolMembership.query.filter_by(user_id=user_id, school_id=school_id, is_active=True).first()


def has_school_permission(user, school_id, permission):
    """Super admins pass; everyone else needs an active membership whose role grants ``permission``."""
    if not school_id:
        raise ActionError("School context is required for this permission check.")
    if user is None or not user.is_authenticated:
        return False
    if user.is_super_admin:
        return True

    membership = get_active_membership(user.id, school_id)
    if not membership:
        return False
    return role_has_permission(membership.role, permission)


def get_user_managed_schools(user, permission):
    if user.is_super_admin:
        return School.query.order_by(School.name).all()

    roles = MANAGING_ROLES.get(permission)
    if not roles:
        return []

    return (
        School.query.join(SchoolMembership)
        .filter(
            SchoolMembership.user_id == user.id,
            SchoolMembership.is_active.is_(True),
            SchoolMembership.role.in_(roles),
        )
        .order_by(School.name)
        .all()
    )


def is_username_unique_in_school(username, school_id, exclude_user_id=None):
    query = (
        db.session.query(User.id)
        .join(SchoolMembership, SchoolMembership.user_id == User.id)
        .filter(
            User.username == username,
            SchoolMembership.school_id == school_id,
            SchoolMembership.is_active.is_(True),
        )
    )
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    return query.first() is None
