# utils/profile.py
# The signed-in user's own profile and password.

from models import db, SchoolClass, SchoolRole, StudentClass, TeacherClass, User
from utils.errors import ActionError
from utils.identity import compute_display_name
from utils.passwords import MIN_SYSTEM_PASSWORD_LENGTH

PROFILE_FIELDS = ("first_name", "last_name", "email", "student_id", "grade_level", "department")


def get_user_profile(user):
    data = user.to_dict()
    data["school_memberships"] = [m.to_dict(include_school=True) for m in user.active_memberships()]
    return data


def _class_info(school_class):
    data = school_class.to_dict()
    data["school_name"] = school_class.school.name
    data["student_count"] = school_class.students.filter_by(is_active=True).count()
    return data


def get_dashboard(user):
    """Everything the landing page shows for ``user``: schools, classes and a few counts."""
    memberships = user.active_memberships()
    teaching = (
        TeacherClass.query.join(SchoolClass)
        .filter(TeacherClass.user_id == user.id, TeacherClass.is_active.is_(True), SchoolClass.is_active.is_(True))
        .all()
    )
    enrolled = (
        StudentClass.query.join(SchoolClass)
        .filter(StudentClass.user_id == user.id, StudentClass.is_active.is_(True), SchoolClass.is_active.is_(True))
        .all()
    )

    teacher_classes = [dict(_class_info(tc.school_class), assigned_at=tc.assigned_at.isoformat()) for tc in teaching]
    student_classes = [dict(_class_info(sc.school_class), enrolled_at=sc.enrolled_at.isoformat()) for sc in enrolled]

    return {
        "user": user.to_dict(),
        "school_memberships": [m.to_dict(include_school=True) for m in memberships],
        "teacher_classes": teacher_classes,
        "student_classes": student_classes,
        "stats": {
            "total_schools": len(memberships),
            "total_classes": len(teacher_classes) + len(student_classes),
            "teaching_classes": len(teacher_classes),
            "enrolled_classes": len(student_classes),
            "total_students": sum(c["student_count"] for c in teacher_classes),
        },
        "is_teacher": bool(teacher_classes),
        "is_student": bool(student_classes),
        "is_admin": any(m.role == SchoolRole.ADMIN for m in memberships),
        "is_super_admin": user.is_super_admin,
    }


def update_user_profile(user, changes):
    email = changes.get("email")
    if email and email != user.email:
        if User.query.filter(User.email == email, User.id != user.id).first():
            raise ActionError("Email is already taken by another user")

    for field in PROFILE_FIELDS:
        if field in changes:
            setattr(user, field, changes[field] or None)
    user.name = compute_display_name(user.first_name, user.last_name) or user.name

    db.session.commit()
    return user


def update_user_password(user, current_password, new_password, confirm_password):
    if not new_password or len(new_password) < MIN_SYSTEM_PASSWORD_LENGTH:
        raise ActionError(f"Password must be at least {MIN_SYSTEM_PASSWORD_LENGTH} characters long")
    if new_password != confirm_password:
        raise ActionError("New passwords don't match")
    if not user.check_password(current_password or ""):
        raise ActionError("Current password is incorrect")

    user.set_password(new_password)
    db.session.commit()
