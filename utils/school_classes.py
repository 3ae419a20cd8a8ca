# utils/school_classes.py
# Classes inside a school and who teaches / attends them.

from datetime import date

from sqlalchemy import func, or_

from models import (
    db, SchoolClass, SchoolMembership, SchoolRole, StudentClass, TeacherClass, User
)
from utils.errors import ActionError
from utils.schools import get_school, pagination

CLASS_NOT_FOUND = "Class not found or does not belong to this school"
DUPLICATE_CODE = "Class code already exists in this school"


def current_school_year(today=None):
    year = (today or date.today()).year
    return f"{year}-{year + 1}"


def get_active_class(school_id, class_id):
    school_class = SchoolClass.query.filter_by(id=class_id, school_id=school_id, is_active=True).first()
    if school_class is None:
        raise ActionError(CLASS_NOT_FOUND, 404)
    return school_class


def link_to_class(link_model, user_id, class_id):
    """Creates or reactivates a TeacherClass/StudentClass row. Returns True when something changed."""
    link = link_model.query.filter_by(user_id=user_id, class_id=class_id).first()
    if link is None:
        db.session.add(link_model(user_id=user_id, class_id=class_id))
        return True
    if not link.is_active:
        link.is_active = True
        return True
    return False


def _counts(school_class):
    return {
        "teacher_count": school_class.teachers.filter_by(is_active=True).count(),
        "student_count": school_class.students.filter_by(is_active=True).count(),
    }


def _user_brief(user):
    return {
        "id": user.id,
        "username": user.username,
        "name": user.name,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "student_id": user.student_id,
        "grade_level": user.grade_level,
    }


def class_dict(school_class, include_users=False):
    data = school_class.to_dict()
    data.update(_counts(school_class))
    if include_users:
        data["teachers"] = [
            dict(_user_brief(tc.user), assigned_at=tc.assigned_at.isoformat())
            for tc in school_class.teachers.filter_by(is_active=True).all()
        ]
        data["students"] = [
            dict(_user_brief(sc.user), enrolled_at=sc.enrolled_at.isoformat())
            for sc in school_class.students.filter_by(is_active=True).all()
        ]
    return data


def list_school_classes(school_id, page=1, limit=50, search=None, subject=None,
                        grade_level=None, school_year=None, include_users=False):
    get_school(school_id)
    page = max(1, page or 1)
    limit = max(1, min(limit or 50, 100))

    query = SchoolClass.query.filter_by(school_id=school_id, is_active=True)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            SchoolClass.name.ilike(like),
            SchoolClass.code.ilike(like),
            SchoolClass.subject.ilike(like),
            SchoolClass.description.ilike(like),
        ))
    if subject:
        query = query.filter(SchoolClass.subject == subject)
    if grade_level:
        query = query.filter(SchoolClass.grade_level == grade_level)
    if school_year:
        query = query.filter(SchoolClass.school_year == school_year)

    total = query.count()
    classes = query.order_by(SchoolClass.name).offset((page - 1) * limit).limit(limit).all()
    return {
        "classes": [class_dict(c, include_users) for c in classes],
        "pagination": pagination(page, limit, total),
    }


def _code_taken(school_id, code, exclude_id=None):
    # The unique constraint covers inactive rows too
    query = SchoolClass.query.filter(SchoolClass.school_id == school_id, SchoolClass.code == code)
    if exclude_id is not None:
        query = query.filter(SchoolClass.id != exclude_id)
    return query.first() is not None


def create_school_class(school_id, name, code=None, description=None, grade_level=None,
                        subject=None, school_year=None, commit=True):
    get_school(school_id)
    code = code or None
    if code and _code_taken(school_id, code):
        raise ActionError(DUPLICATE_CODE)

    school_class = SchoolClass(
        name=name,
        code=code,
        description=description or None,
        grade_level=grade_level or None,
        subject=subject or None,
        school_year=school_year or current_school_year(),
        school_id=school_id,
        is_active=True,
    )
    db.session.add(school_class)
    if commit:
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return school_class


def update_school_class(school_id, class_id, changes):
    school_class = get_active_class(school_id, class_id)

    new_code = changes.get("code")
    if new_code and new_code != school_class.code and _code_taken(school_id, new_code, school_class.id):
        raise ActionError(DUPLICATE_CODE)

    for field in ("name", "code", "description", "grade_level", "subject", "school_year"):
        if field in changes:
            value = changes[field]
            if field == "name" and not value:
                continue
            setattr(school_class, field, value or None)

    db.session.commit()
    return school_class


def delete_school_class(school_id, class_id):
    school_class = get_active_class(school_id, class_id)
    school_class.is_active = False
    db.session.commit()
    return school_class


def _active_role_members(school_id, user_ids, role):
    found = {
        row.user_id for row in SchoolMembership.query.filter(
            SchoolMembership.school_id == school_id,
            SchoolMembership.is_active.is_(True),
            SchoolMembership.role == role,
            SchoolMembership.user_id.in_(user_ids),
        )
    }
    return all(uid in found for uid in user_ids)


def assign_users_to_class(school_id, class_id, teacher_ids=None, student_ids=None):
    """
    Links teachers and students to a class.

    Returns:
        int: how many links were created or reactivated.
    """
    school_class = get_active_class(school_id, class_id)
    teacher_ids = list(dict.fromkeys(teacher_ids or []))
    student_ids = list(dict.fromkeys(student_ids or []))

    if teacher_ids and not _active_role_members(school_id, teacher_ids, SchoolRole.TEACHER):
        raise ActionError("Some users are not active teachers in this school")
    if student_ids and not _active_role_members(school_id, student_ids, SchoolRole.STUDENT):
        raise ActionError("Some users are not active students in this school")

    assigned = 0
    try:
        for uid in teacher_ids:
            assigned += link_to_class(TeacherClass, uid, school_class.id)
        for uid in student_ids:
            assigned += link_to_class(StudentClass, uid, school_class.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return assigned


def remove_users_from_class(school_id, class_id, user_ids):
    school_class = get_active_class(school_id, class_id)
    user_ids = list(user_ids or [])
    removed = 0
    for link_model in (TeacherClass, StudentClass):
        removed += link_model.query.filter(
            link_model.class_id == school_class.id,
            link_model.user_id.in_(user_ids),
            link_model.is_active.is_(True),
        ).update({"is_active": False}, synchronize_session=False)
    db.session.commit()
    return removed


def bulk_update_school_classes(school_id, class_ids, operation, user_id=None):
    get_school(school_id)
    class_ids = list(dict.fromkeys(class_ids or []))
    if not class_ids:
        raise ActionError("No classes selected")

    classes = SchoolClass.query.filter(SchoolClass.school_id == school_id, SchoolClass.id.in_(class_ids)).all()
    if len(classes) != len(class_ids):
        raise ActionError("Some classes not found or do not belong to this school")

    count = len(classes)
    if operation in ("delete", "deactivate"):
        for c in classes:
            c.is_active = False
        message = f"Deleted {count} classes" if operation == "delete" else f"Deactivated {count} classes"
    elif operation == "activate":
        for c in classes:
            c.is_active = True
        message = f"Activated {count} classes"
    elif operation in ("assign-teacher", "assign-student"):
        if not user_id:
            raise ActionError("User ID is required for assignment operations")
        if operation == "assign-teacher":
            role, link_model, label = SchoolRole.TEACHER, TeacherClass, "teacher"
        else:
            role, link_model, label = SchoolRole.STUDENT, StudentClass, "student"
        if not _active_role_members(school_id, [user_id], role):
            raise ActionError(f"User is not an active {label} in this school")
        for c in classes:
            link_to_class(link_model, user_id, c.id)
        message = f"Assigned {label} to {count} classes"
    else:
        raise ActionError("Invalid operation type")

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return message


def get_class_users(school_id, class_id):
    school_class = get_active_class(school_id, class_id)
    data = class_dict(school_class, include_users=True)
    return {
        "class": school_class.to_dict(),
        "teachers": data["teachers"],
        "students": data["students"],
        "total_users": len(data["teachers"]) + len(data["students"]),
    }


def get_available_users_for_class(school_id, class_id):
    """Active teachers and students of the school who are not yet linked to the class."""
    school_class = get_active_class(school_id, class_id)

    taken_teachers = {tc.user_id for tc in school_class.teachers.filter_by(is_active=True)}
    taken_students = {sc.user_id for sc in school_class.students.filter_by(is_active=True)}

    rows = (
        db.session.query(User, SchoolMembership)
        .join(SchoolMembership, SchoolMembership.user_id == User.id)
        .filter(
            SchoolMembership.school_id == school_id,
            SchoolMembership.is_active.is_(True),
            SchoolMembership.role.in_([SchoolRole.TEACHER, SchoolRole.STUDENT]),
            User.is_active.is_(True),
        )
        .order_by(func.lower(User.last_name), func.lower(User.first_name), User.username)
        .all()
    )

    teachers, students = [], []
    for user, membership in rows:
        if membership.role == SchoolRole.TEACHER and user.id not in taken_teachers:
            teachers.append(dict(_user_brief(user), role=membership.role.value))
        elif membership.role == SchoolRole.STUDENT and user.id not in taken_students:
            students.append(dict(_user_brief(user), role=membership.role.value))

    return {"teachers": teachers, "students": students, "total_available": len(teachers) + len(students)}
