# utils/schools.py
# School records: listing, creation and updates.

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db, School, SchoolMembership, SchoolRole
from utils.errors import ActionError

SCHOOL_CREATED_MESSAGE = "School created successfully. Users can now be assigned ADMIN, TEACHER, or STUDENT roles."


def pagination(page, limit, total):
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit if limit else 0}


def school_summary(school):
    data = school.to_dict()
    data["member_count"] = school.memberships.filter_by(is_active=True).count()
    data["class_count"] = school.classes.filter_by(is_active=True).count()
    return data


def list_schools(page=1, limit=10, search=None):
    query = School.query
    if search:
        like = f"%{search}%"
        query = query.filter(or_(School.name.ilike(like), School.code.ilike(like), School.email.ilike(like)))

    total = query.count()
    schools = query.order_by(School.created_at.desc(), School.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "schools": [school_summary(s) for s in schools],
        "pagination": pagination(page, limit, total),
    }


def get_school(school_id):
    school = db.session.get(School, school_id)
    if school is None:
        raise ActionError("School not found", 404)
    return school


def _check_unique(code=None, email=None, exclude_id=None):
    if code:
        query = School.query.filter(School.code == code)
        if exclude_id is not None:
            query = query.filter(School.id != exclude_id)
        if query.first():
            raise ActionError("School code already exists")
    if email:
        query = School.query.filter(School.email == email)
        if exclude_id is not None:
            query = query.filter(School.id != exclude_id)
        if query.first():
            raise ActionError("School email already exists")


def create_school(name, email, code=None, address=None, phone=None, website=None):
    code = code or None
    _check_unique(code=code, email=email)

    school = School(name=name, code=code, address=address or None, phone=phone or None,
                    email=email, website=website or None)
    try:
        db.session.add(school)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ActionError("School code or email already exists")

    current_app.logger.info(f"School '{school.name}' ({school.code}) created.")
    return school


def update_school(school_id, name=None, code=None, address=None, phone=None, email=None, website=None):
    school = get_school(school_id)
    if not name or not code:
        raise ActionError("Name and code are required")

    _check_unique(code=code, email=email, exclude_id=school.id)

    school.name = name
    school.code = code
    school.address = address or None
    school.phone = phone or None
    if email:
        school.email = email
    school.website = website or None
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ActionError("School code or email already exists")
    return school


def get_admin_schools(user):
    """Active schools where ``user`` holds an active ADMIN membership."""
    return (
        School.query.join(SchoolMembership)
        .filter(
            SchoolMembership.user_id == user.id,
            SchoolMembership.is_active.is_(True),
            SchoolMembership.role == SchoolRole.ADMIN,
            School.is_active.is_(True),
        )
        .order_by(School.name)
        .all()
    )
