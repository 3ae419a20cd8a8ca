# utils/bulk_importer.py
# Bulk creation of school users from uploaded spreadsheets.

from flask import current_app
from sqlalchemy import func, or_
from werkzeug.datastructures import MultiDict
from wtforms import Form, StringField
from wtforms.validators import AnyOf, Email, InputRequired, Length, Optional

from models import db, SchoolClass, SchoolMembership, SchoolRole, StudentClass, TeacherClass, User
from utils.csv_tools import (
    COLUMN_ALIASES, FIELD_LABELS, map_columns, normalize_header, parse_user_rows, read_user_table
)
from utils.errors import ActionError
from utils.identity import compute_display_name, construct_login_identifier
from utils.passwords import generate_password
from utils.permissions import is_username_unique_in_school
from utils.school_classes import current_school_year, link_to_class
from utils.school_users import require_school_email
from utils.schools import get_school

CLASS_ROLES = (SchoolRole.STUDENT, SchoolRole.TEACHER)


def _strip(value):
    return value.strip() if isinstance(value, str) else value


class BulkUserRowForm(Form):
    """Validation for one spreadsheet row; mirrors the single-user form plus class columns."""
    username = StringField('username', filters=[_strip], validators=[
        InputRequired('Username is required'),
        Length(min=3, max=50, message='Username must be between 3 and 50 characters')])
    email = StringField('email', filters=[_strip], validators=[Optional(), Email('Invalid email address')])
    first_name = StringField('first_name', filters=[_strip], validators=[
        InputRequired('First name is required'),
        Length(min=1, max=50, message='First name must be at most 50 characters')])
    last_name = StringField('last_name', filters=[_strip], validators=[
        InputRequired('Last name is required'),
        Length(min=1, max=50, message='Last name must be at most 50 characters')])
    role = StringField('role', validators=[
        InputRequired('Role is required'),
        AnyOf([r.value for r in SchoolRole], message='Role must be ADMIN, TEACHER, or STUDENT')])
    student_id = StringField('student_id', filters=[_strip], validators=[
        Optional(), Length(max=20, message='Student ID must be at most 20 characters')])
    grade_level = StringField('grade_level', filters=[_strip], validators=[
        Optional(), Length(max=10, message='Grade level must be at most 10 characters')])
    department = StringField('department', filters=[_strip], validators=[
        Optional(), Length(max=50, message='Department must be at most 50 characters')])
    class_name = StringField('class_name', filters=[_strip], validators=[
        Optional(), Length(max=100, message='Class name must be at most 100 characters')])
    class_code = StringField('class_code', filters=[_strip], validators=[
        Optional(), Length(max=20, message='Class code must be at most 20 characters')])
    subject = StringField('subject', filters=[_strip], validators=[
        Optional(), Length(max=50, message='Subject must be at most 50 characters')])


def validate_row(raw):
    """
    Runs one raw row through BulkUserRowForm.

    Returns:
        tuple: (cleaned dict or None, error message or None)
    """
    formdata = MultiDict()
    for key, value in (raw or {}).items():
        field = key if key in FIELD_LABELS else COLUMN_ALIASES.get(normalize_header(key))
        if not field or value is None or value == '':
            continue
        value = str(value)
        if field == 'role':
            value = value.strip().upper()
        formdata[field] = value

    form = BulkUserRowForm(formdata=formdata)
    if not form.validate():
        message = "; ".join(f"{field}: {errs[0]}" for field, errs in form.errors.items())
        return None, message

    cleaned = {name: (field.data or None) for name, field in form._fields.items()}
    return cleaned, None


class ClassResolver:
    """Finds or creates the class a row names, once per import (keyed by lower-cased name)."""

    def __init__(self, school_id):
        self.school_id = school_id
        self.cache = {}
        self.created = []

    def resolve(self, name, code=None, grade_level=None, subject=None):
        key = name.lower()
        if key in self.cache:
            return self.cache[key]

        match = func.lower(SchoolClass.name) == key
        if code:
            match = or_(match, SchoolClass.code == code)
        school_class = (
            SchoolClass.query.filter(SchoolClass.school_id == self.school_id, SchoolClass.is_active.is_(True), match)
            .order_by(SchoolClass.id)
            .first()
        )

        if school_class is None:
            school_class = SchoolClass(
                name=name,
                code=code or None,
                grade_level=grade_level,
                subject=subject,
                school_year=current_school_year(),
                school_id=self.school_id,
                is_active=True,
            )
            db.session.add(school_class)
            db.session.commit()
            self.created.append({
                "id": school_class.id,
                "name": school_class.name,
                "code": school_class.code,
                "grade_level": school_class.grade_level,
                "subject": school_class.subject,
                "school_year": school_class.school_year,
            })

        self.cache[key] = school_class
        return school_class


def bulk_create_school_users(school_id, rows):
    """
    Creates school users from already-parsed rows.

    Every row is handled on its own: a bad row is reported and skipped while
    the rest carry on. A row's user, membership and class link are committed
    together.

    Returns:
        dict: created users, created classes, row errors and a summary.
    """
    if not rows:
        raise ActionError("No user data provided")

    school = get_school(school_id)
    school_email = require_school_email(school)

    classes = ClassResolver(school.id)
    created = []
    errors = []
    seen = set()

    for index, raw in enumerate(rows):
        row_number = raw.get('row') or index + 1
        username = (str(raw.get('username') or '').strip()) or 'Unknown'

        data, error = validate_row(raw)
        if error:
            errors.append({"row": row_number, "username": username, "error": error})
            continue

        username = data['username']
        if username.lower() in seen:
            errors.append({"row": row_number, "username": username,
                           "error": f"Duplicate username '{username}' in this import"})
            continue
        if not is_username_unique_in_school(username, school.id):
            errors.append({"row": row_number, "username": username,
                           "error": "Username already exists in this school"})
            continue

        role = SchoolRole(data['role'])
        password = generate_password()

        school_class = None
        if data['class_name'] and role in CLASS_ROLES:
            try:
                school_class = classes.resolve(data['class_name'], data['class_code'],
                                               data['grade_level'], data['subject'])
            except Exception as e:
                db.session.rollback()
                current_app.logger.warning(f"Class '{data['class_name']}' could not be created: {e}")
                errors.append({"row": row_number, "username": username,
                               "error": f"Failed to create class: {data['class_name']}"})
                continue

        try:
            user = User(
                username=username,
                first_name=data['first_name'],
                last_name=data['last_name'],
                name=compute_display_name(data['first_name'], data['last_name']),
                email=data['email'],
                student_id=data['student_id'],
                grade_level=data['grade_level'],
                department=data['department'],
                email_verified=None,
                is_active=True,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.flush()

            membership = SchoolMembership(user_id=user.id, school_id=school.id, role=role, is_active=True)
            db.session.add(membership)
            if school_class is not None:
                link_model = StudentClass if role == SchoolRole.STUDENT else TeacherClass
                link_to_class(link_model, user.id, school_class.id)

            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.warning(f"Bulk import row {row_number} ('{username}') failed: {e}")
            errors.append({"row": row_number, "username": username, "error": _row_error_message(e)})
            continue

        seen.add(username.lower())
        entry = user.to_dict()
        entry.update({
            "role": role.value,
            "joined_at": membership.joined_at.isoformat(),
            "login_identifier": construct_login_identifier(username, school_email),
            "generated_password": password,
            "assigned_class": school_class.name if school_class is not None else None,
        })
        created.append(entry)

    summary = {
        "total": len(rows),
        "successful": len(created),
        "failed": len(errors),
        "classes_created": len(classes.created),
    }
    current_app.logger.info(
        f"Bulk import for school {school.id}: {summary['successful']} created, "
        f"{summary['failed']} failed, {summary['classes_created']} classes created."
    )
    return {
        "created": created,
        "created_classes": classes.created,
        "errors": errors,
        "summary": summary,
    }


def _row_error_message(exc):
    text = str(getattr(exc, 'orig', None) or exc)
    if 'UNIQUE constraint failed: user.email' in text or 'user_email' in text:
        return "Email is already taken by another user"
    return f"Failed to create user: {text}"


def preview_user_upload(file_storage, overrides=None):
    """Parses an upload without touching the database."""
    df = read_user_table(file_storage)
    rows, errors = parse_user_rows(df, overrides)
    return {
        "columns": map_columns(list(df.columns), overrides),
        "rows": rows,
        "errors": errors,
    }


def process_user_upload(file_storage, school_id, overrides=None):
    """
    Reads, checks and imports an uploaded CSV/XLSX of users.

    Raises:
        ActionError: the file cannot be read or has row-level problems;
            nothing is imported in that case.
    """
    df = read_user_table(file_storage)
    rows, errors = parse_user_rows(df, overrides)
    if errors:
        raise ActionError("The file has errors. Fix them and upload again.", errors=errors)
    return bulk_create_school_users(school_id, rows)


def assign_seed_class(school, user, role, class_name):
    """Used by the seed loader: links a seeded user to a class, creating it if needed."""
    if role not in CLASS_ROLES:
        return None
    school_class = SchoolClass.query.filter(
        SchoolClass.school_id == school.id,
        func.lower(SchoolClass.name) == class_name.lower(),
    ).first()
    if school_class is None:
        school_class = SchoolClass(name=class_name, school_id=school.id, school_year=current_school_year())
        db.session.add(school_class)
        db.session.flush()
    link_model = StudentClass if role == SchoolRole.STUDENT else TeacherClass
    link_to_class(link_model, user.id, school_class.id)
    return school_class
