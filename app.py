# app.py
# Main Flask application file for SchoolHub, the multi-school administration API

import os
import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime
from functools import wraps

import click
import jwt
from flask import Flask, request, abort, jsonify, Response, g
from flask_login import (
    LoginManager, login_user, logout_user, current_user, login_required
)
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_wtf.file import FileAllowed, FileField, FileRequired
from wtforms import StringField, PasswordField, BooleanField, IntegerField, SelectMultipleField
from wtforms.validators import (
    DataRequired, InputRequired, Length, Optional, Email, URL, AnyOf, NumberRange
)
from werkzeug.exceptions import HTTPException

# Import models and db instance
from models import db, School, User, SchoolRole, SystemRole
# Import utilities
from utils.errors import ActionError
from utils.permissions import (
    CREATE_SCHOOL, MANAGE_SCHOOL, ROLE_DESCRIPTIONS,
    get_active_membership, get_all_permissions, get_user_managed_schools,
    has_school_permission, has_system_permission
)
from utils.identity import (
    MISSING_CREDENTIALS, MISSING_TOKEN, INVALID_TOKEN, USER_NOT_FOUND, ACCOUNT_INACTIVE,
    authenticate, bearer_token, decode_mobile_token, issue_mobile_token, token_schools
)
from utils.passwords import MIN_PASSWORD_LENGTH, MIN_SYSTEM_PASSWORD_LENGTH, generate_password
from utils.schools import (
    SCHOOL_CREATED_MESSAGE, create_school, get_admin_schools, get_school, list_schools,
    school_summary, update_school
)
from utils.school_users import (
    bulk_update_school_users, create_school_user, list_school_users,
    reset_school_user_password, update_school_user
)
from utils.school_classes import (
    assign_users_to_class, bulk_update_school_classes, class_dict, create_school_class,
    delete_school_class, get_available_users_for_class, get_class_users,
    list_school_classes, remove_users_from_class, update_school_class
)
from utils.bulk_importer import bulk_create_school_users, preview_user_upload, process_user_upload
from utils.csv_tools import credentials_export, load_data_from_csv, user_import_template
from utils.invitations import (
    cancel_school_invitation, create_school_invitation, expire_old_invitations,
    list_school_invitations, resend_school_invitation
)
from utils.credit_usage import (
    CREDIT_FEATURES, default_range, get_all_schools_usage, get_recent_school_usage,
    get_school_usage_summary, record_credit_usage
)
from utils.admin_users import (
    admin_user_dict, create_system_user, delete_user, get_admin_dashboard, get_user,
    list_users, update_user
)
from utils.profile import get_dashboard, get_user_profile, update_user_password, update_user_profile

# --- APP CONFIGURATION ---

basedir = os.path.abspath(os.path.dirname(__file__))
DEFAULT_DB_PATH = os.path.join(basedir, 'data', 'schoolhub.db')

app = Flask(__name__)
app.config['SECRET_KEY'] = 'a_very_secret_key_that_should_be_changed'
app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + DEFAULT_DB_PATH
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['WTF_CSRF_CHECK_DEFAULT'] = False
app.config['MAX_CONTENT_LENGTH'] = 5 * 1024 * 1024
app.config['MOBILE_TOKEN_DAYS'] = 30
app.config['INVITATION_EXPIRY_DAYS'] = 7
app.config['USAGE_DEFAULT_DAYS'] = 30
app.config['IMPORT_MAX_ROWS'] = 1000
app.config['LOG_DIR'] = os.path.join(basedir, 'logs')
app.config['LOG_LEVEL'] = 'INFO'
# FLASK_SECRET_KEY, FLASK_SQLALCHEMY_DATABASE_URI, FLASK_TESTING, ... override the above
app.config.from_prefixed_env()

# Initialize extensions
db.init_app(app)
csrf = CSRFProtect(app)
login_manager = LoginManager()
login_manager.init_app(app)

# --- LOGGING ---

if not app.testing:
    os.makedirs(app.config['LOG_DIR'], exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(app.config['LOG_DIR'], 'schoolhub.log'),
        maxBytes=10240000,
        backupCount=10
    )
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(getattr(logging, app.config['LOG_LEVEL']))
    app.logger.addHandler(file_handler)
    app.logger.setLevel(getattr(logging, app.config['LOG_LEVEL']))
    app.logger.info('SchoolHub startup')

# --- HELPER FUNCTIONS & DECORATORS ---

@login_manager.user_loader
def load_user(user_id):
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user

@login_manager.request_loader
def load_user_from_token(req):
    token = bearer_token(req)
    if not token:
        return None
    try:
        payload = decode_mobile_token(token)
    except jwt.InvalidTokenError:
        return None
    user = db.session.get(User, payload.get('user_id'))
    if user is None or not user.is_active:
        return None
    return user

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "error": "Unauthenticated"}), 401

def role_required(role):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated or current_user.system_role != role:
                abort(403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def system_permission_required(permission):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not has_system_permission(current_user, permission):
                abort(403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def school_permission_required(permission):
    """Guards routes that take a ``school_id`` URL argument."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not has_school_permission(current_user, kwargs.get('school_id'), permission):
                abort(403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def ok(data=None, message=None, status=200):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return jsonify(body), status

def form_errors(form):
    return jsonify({"success": False, "error": "Validation failed", "errors": form.errors}), 400

def submitted_changes(form):
    """Field values for the keys the client actually sent (partial updates)."""
    payload = request.get_json(silent=True) or {}
    return {name: field.data for name, field in form._fields.items()
            if name in payload and name != 'csrf_token'}

def parse_column_map(raw):
    if not raw:
        return None
    try:
        mapping = json.loads(raw)
    except ValueError:
        raise ActionError("Invalid column mapping") from None
    if not isinstance(mapping, dict):
        raise ActionError("Invalid column mapping")
    return mapping

def parse_date_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ActionError(f"Invalid date for '{name}'") from None

def file_response(content, filename, mimetype):
    return Response(content, mimetype=mimetype, headers={"Content-Disposition": f"attachment;filename={filename}"})

# Mobile clients have no session to protect
CSRF_EXEMPT_ENDPOINTS = {'mobile_login', 'mobile_refresh'}

@app.before_request
def check_csrf():
    if not app.config.get('WTF_CSRF_ENABLED', True):
        return
    if bearer_token(request):
        g.csrf_valid = True
        return
    if request.endpoint in CSRF_EXEMPT_ENDPOINTS:
        return
    csrf.protect()

# --- DATABASE INITIALIZATION ---

@app.cli.command("init-db")
def init_db_command():
    click.echo("Dropping and recreating database...")
    db.drop_all()
    db.create_all()
    click.echo("Loading data from CSV files...")
    load_data_from_csv()
    click.echo("Database initialized successfully!")

@app.cli.command("expire-invitations")
def expire_invitations_command():
    count = expire_old_invitations()
    click.echo(f"Expired {count} old invitations")

@app.cli.command("create-superadmin")
@click.argument("username")
@click.argument("email")
def create_superadmin_command(username, email):
    password = generate_password()
    user = create_system_user(name=username, username=username, email=email, password=password,
                              system_role=SystemRole.SUPER_ADMIN.value)
    click.echo(f"Super admin '{user.username}' created. Password: {password}")

with app.app_context():
    if (not app.testing
            and app.config['SQLALCHEMY_DATABASE_URI'] == 'sqlite:///' + DEFAULT_DB_PATH
            and not os.path.exists(DEFAULT_DB_PATH)):
        app.logger.info("Database not found. Creating and initializing...")
        os.makedirs(os.path.dirname(DEFAULT_DB_PATH), exist_ok=True)
        db.create_all()
        load_data_from_csv()
        app.logger.info("Database created and initialized.")

# --- FORMS (WTForms) ---
# FlaskForm reads JSON bodies as form data, so these validate API payloads directly.

SCHOOL_ROLE_VALUES = [r.value for r in SchoolRole]

def as_text(value):
    # JSON numbers arrive untouched; Length and Email expect text
    if value is None or isinstance(value, str):
        return value
    return str(value)

class TextField(StringField):
    def __init__(self, label=None, validators=None, filters=(), **kwargs):
        super().__init__(label, validators, filters=[as_text, *filters], **kwargs)

class SecretField(PasswordField):
    def __init__(self, label=None, validators=None, filters=(), **kwargs):
        super().__init__(label, validators, filters=[as_text, *filters], **kwargs)

class LoginForm(FlaskForm):
    identifier = TextField('Username or Email', validators=[DataRequired()])
    password = SecretField('Password', validators=[DataRequired()])
    remember = BooleanField('Remember me')

class SchoolForm(FlaskForm):
    name = TextField('School Name', validators=[DataRequired(), Length(min=1, max=100)])
    code = TextField('School Code', validators=[Optional(), Length(min=2, max=20)])
    address = TextField('Address', validators=[Optional(), Length(max=200)])
    phone = TextField('Phone', validators=[Optional(), Length(max=20)])
    email = TextField('School Email', validators=[DataRequired(), Email('Invalid email address')])
    website = TextField('Website', validators=[Optional(), URL(message='Invalid URL')])

class SchoolUpdateForm(SchoolForm):
    # Name and code presence is checked by update_school
    name = TextField('School Name', validators=[Optional(), Length(min=1, max=100)])
    email = TextField('School Email', validators=[Optional(), Email('Invalid email address')])

class SchoolUserForm(FlaskForm):
    username = TextField('Username', validators=[DataRequired(), Length(min=3, max=50)])
    email = TextField('Email', validators=[Optional(), Email('Invalid email address')])
    first_name = TextField('First Name', validators=[DataRequired(), Length(min=1, max=50)])
    last_name = TextField('Last Name', validators=[DataRequired(), Length(min=1, max=50)])
    password = SecretField('Password', validators=[Optional(), Length(min=MIN_PASSWORD_LENGTH)])
    generate_password = BooleanField('Generate Password')
    role = TextField('Role', validators=[DataRequired(), AnyOf(SCHOOL_ROLE_VALUES, message='Invalid role specified')])
    student_id = TextField('Student ID', validators=[Optional(), Length(max=20)])
    grade_level = TextField('Grade Level', validators=[Optional(), Length(max=10)])
    department = TextField('Department', validators=[Optional(), Length(max=50)])

class SchoolUserUpdateForm(FlaskForm):
    username = TextField('Username', validators=[Optional(), Length(min=3, max=50)])
    email = TextField('Email', validators=[Optional(), Email('Invalid email address')])
    first_name = TextField('First Name', validators=[Optional(), Length(max=50)])
    last_name = TextField('Last Name', validators=[Optional(), Length(max=50)])
    role = TextField('Role', validators=[Optional(), AnyOf(SCHOOL_ROLE_VALUES, message='Invalid role specified')])
    is_active = BooleanField('Active')
    student_id = TextField('Student ID', validators=[Optional(), Length(max=20)])
    grade_level = TextField('Grade Level', validators=[Optional(), Length(max=10)])
    department = TextField('Department', validators=[Optional(), Length(max=50)])

class ResetPasswordForm(FlaskForm):
    new_password = SecretField('New Password', validators=[Optional(), Length(min=MIN_PASSWORD_LENGTH)])
    generate_password = BooleanField('Generate Password')

class BulkUserActionForm(FlaskForm):
    operation = TextField('Operation', validators=[DataRequired(), AnyOf(
        ['role', 'status', 'class-assign', 'class-remove', 'password-reset'], message='Invalid operation type')])
    user_ids = SelectMultipleField('Users', coerce=int, validate_choice=False,
                                   validators=[DataRequired('At least one user is required')])
    value = TextField('Value', validators=[Optional()])

class UserUploadForm(FlaskForm):
    file = FileField('Users file', validators=[
        FileRequired(), FileAllowed(['csv', 'xlsx'], 'Please select a CSV or Excel file')])
    column_map = TextField('Column mapping', validators=[Optional()])

class ClassForm(FlaskForm):
    name = TextField('Class Name', validators=[DataRequired(), Length(min=1, max=100)])
    code = TextField('Class Code', validators=[Optional(), Length(max=20)])
    description = TextField('Description', validators=[Optional(), Length(max=500)])
    grade_level = TextField('Grade Level', validators=[Optional(), Length(max=10)])
    subject = TextField('Subject', validators=[Optional(), Length(max=50)])
    school_year = TextField('School Year', validators=[Optional(), Length(max=20)])

class ClassUpdateForm(ClassForm):
    name = TextField('Class Name', validators=[Optional(), Length(min=1, max=100)])

class ClassAssignForm(FlaskForm):
    teacher_ids = SelectMultipleField('Teachers', coerce=int, validate_choice=False)
    student_ids = SelectMultipleField('Students', coerce=int, validate_choice=False)

class ClassRemoveForm(FlaskForm):
    user_ids = SelectMultipleField('Users', coerce=int, validate_choice=False,
                                   validators=[DataRequired('At least one user is required')])

class BulkClassActionForm(FlaskForm):
    operation = TextField('Operation', validators=[DataRequired(), AnyOf(
        ['delete', 'activate', 'deactivate', 'assign-teacher', 'assign-student'], message='Invalid operation type')])
    class_ids = SelectMultipleField('Classes', coerce=int, validate_choice=False,
                                    validators=[DataRequired('At least one class is required')])
    user_id = IntegerField('User', validators=[Optional()])

class InvitationForm(FlaskForm):
    email = TextField('Email', validators=[DataRequired(), Email('Invalid email address')])
    role = TextField('Role', validators=[DataRequired()])

class CreditUsageForm(FlaskForm):
    feature = TextField('Feature', validators=[DataRequired(), AnyOf(CREDIT_FEATURES, message='Unknown feature')])
    cost = IntegerField('Cost', validators=[Optional(), NumberRange(min=1)])

class SystemUserForm(FlaskForm):
    name = TextField('Name', validators=[Optional(), Length(max=100)])
    username = TextField('Username', validators=[DataRequired(), Length(min=3, max=50)])
    email = TextField('Email', validators=[DataRequired(), Email('Invalid email address')])
    password = SecretField('Password', validators=[DataRequired(), Length(min=MIN_SYSTEM_PASSWORD_LENGTH)])
    system_role = TextField('System Role', validators=[Optional(), AnyOf([r.value for r in SystemRole])])

class SystemUserUpdateForm(FlaskForm):
    name = TextField('Name', validators=[Optional(), Length(max=100)])
    username = TextField('Username', validators=[Optional(), Length(min=3, max=50)])
    email = TextField('Email', validators=[Optional(), Email('Invalid email address')])
    password = SecretField('Password', validators=[Optional(), Length(min=MIN_SYSTEM_PASSWORD_LENGTH)])
    system_role = TextField('System Role', validators=[Optional(), AnyOf([r.value for r in SystemRole])])
    status = TextField('Status', validators=[Optional(), AnyOf(['active', 'pending', 'inactive'])])

class ProfileForm(FlaskForm):
    first_name = TextField('First Name', validators=[Optional(), Length(max=50)])
    last_name = TextField('Last Name', validators=[Optional(), Length(max=50)])
    email = TextField('Email', validators=[Optional(), Email('Invalid email address')])
    student_id = TextField('Student ID', validators=[Optional(), Length(max=20)])
    grade_level = TextField('Grade Level', validators=[Optional(), Length(max=10)])
    department = TextField('Department', validators=[Optional(), Length(max=50)])

class PasswordChangeForm(FlaskForm):
    current_password = SecretField('Current Password', validators=[DataRequired()])
    new_password = SecretField('New Password', validators=[InputRequired()])
    confirm_password = SecretField('Confirm Password', validators=[InputRequired()])

# --- ERROR HANDLERS ---

@app.errorhandler(ActionError)
def action_error(error):
    return jsonify(error.to_dict()), error.status_code

@app.errorhandler(CSRFError)
def csrf_error(error):
    return jsonify({"success": False, "error": error.description}), 400

@app.errorhandler(403)
def forbidden(error):
    return jsonify({"success": False, "error": "Insufficient permissions"}), 403

@app.errorhandler(404)
def not_found(error):
    return jsonify({"success": False, "error": "Not found"}), 404

@app.errorhandler(413)
def too_large(error):
    return jsonify({"success": False, "error": "File is too large"}), 413

@app.errorhandler(HTTPException)
def http_error(error):
    return jsonify({"success": False, "error": error.description}), error.code

@app.errorhandler(500)
def internal_server(error):
    db.session.rollback()
    app.logger.error(f'Server Error: {error}')
    return jsonify({"success": False, "error": "Internal server error"}), 500

# --- AUTHENTICATION & PUBLIC ROUTES ---

@app.route('/')
def select_school():
    schools = School.query.filter_by(is_active=True).order_by(School.name).all()
    return ok([{"id": s.id, "name": s.name, "code": s.code, "email": s.email} for s in schools])

@app.route('/api/csrf-token')
def csrf_token():
    return ok({"csrf_token": generate_csrf()})

@app.route('/login', methods=['POST'])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return form_errors(form)
    user = authenticate(form.identifier.data, form.password.data)
    login_user(user, remember=form.remember.data)
    app.logger.info(f'User logged in: {user.username}')
    data = user.to_dict()
    data["schools"] = token_schools(user)
    return ok(data, f'Welcome back, {user.username}!')

@app.route('/logout', methods=['POST'])
@login_required
def logout():
    app.logger.info(f'User logged out: {current_user.username}')
    logout_user()
    return ok(message='You have been logged out.')

@app.route('/api/auth/mobile', methods=['POST'])
def mobile_login():
    payload = request.get_json(silent=True) or {}
    identifier = (payload.get('identifier') or payload.get('email') or '').strip()
    password = payload.get('password') or ''
    if not identifier or not password:
        raise ActionError("Identifier and password are required", 400, code=MISSING_CREDENTIALS)

    user = authenticate(identifier, password, payload.get('school_code'))
    token = issue_mobile_token(user)
    app.logger.info(f'Mobile login: {user.username}')
    data = user.to_dict()
    data["schools"] = token_schools(user)
    return ok({"token": token, "user": data})

@app.route('/api/auth/mobile/refresh', methods=['POST'])
def mobile_refresh():
    token = bearer_token(request) or (request.get_json(silent=True) or {}).get('token')
    if not token:
        raise ActionError("Token is required", 401, code=MISSING_TOKEN)
    try:
        payload = decode_mobile_token(token, verify_exp=False)
    except jwt.InvalidTokenError:
        raise ActionError("Invalid token", 401, code=INVALID_TOKEN) from None

    user = db.session.get(User, payload.get('user_id'))
    if user is None:
        raise ActionError("User not found", 404, code=USER_NOT_FOUND)
    if not user.is_active:
        raise ActionError("Account is inactive", 403, code=ACCOUNT_INACTIVE)

    data = user.to_dict()
    data["schools"] = token_schools(user)
    return ok({"token": issue_mobile_token(user), "user": data})

# --- DASHBOARD, PROFILE & PERMISSIONS ---

@app.route('/api/dashboard')
@login_required
def dashboard():
    return ok(get_dashboard(current_user))

@app.route('/api/profile', methods=['GET', 'PATCH'])
@login_required
def profile():
    if request.method == 'GET':
        return ok(get_user_profile(current_user))
    form = ProfileForm()
    if not form.validate_on_submit():
        return form_errors(form)
    update_user_profile(current_user, submitted_changes(form))
    return ok(get_user_profile(current_user), 'Profile updated successfully')

@app.route('/api/profile/password', methods=['POST'])
@login_required
def change_password():
    form = PasswordChangeForm()
    if not form.validate_on_submit():
        return form_errors(form)
    update_user_password(current_user, form.current_password.data, form.new_password.data, form.confirm_password.data)
    app.logger.info(f'Password changed: {current_user.username}')
    return ok(message='Password updated successfully')

@app.route('/api/permissions')
@login_required
def permissions():
    category = request.args.get('category')
    items = get_all_permissions(category)
    grouped = {}
    for item in items:
        grouped.setdefault(item["category"], []).append(item)
    return ok({"permissions": items, "grouped": grouped, "roles": ROLE_DESCRIPTIONS})

@app.route('/api/user/managed-schools')
@login_required
def managed_schools():
    permission = request.args.get('permission')
    if permission:
        schools = get_user_managed_schools(current_user, permission)
    else:
        schools = get_admin_schools(current_user)
    return ok([s.to_dict() for s in schools])

# --- 1. SCHOOLS ---

@app.route('/api/schools', methods=['GET'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def schools_index():
    return ok(list_schools(
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 10, type=int),
        search=request.args.get('search'),
    ))

@app.route('/api/schools', methods=['POST'])
@login_required
@system_permission_required(CREATE_SCHOOL)
def schools_create():
    form = SchoolForm()
    if not form.validate_on_submit():
        return form_errors(form)
    school = create_school(
        name=form.name.data, email=form.email.data, code=form.code.data,
        address=form.address.data, phone=form.phone.data, website=form.website.data,
    )
    return ok(school.to_dict(), SCHOOL_CREATED_MESSAGE, 201)

@app.route('/api/schools/<int:school_id>', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def schools_show(school_id):
    return ok(school_summary(get_school(school_id)))

@app.route('/api/schools/<int:school_id>', methods=['PUT'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def schools_update(school_id):
    form = SchoolUpdateForm()
    if not form.validate_on_submit():
        return form_errors(form)
    school = update_school(
        school_id, name=form.name.data, code=form.code.data, address=form.address.data,
        phone=form.phone.data, email=form.email.data, website=form.website.data,
    )
    return ok(school.to_dict(), 'School updated successfully')

# --- 2. SCHOOL USERS ---

@app.route('/api/schools/<int:school_id>/users', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_index(school_id):
    return ok(list_school_users(
        school_id,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
        search=request.args.get('search'),
        role=request.args.get('role'),
        status=request.args.get('status'),
        grade_level=request.args.get('grade_level'),
        department=request.args.get('department'),
        include_classes=request.args.get('include_classes', '').lower() in ('1', 'true', 'yes'),
    ))

@app.route('/api/schools/<int:school_id>/users', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_create(school_id):
    form = SchoolUserForm()
    if not form.validate_on_submit():
        return form_errors(form)
    user, generated = create_school_user(
        school_id,
        username=form.username.data,
        first_name=form.first_name.data,
        last_name=form.last_name.data,
        role=form.role.data,
        password=form.password.data,
        generate=form.generate_password.data,
        email=form.email.data,
        student_id=form.student_id.data,
        grade_level=form.grade_level.data,
        department=form.department.data,
    )
    if generated:
        user["generated_password"] = generated
    return ok(user, 'User created successfully', 201)

@app.route('/api/schools/<int:school_id>/users/<int:user_id>', methods=['PATCH'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_update(school_id, user_id):
    form = SchoolUserUpdateForm()
    if not form.validate_on_submit():
        return form_errors(form)
    return ok(update_school_user(school_id, user_id, submitted_changes(form)), 'User updated successfully')

@app.route('/api/schools/<int:school_id>/users/<int:user_id>/reset-password', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_reset_password(school_id, user_id):
    form = ResetPasswordForm()
    if not form.validate_on_submit():
        return form_errors(form)
    generate = form.generate_password.data or not form.new_password.data
    generated = reset_school_user_password(school_id, user_id, form.new_password.data, generate)
    data = {"new_password": generated} if generated else None
    return ok(data, 'Password reset successfully')

@app.route('/api/schools/<int:school_id>/users/bulk', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_bulk(school_id):
    form = BulkUserActionForm()
    if not form.validate_on_submit():
        return form_errors(form)
    result = bulk_update_school_users(school_id, form.user_ids.data, form.operation.data, form.value.data)
    message = result.pop("message")
    return ok(result or None, message)

# --- 3. BULK IMPORT ---

@app.route('/api/schools/<int:school_id>/users/import/template')
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_import_template(school_id):
    content, filename, mimetype = user_import_template(request.args.get('format', 'csv'))
    return file_response(content, filename, mimetype)

@app.route('/api/schools/<int:school_id>/users/import/preview', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_import_preview(school_id):
    form = UserUploadForm()
    if not form.validate_on_submit():
        return form_errors(form)
    return ok(preview_user_upload(form.file.data, parse_column_map(form.column_map.data)))

@app.route('/api/schools/<int:school_id>/users/import', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_import(school_id):
    if request.files:
        form = UserUploadForm()
        if not form.validate_on_submit():
            return form_errors(form)
        report = process_user_upload(form.file.data, school_id, parse_column_map(form.column_map.data))
    else:
        payload = request.get_json(silent=True) or {}
        report = bulk_create_school_users(school_id, payload.get('users') or [])

    summary = report["summary"]
    message = f"Import complete! Created: {summary['successful']}, Failed: {summary['failed']}."
    return ok(report, message)

@app.route('/api/schools/<int:school_id>/users/import/credentials', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def school_users_import_credentials(school_id):
    school = get_school(school_id)
    payload = request.get_json(silent=True) or {}
    created = payload.get('created') or []
    if not created:
        raise ActionError("No created users to export")
    content, filename, mimetype = credentials_export(created, school.code, payload.get('format', 'csv'))
    return file_response(content, filename, mimetype)

# --- 4. CLASSES ---

@app.route('/api/schools/<int:school_id>/classes', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_index(school_id):
    return ok(list_school_classes(
        school_id,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 50, type=int),
        search=request.args.get('search'),
        subject=request.args.get('subject'),
        grade_level=request.args.get('grade_level'),
        school_year=request.args.get('school_year'),
        include_users=request.args.get('include_users', '').lower() in ('1', 'true', 'yes'),
    ))

@app.route('/api/schools/<int:school_id>/classes', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_create(school_id):
    form = ClassForm()
    if not form.validate_on_submit():
        return form_errors(form)
    school_class = create_school_class(
        school_id, name=form.name.data, code=form.code.data, description=form.description.data,
        grade_level=form.grade_level.data, subject=form.subject.data, school_year=form.school_year.data,
    )
    return ok(class_dict(school_class), f'Class "{school_class.name}" created successfully', 201)

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>', methods=['PATCH'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_update(school_id, class_id):
    form = ClassUpdateForm()
    if not form.validate_on_submit():
        return form_errors(form)
    school_class = update_school_class(school_id, class_id, submitted_changes(form))
    return ok(class_dict(school_class), f'Class "{school_class.name}" updated successfully')

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>', methods=['DELETE'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_delete(school_id, class_id):
    school_class = delete_school_class(school_id, class_id)
    return ok(message=f'Class "{school_class.name}" deleted successfully')

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>/users', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_users(school_id, class_id):
    return ok(get_class_users(school_id, class_id))

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>/users', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_assign_users(school_id, class_id):
    form = ClassAssignForm()
    if not form.validate_on_submit():
        return form_errors(form)
    if not form.teacher_ids.data and not form.student_ids.data:
        raise ActionError("No users selected")
    count = assign_users_to_class(school_id, class_id, form.teacher_ids.data, form.student_ids.data)
    return ok({"assigned_count": count}, f"Assigned {count} users to class")

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>/users/remove', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_remove_users(school_id, class_id):
    form = ClassRemoveForm()
    if not form.validate_on_submit():
        return form_errors(form)
    count = remove_users_from_class(school_id, class_id, form.user_ids.data)
    return ok({"removed_count": count}, f"Removed {count} users from class")

@app.route('/api/schools/<int:school_id>/classes/<int:class_id>/available-users')
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_available_users(school_id, class_id):
    return ok(get_available_users_for_class(school_id, class_id))

@app.route('/api/schools/<int:school_id>/classes/bulk', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def classes_bulk(school_id):
    form = BulkClassActionForm()
    if not form.validate_on_submit():
        return form_errors(form)
    message = bulk_update_school_classes(school_id, form.class_ids.data, form.operation.data, form.user_id.data)
    return ok(message=message)

# --- 5. INVITATIONS ---

@app.route('/api/schools/<int:school_id>/invitations', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def invitations_index(school_id):
    return ok(list_school_invitations(
        school_id,
        status=request.args.get('status'),
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
    ))

@app.route('/api/schools/<int:school_id>/invitations', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def invitations_create(school_id):
    form = InvitationForm()
    if not form.validate_on_submit():
        return form_errors(form)
    invitation, accepted = create_school_invitation(school_id, form.email.data, form.role.data, current_user)
    if accepted:
        return ok(invitation.to_dict(), 'User found in system and automatically added to school')
    return ok(invitation.to_dict(), 'Invitation sent successfully', 201)

@app.route('/api/schools/<int:school_id>/invitations/<int:invitation_id>', methods=['DELETE'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def invitations_cancel(school_id, invitation_id):
    cancel_school_invitation(school_id, invitation_id)
    return ok(message='Invitation cancelled successfully')

@app.route('/api/schools/<int:school_id>/invitations/<int:invitation_id>/resend', methods=['POST'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def invitations_resend(school_id, invitation_id):
    invitation = resend_school_invitation(school_id, invitation_id)
    return ok(invitation.to_dict(), 'Invitation resent successfully')

# --- 6. CREDIT USAGE ---

@app.route('/api/schools/<int:school_id>/usage', methods=['GET'])
@login_required
@school_permission_required(MANAGE_SCHOOL)
def usage_show(school_id):
    get_school(school_id)
    start, end = default_range()
    start = parse_date_arg('start') or start
    end = parse_date_arg('end') or end
    summary = get_school_usage_summary(school_id, start, end)
    return ok({
        "range": {"start": start.isoformat(), "end": end.isoformat()},
        "summary": summary,
        "total_cost": sum(item["total_cost"] for item in summary),
        "recent": get_recent_school_usage(school_id, start, end),
    })

@app.route('/api/schools/<int:school_id>/usage', methods=['POST'])
@login_required
def usage_record(school_id):
    get_school(school_id)
    if not current_user.is_super_admin and get_active_membership(current_user.id, school_id) is None:
        abort(403)
    form = CreditUsageForm()
    if not form.validate_on_submit():
        return form_errors(form)
    metadata = (request.get_json(silent=True) or {}).get('metadata')
    if not record_credit_usage(current_user.id, school_id, form.feature.data, form.cost.data or 1, metadata):
        raise ActionError("Failed to record credit usage", 500)
    return ok(message='Credit usage recorded', status=201)

@app.route('/api/schools/usage/summary')
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def usage_all_schools():
    start, end = default_range()
    start = parse_date_arg('start') or start
    end = parse_date_arg('end') or end
    return ok({
        "range": {"start": start.isoformat(), "end": end.isoformat()},
        "schools": get_all_schools_usage(start, end),
    })

# --- 7. SYSTEM ADMINISTRATION ---

@app.route('/api/admin/dashboard')
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_dashboard():
    return ok(get_admin_dashboard())

@app.route('/api/admin/users', methods=['GET'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_users_index():
    return ok(list_users(
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
        search=request.args.get('search'),
        status=request.args.get('status'),
    ))

@app.route('/api/admin/users', methods=['POST'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_users_create():
    form = SystemUserForm()
    if not form.validate_on_submit():
        return form_errors(form)
    user = create_system_user(
        name=form.name.data or form.username.data, username=form.username.data, email=form.email.data,
        password=form.password.data, system_role=form.system_role.data,
    )
    return ok(admin_user_dict(user), 'User created successfully', 201)

@app.route('/api/admin/users/<int:user_id>', methods=['GET'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_users_show(user_id):
    return ok(admin_user_dict(get_user(user_id)))

@app.route('/api/admin/users/<int:user_id>', methods=['PATCH'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_users_update(user_id):
    form = SystemUserUpdateForm()
    if not form.validate_on_submit():
        return form_errors(form)
    user = update_user(user_id, submitted_changes(form))
    return ok(admin_user_dict(user), 'User updated successfully')

@app.route('/api/admin/users/<int:user_id>', methods=['DELETE'])
@login_required
@role_required(SystemRole.SUPER_ADMIN)
def admin_users_delete(user_id):
    delete_user(user_id, current_user)
    return ok(message='User deleted successfully')

# --- RUN APPLICATION ---

if __name__ == '__main__':
    app.run(debug=True)
