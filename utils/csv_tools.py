# utils/csv_tools.py
# Spreadsheet helpers: reading user uploads, import templates,
# credential exports and the seed loader for `flask init-db`.

import csv
import io
import os
from datetime import date

import pandas as pd
from flask import current_app

from models import db, School, SchoolMembership, SchoolRole, SystemRole, User
from utils.errors import ActionError
from utils.identity import compute_display_name
from utils.passwords import generate_password

DATA_DIR = os.path.join(os.path.abspath(os.path.dirname(os.path.dirname(__file__))), 'data')

ALLOWED_EXTENSIONS = {'csv', 'xlsx'}
DEFAULT_MAX_ROWS = 1000
VALID_ROLES = [r.value for r in SchoolRole]

REQUIRED_FIELDS = ['username', 'first_name', 'last_name', 'role']
OPTIONAL_FIELDS = ['student_id', 'class_name', 'class_code', 'grade_level', 'subject', 'email', 'department']

# Field -> header label used in templates and messages
FIELD_LABELS = {
    'username': 'username',
    'first_name': 'firstName',
    'last_name': 'lastName',
    'role': 'role',
    'student_id': 'studentId',
    'class_name': 'className',
    'class_code': 'classCode',
    'grade_level': 'gradeLevel',
    'subject': 'subject',
    'email': 'email',
    'department': 'department',
}

# Normalised header -> field
COLUMN_ALIASES = {
    'username': 'username', 'user': 'username', 'login': 'username', 'loginname': 'username',
    'loginusername': 'username',
    'firstname': 'first_name', 'first': 'first_name', 'givenname': 'first_name', 'forename': 'first_name',
    'lastname': 'last_name', 'last': 'last_name', 'surname': 'last_name', 'familyname': 'last_name',
    'role': 'role', 'userrole': 'role', 'type': 'role',
    'studentid': 'student_id', 'studentno': 'student_id', 'studentnumber': 'student_id',
    'classname': 'class_name', 'class': 'class_name',
    'classcode': 'class_code',
    'gradelevel': 'grade_level', 'grade': 'grade_level', 'level': 'grade_level',
    'subject': 'subject',
    'email': 'email', 'emailaddress': 'email',
    'department': 'department', 'dept': 'department',
}

TEMPLATE_FIELDS = ['username', 'first_name', 'last_name', 'role', 'student_id', 'class_name', 'class_code', 'grade_level']
TEMPLATE_ROWS = [
    ['john.doe', 'John', 'Doe', 'STUDENT', 'S001', '1A', '1A', 'S1'],
    ['jane.smith', 'Jane', 'Smith', 'STUDENT', 'S002', '1A', '1A', 'S1'],
    ['mary.wong', 'Mary', 'Wong', 'TEACHER', '', '1A', '1A', 'S1'],
    ['peter.chan', 'Peter', 'Chan', 'STUDENT', 'P001', '6B', '6B', 'P6'],
    ['admin.user', 'Admin', 'User', 'ADMIN', '', '', '', ''],
]

CREDENTIAL_COLUMNS = ['Username', 'Login Identifier', 'Password', 'Name', 'Role', 'Assigned Class']

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MIMETYPE = "text/csv"


def file_extension(filename):
    if not filename or '.' not in filename:
        return ''
    return filename.rsplit('.', 1)[1].lower()


def read_user_table(file_storage, max_rows=None):
    """
    Reads an uploaded CSV/XLSX into a DataFrame of stripped strings.

    Raises:
        ActionError: unsupported extension or unreadable file.
    """
    ext = file_extension(getattr(file_storage, 'filename', None))
    if ext not in ALLOWED_EXTENSIONS:
        raise ActionError("Please select a CSV or Excel file")

    if hasattr(file_storage, 'seek'):
        file_storage.seek(0)
    try:
        content = io.BytesIO(file_storage.read())
        if ext == 'csv':
            df = pd.read_csv(content, dtype=str, keep_default_na=False, encoding='utf-8-sig')
        else:
            df = pd.read_excel(content, dtype=str)
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except Exception as e:
        raise ActionError(f"Could not read file. Error: {e}")

    max_rows = max_rows or current_app.config.get('IMPORT_MAX_ROWS', DEFAULT_MAX_ROWS)
    if len(df) > max_rows:
        raise ActionError(f"File exceeds row limit of {max_rows}.")

    df = df.fillna('')
    df.columns = [str(c).strip() for c in df.columns]
    return df.apply(lambda col: col.map(lambda v: str(v).strip()))


def normalize_header(header):
    text = str(header).strip().lower()
    for ch in (' ', '_', '-', '.'):
        text = text.replace(ch, '')
    return text


def map_columns(headers, overrides=None):
    """
    Works out which source header feeds which field.

    Args:
        headers (list[str]): headers as they appear in the file.
        overrides (dict): optional {source_header: field} chosen by the user;
            a falsy field drops the header.

    Returns:
        dict: {source_header: field}, each field used at most once.
    """
    overrides = overrides or {}
    mapping = {}
    used = set()

    for header, field in overrides.items():
        if header in headers and field in FIELD_LABELS and field not in used:
            mapping[header] = field
            used.add(field)

    for header in headers:
        if header in mapping or header in overrides:
            continue
        field = COLUMN_ALIASES.get(normalize_header(header))
        if field and field not in used:
            mapping[header] = field
            used.add(field)

    return mapping


def parse_user_rows(df, overrides=None):
    """
    Turns an uploaded sheet into import rows.

    Returns:
        tuple: (rows, errors) where each row is a dict of fields plus its
        spreadsheet line number under 'row'.
    """
    errors = []
    if df is None or df.empty:
        return [], ["File must contain a header row and at least one data row"]

    headers = list(df.columns)
    mapping = map_columns(headers, overrides)
    mapped_fields = set(mapping.values())
    missing = [FIELD_LABELS[f] for f in REQUIRED_FIELDS if f not in mapped_fields]
    if missing:
        return [], [f"Missing required columns: {', '.join(missing)}"]

    rows = []
    seen_usernames = set()
    for index, record in enumerate(df.to_dict('records')):
        line = index + 2
        values = {field: record.get(header, '') for header, field in mapping.items()}
        if not any(values.values()):
            continue

        if not all(values.get(f) for f in REQUIRED_FIELDS):
            errors.append(f"Row {line}: Missing required fields (username, firstName, lastName, role)")
            continue

        role = values['role'].upper()
        if role not in VALID_ROLES:
            errors.append(f"Row {line}: Invalid role '{values['role']}'. Must be ADMIN, TEACHER, or STUDENT")
            continue

        key = values['username'].lower()
        if key in seen_usernames:
            errors.append(f"Row {line}: Duplicate username '{values['username']}' in file")
            continue
        seen_usernames.add(key)

        row = {'row': line, 'role': role}
        for field in REQUIRED_FIELDS + OPTIONAL_FIELDS:
            if field != 'role' and values.get(field):
                row[field] = values[field]
        rows.append(row)

    if not rows and not errors:
        errors.append("File must contain a header row and at least one data row")
    return rows, errors


def _to_csv(columns, rows):
    df = pd.DataFrame(rows, columns=columns)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator='\n').encode('utf-8')


def _to_xlsx(columns, rows, sheet_name):
    output = io.BytesIO()
    writer = pd.ExcelWriter(output, engine='xlsxwriter')
    df = pd.DataFrame(rows, columns=columns)
    df.to_excel(writer, index=False, sheet_name=sheet_name)
    writer.close()
    return output.getvalue()


def user_import_template(fmt='csv'):
    """
    Returns:
        tuple: (bytes, filename, mimetype)
    """
    columns = [FIELD_LABELS[f] for f in TEMPLATE_FIELDS]
    if fmt == 'xlsx':
        return _to_xlsx(columns, TEMPLATE_ROWS, 'Users'), "bulk-users-template.xlsx", XLSX_MIMETYPE
    return _to_csv(columns, TEMPLATE_ROWS), "bulk-users-template.csv", CSV_MIMETYPE


def credentials_export(created, school_code, fmt='csv', today=None):
    """Login sheet for the users an import just created."""
    rows = []
    for user in created:
        name = f"{user.get('last_name') or ''} {user.get('first_name') or ''}".strip()
        rows.append([
            user.get('username', ''),
            user.get('login_identifier') or '',
            user.get('generated_password') or '',
            name,
            user.get('role', ''),
            user.get('assigned_class') or '',
        ])

    stamp = (today or date.today()).isoformat()
    base = f"created-users-{school_code or 'school'}-{stamp}"
    if fmt == 'xlsx':
        return _to_xlsx(CREDENTIAL_COLUMNS, rows, 'Credentials'), f"{base}.xlsx", XLSX_MIMETYPE
    return _to_csv(CREDENTIAL_COLUMNS, rows), f"{base}.csv", CSV_MIMETYPE


def load_data_from_csv(data_dir=DATA_DIR):
    """Loads seed schools and users from data/*.csv into the database."""
    # bulk_importer imports this module
    from utils.bulk_importer import assign_seed_class

    logger = current_app.logger
    try:
        # 1. Load Schools
        schools_df = pd.read_csv(os.path.join(data_dir, 'schools.csv'), dtype=str).fillna('')
        for _, row in schools_df.iterrows():
            if School.query.filter_by(email=row['email']).first():
                continue
            school = School(
                name=row['name'], code=row['code'] or None, email=row['email'],
                address=row.get('address') or None, phone=row.get('phone') or None,
                website=row.get('website') or None,
            )
            db.session.add(school)
        db.session.commit()
        logger.info("Schools loaded.")

        school_map = {s.code: s for s in School.query.all() if s.code}

        # 2. Load Users (and their memberships)
        users_df = pd.read_csv(os.path.join(data_dir, 'users.csv'), dtype=str).fillna('')
        for _, row in users_df.iterrows():
            school = school_map.get(row['school_code'])
            if row['school_code'] and not school:
                logger.warning(f"Skipping user {row['username']} - school code {row['school_code']} not found.")
                continue

            password = row['password'] or generate_password()
            user = User(
                username=row['username'],
                first_name=row['first_name'] or None,
                last_name=row['last_name'] or None,
                name=compute_display_name(row['first_name'], row['last_name']),
                email=row['email'] or None,
                system_role=SystemRole(row['system_role']) if row['system_role'] else None,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.flush()

            if school and row['role']:
                db.session.add(SchoolMembership(user_id=user.id, school_id=school.id, role=SchoolRole(row['role'])))
                if row.get('class_name'):
                    assign_seed_class(school, user, SchoolRole(row['role']), row['class_name'])

            if not row['password']:
                logger.warning(f"Generated password for '{row['username']}': {password}")

        db.session.commit()
        logger.info("Users and memberships loaded.")
        logger.info("--- Seed Data Load Complete ---")

    except Exception as e:
        db.session.rollback()
        logger.error(f"An error occurred during data loading: {e}")
        raise
