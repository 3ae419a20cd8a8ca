import io
from datetime import date

import pandas as pd
import pytest
from werkzeug.datastructures import FileStorage

from utils.csv_tools import (
    credentials_export, map_columns, normalize_header, parse_user_rows,
    read_user_table, user_import_template
)
from utils.errors import ActionError


def upload(content, filename='users.csv'):
    if isinstance(content, str):
        content = content.encode('utf-8')
    return FileStorage(stream=io.BytesIO(content), filename=filename)


def frame(headers, *rows):
    return pd.DataFrame(list(rows), columns=headers)


def test_normalize_header():
    assert normalize_header(' First_Name ') == 'firstname'
    assert normalize_header('Student-No.') == 'studentno'


def test_map_columns_uses_aliases():
    headers = ['User Name', 'First Name', 'Surname', 'Role', 'Class', 'Notes']
    assert map_columns(headers) == {
        'User Name': 'username',
        'First Name': 'first_name',
        'Surname': 'last_name',
        'Role': 'role',
        'Class': 'class_name',
    }


def test_map_columns_overrides_win_and_can_drop_headers():
    headers = ['Login', 'Given', 'Family', 'Kind', 'Email']
    overrides = {'Given': 'first_name', 'Family': 'last_name', 'Kind': 'role', 'Email': ''}
    assert map_columns(headers, overrides) == {
        'Given': 'first_name',
        'Family': 'last_name',
        'Kind': 'role',
        'Login': 'username',
    }


def test_parse_user_rows_reports_line_numbers():
    df = frame(
        ['username', 'firstName', 'lastName', 'role', 'className'],
        ['amy', 'Amy', 'Lee', 'student', '1A'],
        ['', '', '', '', ''],
        ['bob', 'Bob', '', 'STUDENT', ''],
        ['cat', 'Cat', 'Ng', 'JANITOR', ''],
        ['AMY', 'Amy', 'Other', 'TEACHER', ''],
        ['dan', 'Dan', 'Ho', 'TEACHER', '1A'],
    )
    rows, errors = parse_user_rows(df)

    assert rows == [
        {'row': 2, 'role': 'STUDENT', 'username': 'amy', 'first_name': 'Amy', 'last_name': 'Lee', 'class_name': '1A'},
        {'row': 7, 'role': 'TEACHER', 'username': 'dan', 'first_name': 'Dan', 'last_name': 'Ho', 'class_name': '1A'},
    ]
    assert errors == [
        'Row 4: Missing required fields (username, firstName, lastName, role)',
        "Row 5: Invalid role 'JANITOR'. Must be ADMIN, TEACHER, or STUDENT",
        "Row 6: Duplicate username 'AMY' in file",
    ]


def test_parse_user_rows_missing_columns():
    rows, errors = parse_user_rows(frame(['username', 'role'], ['amy', 'STUDENT']))
    assert rows == []
    assert errors == ['Missing required columns: firstName, lastName']


def test_parse_user_rows_empty_sheet():
    rows, errors = parse_user_rows(pd.DataFrame())
    assert rows == []
    assert errors == ['File must contain a header row and at least one data row']


def test_read_user_table_strips_cells(app_ctx):
    df = read_user_table(upload('\ufeffusername, firstName ,lastName,role\n  amy ,Amy,Lee,STUDENT\n'))
    assert list(df.columns) == ['username', 'firstName', 'lastName', 'role']
    assert df.iloc[0]['username'] == 'amy'


def test_read_user_table_rejects_other_extensions(app_ctx):
    with pytest.raises(ActionError) as exc:
        read_user_table(upload('a,b\n1,2\n', filename='users.xls'))
    assert exc.value.message == 'Please select a CSV or Excel file'


def test_read_user_table_row_limit(app_ctx):
    content = 'username,firstName,lastName,role\n' + 'a,A,A,STUDENT\n' * 3
    with pytest.raises(ActionError) as exc:
        read_user_table(upload(content), max_rows=2)
    assert exc.value.message == 'File exceeds row limit of 2.'


def test_csv_template_contents(app_ctx):
    content, filename, mimetype = user_import_template('csv')
    lines = content.decode('utf-8').splitlines()
    assert filename == 'bulk-users-template.csv'
    assert mimetype == 'text/csv'
    assert lines[0] == '"username","firstName","lastName","role","studentId","className","classCode","gradeLevel"'
    assert lines[1] == '"john.doe","John","Doe","STUDENT","S001","1A","1A","S1"'
    assert len(lines) == 6


def test_xlsx_template_parses_cleanly(app_ctx):
    content, filename, _ = user_import_template('xlsx')
    assert filename == 'bulk-users-template.xlsx'

    rows, errors = parse_user_rows(read_user_table(upload(content, filename)))
    assert errors == []
    assert [r['username'] for r in rows] == ['john.doe', 'jane.smith', 'mary.wong', 'peter.chan', 'admin.user']
    assert 'class_name' not in rows[-1]


def test_credentials_export_csv():
    created = [{
        'username': 'amy', 'first_name': 'Amy', 'last_name': 'Lee', 'role': 'STUDENT',
        'login_identifier': 'amy@greenfield.edu', 'generated_password': 'reading-kind-fun',
        'assigned_class': '1A',
    }]
    content, filename, _ = credentials_export(created, 'GF01', today=date(2024, 9, 1))
    lines = content.decode('utf-8').splitlines()

    assert filename == 'created-users-GF01-2024-09-01.csv'
    assert lines[0] == '"Username","Login Identifier","Password","Name","Role","Assigned Class"'
    assert lines[1] == '"amy","amy@greenfield.edu","reading-kind-fun","Lee Amy","STUDENT","1A"'
