# utils/identity.py
# Login identifiers, credential checks and mobile bearer tokens.

import re
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from models import School, SchoolMembership, User
from utils.errors import ActionError

SCHOOL_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TOKEN_ALGORITHM = "HS256"

# Error codes the mobile client switches on
MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
MISSING_TOKEN = "MISSING_TOKEN"
INVALID_TOKEN = "INVALID_TOKEN"
USER_NOT_FOUND = "USER_NOT_FOUND"


def compute_display_name(first_name, last_name):
    """Family name first: ("Tai Man", "Chan") -> "Chan Tai Man"."""
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    full = f"{last} {first}".strip()
    return full or None


def parse_login_identifier(identifier):
    """
    Splits 'username@school-domain' into its parts.

    Returns None when the identifier is not in that shape (no '@', empty
    username or domain, or a domain without a dot).
    """
    if not identifier:
        return None
    at = identifier.find("@")
    if at <= 0 or at == len(identifier) - 1:
        return None

    username = identifier[:at]
    domain = identifier[at + 1:]
    if "." not in domain:
        return None
    return {"username": username, "school_domain": domain}


def extract_school_domain(school_email):
    if school_email and "@" in school_email:
        return school_email.split("@", 1)[1]
    return school_email


def construct_login_identifier(username, school_email):
    return f"{username}@{extract_school_domain(school_email)}"


def is_valid_school_email(email):
    return bool(email) and bool(SCHOOL_EMAIL_RE.match(email))


def _find_school_user(username, domain):
    return (
        User.query.join(SchoolMembership, SchoolMembership.user_id == User.id)
        .join(School, School.id == SchoolMembership.school_id)
        .filter(
            User.username == username,
            SchoolMembership.is_active.is_(True),
            School.is_active.is_(True),
            School.email.ilike(f"%@{domain}"),
        )
        .first()
    )


def _find_legacy_user(identifier):
    user = User.query.filter_by(email=identifier).first()
    if user is None and "@" not in identifier:
        user = User.query.filter_by(username=identifier).first()
    return user


def authenticate(identifier, password, school_code=None):
    """
    Resolves an identifier + password to a User or raises ActionError (401).

    'username@school-domain' identifiers are tried against school members
    first; anything else falls back to an email or bare username match.
    """
    identifier = (identifier or "").strip()
    if not identifier or not password:
        raise ActionError("Invalid credentials", 401, code=MISSING_CREDENTIALS)

    user = None
    parsed = parse_login_identifier(identifier)
    if parsed:
        user = _find_school_user(parsed["username"], parsed["school_domain"])
    if user is None:
        user = _find_legacy_user(identifier)

    if user is None or not user.check_password(password):
        raise ActionError("Invalid credentials", 401, code=INVALID_CREDENTIALS)
    if not user.is_active:
        raise ActionError("Account is inactive", 401, code=ACCOUNT_INACTIVE)

    if school_code:
        membership = (
            SchoolMembership.query.join(School)
            .filter(
                SchoolMembership.user_id == user.id,
                SchoolMembership.is_active.is_(True),
                School.code == school_code,
            )
            .first()
        )
        if membership is None:
            raise ActionError("Invalid credentials", 401, code=INVALID_CREDENTIALS)

    return user


def token_schools(user):
    return [
        {
            "id": m.school.id,
            "name": m.school.name,
            "code": m.school.code,
            "email": m.school.email,
            "role": m.role.value,
        }
        for m in user.active_memberships()
    ]


def issue_mobile_token(user):
    now = datetime.now(timezone.utc)
    days = current_app.config.get("MOBILE_TOKEN_DAYS", 30)
    payload = {
        "user_id": user.id,
        "email": user.email,
        "username": user.username,
        "name": user.name,
        "system_role": user.system_role.value if user.system_role else None,
        "schools": token_schools(user),
        "iat": now,
        "exp": now + timedelta(days=days),
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm=TOKEN_ALGORITHM)


def decode_mobile_token(token, verify_exp=True):
    """Returns the payload; raises jwt.InvalidTokenError on a bad token."""
    return jwt.decode(
        token,
        current_app.config["SECRET_KEY"],
        algorithms=[TOKEN_ALGORITHM],
        options={"verify_exp": verify_exp},
    )


def bearer_token(request):
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None
