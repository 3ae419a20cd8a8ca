# models.py
# Database schema for the multi-tenant school hub.

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy import Enum
import enum
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, matching what sqlite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None

# --- Enums ---

class SchoolRole(enum.Enum):
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"

class SystemRole(enum.Enum):
    SUPER_ADMIN = "SUPER_ADMIN"

class InvitationStatus(enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"

# --- Core Models ---

class School(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=True, index=True)
    address = db.Column(db.String(200))
    phone = db.Column(db.String(20))
    email = db.Column(db.String(255), unique=True, nullable=False)
    website = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = db.relationship('SchoolMembership', back_populates='school', lazy='dynamic', cascade="all, delete-orphan")
    classes = db.relationship('SchoolClass', back_populates='school', lazy='dynamic', cascade="all, delete-orphan")
    invitations = db.relationship('SchoolInvitation', back_populates='school', lazy='dynamic', cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "address": self.address,
            "phone": self.phone,
            "email": self.email,
            "website": self.website,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<School {self.code or self.email}>"

class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120))
    first_name = db.Column(db.String(50))
    last_name = db.Column(db.String(50))
    email = db.Column(db.String(255), unique=True, nullable=True)
    # Usernames are only unique inside a school, see utils.permissions
    username = db.Column(db.String(50), nullable=False, index=True)
    password_hash = db.Column(db.String(256))
    email_verified = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    student_id = db.Column(db.String(20))
    grade_level = db.Column(db.String(10))
    department = db.Column(db.String(50))
    system_role = db.Column(Enum(SystemRole), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = db.relationship('SchoolMembership', back_populates='user', lazy='dynamic', cascade="all, delete-orphan",
                                  foreign_keys='SchoolMembership.user_id')
    teacher_classes = db.relationship('TeacherClass', back_populates='user', lazy='dynamic', cascade="all, delete-orphan")
    student_classes = db.relationship('StudentClass', back_populates='user', lazy='dynamic', cascade="all, delete-orphan")
    credit_usages = db.relationship('SchoolCreditUsage', back_populates='user', lazy='dynamic', cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_super_admin(self):
        return self.system_role == SystemRole.SUPER_ADMIN

    @property
    def display_name(self):
        full = f"{self.last_name or ''} {self.first_name or ''}".strip()
        return full or self.name or self.username or self.email or str(self.id)

    def active_memberships(self):
        return self.memberships.filter_by(is_active=True).all()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "username": self.username,
            "email_verified": _iso(self.email_verified),
            "is_active": self.is_active,
            "student_id": self.student_id,
            "grade_level": self.grade_level,
            "department": self.department,
            "system_role": self.system_role.value if self.system_role else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<User {self.username}>"

# --- Membership & Class Models ---

class SchoolMembership(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'school_id', name='uq_membership_user_school'),)

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(Enum(SchoolRole), nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    user = db.relationship('User', back_populates='memberships', foreign_keys=[user_id])

    school_id = db.Column(db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), nullable=False)
    school = db.relationship('School', back_populates='memberships')

    def to_dict(self, include_school=False):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "school_id": self.school_id,
            "role": self.role.value,
            "joined_at": _iso(self.joined_at),
            "is_active": self.is_active,
        }
        if include_school:
            data["school"] = self.school.to_dict()
        return data

    def __repr__(self):
        return f"<SchoolMembership user={self.user_id} school={self.school_id} ({self.role.name})>"

class SchoolClass(db.Model):
    __tablename__ = 'school_class'
    __table_args__ = (db.UniqueConstraint('code', 'school_id', name='uq_class_code_school'),)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20))
    description = db.Column(db.String(500))
    grade_level = db.Column(db.String(10))
    subject = db.Column(db.String(50))
    school_year = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    school_id = db.Column(db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), nullable=False)
    school = db.relationship('School', back_populates='classes')

    teachers = db.relationship('TeacherClass', back_populates='school_class', lazy='dynamic', cascade="all, delete-orphan")
    students = db.relationship('StudentClass', back_populates='school_class', lazy='dynamic', cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "grade_level": self.grade_level,
            "subject": self.subject,
            "school_year": self.school_year,
            "is_active": self.is_active,
            "school_id": self.school_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<SchoolClass {self.name} ({self.school_id})>"

class TeacherClass(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'class_id', name='uq_teacher_class'),)

    id = db.Column(db.Integer, primary_key=True)
    assigned_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    user = db.relationship('User', back_populates='teacher_classes')

    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id', ondelete='CASCADE'), nullable=False)
    school_class = db.relationship('SchoolClass', back_populates='teachers')

class StudentClass(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'class_id', name='uq_student_class'),)

    id = db.Column(db.Integer, primary_key=True)
    enrolled_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    user = db.relationship('User', back_populates='student_classes')

    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id', ondelete='CASCADE'), nullable=False)
    school_class = db.relationship('SchoolClass', back_populates='students')

# --- Invitations & Metering ---

class SchoolInvitation(db.Model):
    __table_args__ = (
        db.UniqueConstraint('email', 'school_id', name='uq_invitation_email_school'),
        db.Index('ix_invitation_school_status', 'school_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    role = db.Column(Enum(SchoolRole), nullable=False)
    status = db.Column(Enum(InvitationStatus), default=InvitationStatus.PENDING, nullable=False)
    invited_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    accepted_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    school_id = db.Column(db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), nullable=False)
    school = db.relationship('School', back_populates='invitations')

    invited_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    invited_by = db.relationship('User', foreign_keys=[invited_by_id])

    accepted_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    accepted_by = db.relationship('User', foreign_keys=[accepted_by_id])

    def to_dict(self):
        inviter = self.invited_by
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "status": self.status.value,
            "invited_at": _iso(self.invited_at),
            "accepted_at": _iso(self.accepted_at),
            "expires_at": _iso(self.expires_at),
            "school_id": self.school_id,
            "invited_by": {"id": inviter.id, "name": inviter.display_name, "email": inviter.email} if inviter else None,
            "accepted_by_id": self.accepted_by_id,
        }

    def __repr__(self):
        return f"<SchoolInvitation {self.email} -> {self.school_id} ({self.status.name})>"

class SchoolCreditUsage(db.Model):
    __table_args__ = (
        db.Index('ix_credit_school_created', 'school_id', 'created_at'),
        db.Index('ix_credit_user_created', 'user_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    feature = db.Column(db.String(50), nullable=False, index=True)
    cost = db.Column(db.Integer, default=1, nullable=False)
    # "metadata" is reserved on declarative models
    metadata_json = db.Column('metadata', db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_id = db.Column(db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), nullable=False)
    school = db.relationship('School')

    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    user = db.relationship('User', back_populates='credit_usages')

    def __repr__(self):
        return f"<SchoolCreditUsage {self.feature} x{self.cost} school={self.school_id}>"
