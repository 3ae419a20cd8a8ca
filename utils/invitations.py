# utils/invitations.py
# Inviting people into a school by email.

from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from models import (
    db, InvitationStatus, School, SchoolInvitation, SchoolMembership, SchoolRole, User, utcnow
)
from utils.errors import ActionError
from utils.permissions import is_valid_school_role
from utils.schools import pagination


def _expiry():
    return utcnow() + timedelta(days=current_app.config.get('INVITATION_EXPIRY_DAYS', 7))


def create_school_invitation(school_id, email, role, invited_by):
    """
    Invites ``email`` into the school with ``role``.

    If an account with that email already exists it is added straight away
    and the invitation is stored as ACCEPTED.

    Returns:
        tuple: (invitation, auto_accepted)
    """
    if not is_valid_school_role(role):
        raise ActionError("Invalid role specified")
    school = db.session.get(School, school_id)
    if school is None:
        raise ActionError("School not found", 404)

    email = email.strip()
    existing_user = User.query.filter(func.lower(User.email) == email.lower()).first()
    if existing_user is not None:
        if SchoolMembership.query.filter_by(user_id=existing_user.id, school_id=school.id).first():
            raise ActionError("User is already a member of this school")

    invitation = SchoolInvitation.query.filter(
        SchoolInvitation.school_id == school.id,
        func.lower(SchoolInvitation.email) == email.lower(),
    ).first()
    if invitation is not None and invitation.status == InvitationStatus.PENDING:
        raise ActionError("An invitation has already been sent to this email address")

    if invitation is None:
        invitation = SchoolInvitation(email=email, school_id=school.id)
        db.session.add(invitation)
    invitation.role = SchoolRole(role)
    invitation.status = InvitationStatus.PENDING
    invitation.invited_by_id = invited_by.id
    invitation.invited_at = utcnow()
    invitation.expires_at = _expiry()
    invitation.accepted_at = None
    invitation.accepted_by_id = None

    try:
        if existing_user is not None:
            invitation.status = InvitationStatus.ACCEPTED
            invitation.accepted_at = utcnow()
            invitation.accepted_by_id = existing_user.id
            db.session.add(SchoolMembership(user_id=existing_user.id, school_id=school.id,
                                            role=SchoolRole(role), is_active=True))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if existing_user is not None:
        current_app.logger.info(f"Invitation for {email} auto-accepted into school {school.id}.")
    return invitation, existing_user is not None


def list_school_invitations(school_id, status=None, page=1, limit=20):
    page = max(1, page or 1)
    limit = max(1, min(limit or 20, 100))

    query = SchoolInvitation.query.filter_by(school_id=school_id)
    if status:
        try:
            query = query.filter(SchoolInvitation.status == InvitationStatus(status))
        except ValueError:
            raise ActionError("Invalid status filter") from None

    total = query.count()
    invitations = (
        query.order_by(SchoolInvitation.invited_at.desc(), SchoolInvitation.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "invitations": [i.to_dict() for i in invitations],
        "total": total,
        "pagination": pagination(page, limit, total),
    }


def _get_invitation(school_id, invitation_id):
    invitation = db.session.get(SchoolInvitation, invitation_id)
    if invitation is None:
        raise ActionError("Invitation not found", 404)
    if invitation.school_id != school_id:
        raise ActionError("Invitation does not belong to this school", 403)
    return invitation


def cancel_school_invitation(school_id, invitation_id):
    invitation = _get_invitation(school_id, invitation_id)
    if invitation.status != InvitationStatus.PENDING:
        raise ActionError("Only pending invitations can be cancelled")
    db.session.delete(invitation)
    db.session.commit()


def resend_school_invitation(school_id, invitation_id):
    invitation = _get_invitation(school_id, invitation_id)
    if invitation.status not in (InvitationStatus.PENDING, InvitationStatus.EXPIRED):
        raise ActionError("Only pending or expired invitations can be resent")
    invitation.status = InvitationStatus.PENDING
    invitation.invited_at = utcnow()
    invitation.expires_at = _expiry()
    db.session.commit()
    return invitation


def expire_old_invitations():
    """Marks PENDING invitations past their expiry as EXPIRED. Returns how many changed."""
    count = SchoolInvitation.query.filter(
        SchoolInvitation.status == InvitationStatus.PENDING,
        SchoolInvitation.expires_at < utcnow(),
    ).update({"status": InvitationStatus.EXPIRED}, synchronize_session=False)
    db.session.commit()
    current_app.logger.info(f"Expired {count} old invitations")
    return count
