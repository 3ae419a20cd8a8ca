# utils/credit_usage.py
# Metering of paid features per school, and the usage reports built on it.

import json
from datetime import timedelta

from flask import current_app
from sqlalchemy.sql import func

from models import db, SchoolCreditUsage, utcnow

REPORT = "REPORT"
AI_DETECT = "AI_DETECT"
CREDIT_FEATURES = (REPORT, AI_DETECT)


def record_credit_usage(user_id, school_id, feature, cost=1, metadata=None):
    """
    Stores one usage record. Never raises: metering must not break the
    feature being metered.

    Returns:
        bool: True if the record was written.
    """
    if not user_id or not school_id or not feature:
        current_app.logger.error(
            f"Credit usage not recorded, missing fields (user={user_id}, school={school_id}, feature={feature})"
        )
        return False

    try:
        usage = SchoolCreditUsage(
            user_id=user_id,
            school_id=school_id,
            feature=feature,
            cost=cost if cost is not None else 1,
            metadata_json=json.dumps(metadata) if metadata is not None else None,
        )
        db.session.add(usage)
        db.session.commit()
        return True
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to record credit usage for school {school_id}: {e}")
        return False


def default_range(days=None):
    days = days or current_app.config.get('USAGE_DEFAULT_DAYS', 30)
    end = utcnow()
    return end - timedelta(days=days), end


def get_school_usage_summary(school_id, start, end):
    """Total cost and number of uses per feature."""
    rows = db.session.query(
        SchoolCreditUsage.feature,
        func.sum(SchoolCreditUsage.cost).label('total_cost'),
        func.count(SchoolCreditUsage.id).label('count')
    ).filter(
        SchoolCreditUsage.school_id == school_id,
        SchoolCreditUsage.created_at >= start,
        SchoolCreditUsage.created_at <= end
    ).group_by(
        SchoolCreditUsage.feature
    ).order_by(
        SchoolCreditUsage.feature
    ).all()

    return [{"feature": row.feature, "total_cost": int(row.total_cost or 0), "count": row.count} for row in rows]


def get_recent_school_usage(school_id, start, end, limit=50):
    entries = SchoolCreditUsage.query.filter(
        SchoolCreditUsage.school_id == school_id,
        SchoolCreditUsage.created_at >= start,
        SchoolCreditUsage.created_at <= end
    ).order_by(SchoolCreditUsage.created_at.desc(), SchoolCreditUsage.id.desc()).limit(limit).all()

    recent = []
    for entry in entries:
        user = entry.user
        recent.append({
            "id": entry.id,
            "feature": entry.feature,
            "cost": entry.cost,
            "created_at": entry.created_at.isoformat(),
            "user_id": entry.user_id,
            "user_name": user.display_name if user else str(entry.user_id),
            "metadata": json.loads(entry.metadata_json) if entry.metadata_json else None,
        })
    return recent


def get_all_schools_usage(start, end):
    """(Super admin) Credits used by every school in the range."""
    rows = db.session.query(
        SchoolCreditUsage.school_id,
        func.sum(SchoolCreditUsage.cost).label('used')
    ).filter(
        SchoolCreditUsage.created_at >= start,
        SchoolCreditUsage.created_at <= end
    ).group_by(
        SchoolCreditUsage.school_id
    ).order_by(
        func.sum(SchoolCreditUsage.cost).desc()
    ).all()

    return [{"school_id": row.school_id, "used": int(row.used or 0)} for row in rows]
