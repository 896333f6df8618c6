"""Seed the database with numbered courts and the venue config row."""

from courtside.app import db
from courtside.models import Court, VenueConfig


def seed_courts(count):
    """Insert ``count`` courts only when the database has none."""
    if not VenueConfig.query.first():
        db.session.add(VenueConfig())
        db.session.commit()

    if count <= 0 or Court.query.first():
        return 0

    try:
        for number in range(1, count + 1):
            db.session.add(Court(name=f'Court {number}', is_active=True))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return count
