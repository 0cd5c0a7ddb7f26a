import logging

from beacon.db.session import engine, SessionLocal
from beacon import models  # noqa: F401  (registers every table on Base.metadata)
from beacon.models.base import Base
from beacon.models.user import User
from beacon.core.config import settings
from beacon.core.security import get_password_hash

logger = logging.getLogger(__name__)

def create_tables():
    Base.metadata.create_all(bind=engine)

def seed_admin():
    """Create the default admin once (dev convenience)."""
    db = SessionLocal()
    try:
        admin_email = (settings.seed_admin_email or "admin@example.com").lower()
        admin_pwd = settings.seed_admin_password or "Admin1234!"
        admin = db.query(User).filter(User.email == admin_email).first()
        if not admin:
            admin = User(
                email=admin_email,
                full_name="Admin",
                hashed_password=get_password_hash(admin_pwd),
                role="admin",
                is_active=True,
                email_verified=True,
            )
            db.add(admin)
            db.commit()
            logger.info("Seeded admin %s", admin_email)
    finally:
        db.close()
