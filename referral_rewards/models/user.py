"""
User model
Identity records used for self-referral checks and notification targeting
"""

from sqlalchemy import Column, String, Boolean

from .base import Base, TimestampedModel, UUIDModel

class User(Base, TimestampedModel, UUIDModel):
    """Platform user as seen by the referral program"""

    __tablename__ = "users"

    name = Column(String(100), nullable=False)
    email = Column(String(255), index=True)
    phone = Column(String(20), index=True)

    # Notification preferences
    notification_email = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id!r}, name={self.name!r})>"
