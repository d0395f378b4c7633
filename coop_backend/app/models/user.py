"""
User database model.

Members, leaders and administrators of the cooperative. Accounts are
managed elsewhere; the payment flow only reads them.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from sqlalchemy.sql import func
from coop_backend.app.db.session import Base
from coop_backend.app.models.enums import UserRole


class User(Base):
    """
    User model.

    Members sign in with their phone number, so it is unique.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    phone = Column(String(20), unique=True, index=True, nullable=False)
    display_name = Column(String(150), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role = Column(Enum(UserRole), default=UserRole.MEMBER, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, phone='{self.phone}', role='{self.role.value}')>"
