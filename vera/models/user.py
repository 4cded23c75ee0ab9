"""
User model
"""

from sqlalchemy import Column, String

from vera.models.base import BaseModel


class User(BaseModel):
    """
    Minimal user profile mirrored from the identity service
    """
    __tablename__ = "users"

    email = Column(String(160), unique=True, nullable=False, index=True)
    full_name = Column(String(140), nullable=False, default="")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
