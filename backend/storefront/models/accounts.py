from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow
from .base import new_id


class User(db.Model):
    """
    Customer or administrator account as seen by the order engine.

    Credentials live with the upstream auth service; this row only carries what
    orders, carts, and notifications need. A User row always has a valid email:
    erasure deletes the row and leaves a UserTombstone behind instead of
    overwriting the email with a sentinel.
    """
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="customer")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "role": self.role,
            "created_at": to_utc_z(self.created_at),
        }


class UserTombstone(db.Model):
    """Record left behind when an account is anonymized."""
    __tablename__ = "user_tombstones"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    # Not a foreign key: the users row no longer exists
    original_user_id = db.Column(db.String(36), nullable=False, unique=True)
    reason = db.Column(db.String(255), nullable=True)
    detached_order_count = db.Column(db.Integer, nullable=False, default=0)
    anonymized_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original_user_id": self.original_user_id,
            "reason": self.reason,
            "detached_order_count": self.detached_order_count,
            "anonymized_at": to_utc_z(self.anonymized_at),
        }
