# salonhub/models.py
from __future__ import annotations

from flask_login import UserMixin
from sqlalchemy import Integer, String, DateTime
from sqlalchemy.sql import func
from werkzeug.security import generate_password_hash, check_password_hash

from salonhub.extensions import db


# Roles: user|member|pro-member|manager|admin
ROLE_USER = "user"
ROLE_MEMBER = "member"
ROLE_PRO_MEMBER = "pro-member"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"

# Never downgraded by membership billing state
ELEVATED_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_PRO_MEMBER})


# -------------------------
# User
# -------------------------
class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(Integer, primary_key=True)

    name = db.Column(String(120), nullable=False, default="")
    email = db.Column(String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(String(255), nullable=True)

    role = db.Column(String(32), nullable=False, default=ROLE_USER, server_default=ROLE_USER, index=True)

    created_at = db.Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = db.Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    membership = db.relationship("Membership", back_populates="user", uselist=False,
                                 foreign_keys="Membership.user_id")

    # ---- Auth helpers ----
    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return bool(self.password_hash) and check_password_hash(self.password_hash, password)

    def to_summary(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r}>"
