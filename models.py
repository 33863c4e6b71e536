"""
Tenant and operator tables
Every transport row is scoped to a school (tenant); operators are the
authenticated users whose ids are stamped on transport changes
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from flask_login import UserMixin
from datetime import datetime

Base = declarative_base()

PORTAL_ADMIN_ROLE = 'portal_admin'


# ===== SCHOOL =====
class Tenant(Base):
    """A school; the URL slug selects it for every transport request"""
    __tablename__ = 'tenants'

    id = Column(Integer, primary_key=True)
    slug = Column(String(100), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    operators = relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Tenant {self.slug}>'


# ===== OPERATOR =====
class User(Base, UserMixin):
    """Transport operator; credentials live with the auth service, not here"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=True)  # NULL for portal admin
    username = Column(String(80), nullable=False)
    email = Column(String(120), nullable=True)
    role = Column(String(30), default='transport_manager')  # portal_admin, school_admin, transport_manager
    first_name = Column(String(50))
    last_name = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="operators")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'username', name='uq_user_tenant_username'),
    )

    @property
    def display_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.username

    def get_id(self):
        """Session id for Flask-Login: school_<tenant>_<id> or admin_<id>"""
        if self.tenant_id:
            return f"school_{self.tenant_id}_{self.id}"
        return f"admin_{self.id}"

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'
