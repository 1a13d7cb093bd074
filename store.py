"""
Record Store for the shared password vault
SQLAlchemy models and session factory over three tables:
pm_users, pm_passwords (secret records) and pm_shared_passwords (share grants)
"""

import os
from datetime import datetime, timezone

from sqlalchemy import create_engine, Column, BigInteger, Integer, String, Text, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import sessionmaker, scoped_session, declarative_base
from sqlalchemy.pool import StaticPool

CATEGORIES = ("Social Media", "Email", "ECommerce", "Banking", "Other")
PASSWORD_STRENGTHS = ("Weak", "Good", "Strong")

# ============================================================
# DATABASE SETUP
# ============================================================

def get_db_url():
    """Build MySQL connection URL from environment variables"""
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST", "localhost")
    database = os.getenv("DB_NAME")
    port = os.getenv("DB_PORT", "3306")

    return f"mysql+mysqlconnector://{user}:{password}@{host}:{port}/{database}"

SessionLocal = scoped_session(sessionmaker())
Base = declarative_base()

def init_store(url: str):
    """Create the engine, bind the session factory and create missing tables"""
    if url.startswith("sqlite"):
        # one shared connection so an in-memory database survives across sessions
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,  # Recycle connections after 1 hour
            pool_pre_ping=True,
        )

    SessionLocal.remove()
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(engine)
    return engine

# ============================================================
# HELPERS
# ============================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt: datetime) -> datetime:
    """Convert datetime to UTC (naive values are stored as UTC)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return as_utc(dt).isoformat().replace("+00:00", "Z")

# SQLite only autoincrements INTEGER PRIMARY KEY
_Key = BigInteger().with_variant(Integer, "sqlite")

# ============================================================
# MODELS
# ============================================================

class User(Base):
    __tablename__ = 'pm_users'

    id = Column(_Key, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_public(self):
        return {"id": self.id, "name": self.name, "email": self.email}


class SecretRecord(Base):
    __tablename__ = 'pm_passwords'

    id = Column(_Key, primary_key=True, autoincrement=True)
    owner_id = Column(BigInteger, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    username = Column(String(255), nullable=False)
    password = Column(Text, nullable=False)
    website = Column(String(1024))
    notes = Column(Text)
    favorite = Column(Boolean, default=False, nullable=False)
    category = Column(String(32), default="Other", nullable=False)
    password_strength = Column(String(16), default="Good", nullable=False)
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "title": self.title,
            "username": self.username,
            "password": self.password,
            "website": self.website,
            "notes": self.notes,
            "favorite": bool(self.favorite),
            "category": self.category,
            "passwordStrength": self.password_strength,
            "lastUsedAt": iso(self.last_used_at),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class ShareGrant(Base):
    __tablename__ = 'pm_shared_passwords'
    __table_args__ = (
        UniqueConstraint("password_id", "shared_with_id", name="uq_shared_password_recipient"),
    )

    id = Column(_Key, primary_key=True, autoincrement=True)
    password_id = Column(BigInteger, nullable=False, index=True)
    shared_with_id = Column(BigInteger, nullable=False, index=True)
    favorite = Column(Boolean, default=False, nullable=False)
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
