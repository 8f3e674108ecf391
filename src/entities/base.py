"""
SQLAlchemy declarative base.

All entities should import Base from here.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
