"""
Shared declarative base for the arena persistence models.

Every model imports Base from here so they share one metadata registry.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
