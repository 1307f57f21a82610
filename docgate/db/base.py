"""Declarative base shared by all docgate models."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
