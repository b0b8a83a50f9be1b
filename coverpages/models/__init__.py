# FILE: coverpages/models/__init__.py
"""
Pydantic models for persisted artifacts and request/response validation
"""
from coverpages.models.books import *
