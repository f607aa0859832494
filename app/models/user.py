"""
User Models
Pydantic models for authenticated users and role-based access
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class UserRole(str, Enum):
    """User roles for RBAC"""
    ADMIN = "ADMIN"
    COACH = "COACH"
    CLIENT = "CLIENT"


class User(BaseModel):
    """Authenticated user decoded from a bearer token"""
    id: str
    email: str
    name: Optional[str] = None
    role: UserRole

    class Config:
        from_attributes = True
