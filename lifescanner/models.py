from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional
from enum import Enum
import uuid

class Profile(str, Enum):
    STUDENT = "student"
    EMPLOYEE = "employee"
    INVESTOR = "investor"
    HOMEMAKER = "homemaker"

PROFILES = [p.value for p in Profile]

def utc_now() -> datetime:
    """Return timezone-naive UTC datetime"""
    return datetime.utcnow()

def new_id() -> str:
    return str(uuid.uuid4())

class User(SQLModel, table=True):
    id: Optional[str] = Field(default_factory=new_id, primary_key=True)
    email: str = Field(unique=True, index=True)
    password: str
    name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class UserPreference(SQLModel, table=True):
    id: Optional[str] = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", unique=True, index=True)
    profile: Profile = Profile.STUDENT
    categories: str = "[]"  # JSON list of category names
    interests: Optional[str] = None
    language: str = "en"
    timezone: str = "UTC"
    notifications: bool = True
    telegram_chat: Optional[str] = Field(default=None, index=True)

class AuthSession(SQLModel, table=True):
    __tablename__ = "session"

    id: Optional[str] = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    token: str = Field(unique=True, index=True)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utc_now)

class NewsArticle(SQLModel, table=True):
    id: Optional[str] = Field(default_factory=new_id, primary_key=True)
    title: str
    description: str = ""
    url: str = Field(unique=True, index=True)
    source: str
    category: str = Field(index=True)
    published_at: datetime = Field(default_factory=utc_now, index=True)
    summary: Optional[str] = None
    impact_student: Optional[str] = None
    impact_employee: Optional[str] = None
    impact_investor: Optional[str] = None
    impact_homemaker: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

IMPACT_COLUMNS = {
    Profile.STUDENT: "impact_student",
    Profile.EMPLOYEE: "impact_employee",
    Profile.INVESTOR: "impact_investor",
    Profile.HOMEMAKER: "impact_homemaker",
}
