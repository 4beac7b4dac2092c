from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class Member(Document):
    """A person known across merchants; identified by normalized email."""
    email: Indexed(str, unique=True)
    first_name: str = ""
    last_name: str = ""
    anniversary_date: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "members"
