"""
Pydantic models for user data.

Users are developers whose activities are tracked.  The id is chosen by
the caller (typically the GitHub login or an external account id) so
that activities can be recorded before any profile data is known.
"""

from typing import Optional

from pydantic import BaseModel, Field


class UserBase(BaseModel):
    username: str = Field(..., min_length=1, examples=["octocat"])
    email: Optional[str] = Field(None, examples=["octocat@example.com"])
    github_id: Optional[str] = Field(None, examples=["583231"])


class UserCreate(UserBase):
    """Schema for registering a user."""

    id: str = Field(..., min_length=1, examples=["user_octocat"])


class UserRead(UserBase):
    """Schema for reading a user from the API."""

    id: str
    created_at: Optional[str] = None

    model_config = {
        "from_attributes": True,
    }
