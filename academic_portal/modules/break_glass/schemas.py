"""Pydantic models for break-glass request bodies.

Fields are optional at the schema level so that missing input reaches the
engine and is reported as ValidationFailed (400) with an audit entry.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ActivateRequest(_Body):
    """Self-elevation: ADMIN for anyone, ACADEMIC_HEAD for themselves."""

    user_id: Optional[str] = Field(default=None, alias="userId")
    reason: Optional[str] = Field(default=None, max_length=2000)


class DelegatedPromoteRequest(_Body):
    """Delegated promotion of a FACULTY member."""

    faculty_user_id: Optional[str] = Field(default=None, alias="facultyUserId")
    reason: Optional[str] = Field(default=None, max_length=2000)


class DeactivateRequest(_Body):
    user_id: Optional[str] = Field(default=None, alias="userId")


class PermanentPromoteRequest(_Body):
    """Turn a temporary admin into a permanent ADMIN."""

    user_id: Optional[str] = Field(default=None, alias="userId")
    promotion_code: Optional[str] = Field(default=None, alias="promotionCode")


class SelfPromoteRequest(_Body):
    promotion_code: Optional[str] = Field(default=None, alias="promotionCode")
