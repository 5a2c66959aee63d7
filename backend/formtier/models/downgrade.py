"""FormTier downgrade / archival models"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class ArchiveCandidate(BaseModel):
    """A form that would be archived by a downgrade"""
    form_id: str
    name: Optional[str] = None
    created_at: datetime

    model_config = {"extra": "ignore"}


class DowngradeCheck(BaseModel):
    """Preview of a downgrade, shown before the user confirms"""
    allowed: bool = True
    current_tier: str
    target_tier: str
    active_forms_count: int = 0
    target_max_forms: Optional[int] = None  # None = unlimited
    will_archive_forms: bool = False
    forms_to_archive_count: int = 0
    forms_to_archive: List[ArchiveCandidate] = Field(default_factory=list)
    warning: Optional[str] = None
    requires_confirmation: bool = False

    model_config = {"extra": "ignore"}


class ArchiveResult(BaseModel):
    """Outcome of a committed downgrade"""
    account_id: str
    from_tier: str
    to_tier: str
    archived_count: int = 0
    archived_form_ids: List[str] = Field(default_factory=list)
    archived_reason: Optional[str] = None

    model_config = {"extra": "ignore"}


class RestoreResult(BaseModel):
    """Outcome of restoring archived forms after an upgrade"""
    account_id: str
    tier: str
    restored_count: int = 0
    restored_form_ids: List[str] = Field(default_factory=list)
    still_archived_count: int = 0

    model_config = {"extra": "ignore"}
