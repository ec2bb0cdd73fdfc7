"""
Pydantic models for developer activities.

An activity is a single unit of development work (a commit, a pull
request, a CI run, a deployment or a local development session).  When
an activity is created without ``carbon_kg`` its footprint is estimated
by the carbon calculation service from the type-specific payload:

* ``commit`` for commits and pull requests,
* ``ci_data.duration_seconds`` for CI runs and deployments,
* ``local_data.duration_minutes`` for local development.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ActivityKind = Literal["commit", "pr", "ci_run", "deployment", "local_dev"]
CalculationConfidence = Literal["high", "medium", "low"]


class Repository(BaseModel):
    name: str = Field(..., examples=["ecotrace"])
    full_name: str = Field(..., examples=["acme/ecotrace"])
    private: bool = False


class CommitInfo(BaseModel):
    sha: str = Field(..., examples=["9fceb02"])
    message: Optional[str] = Field(None, examples=["Fix flaky cache test"])
    additions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)
    changed_files: int = Field(0, ge=0)


class ActivityBase(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["user_octocat"])
    type: ActivityKind = Field(..., examples=["commit"])
    repository: Optional[Repository] = None
    commit: Optional[CommitInfo] = None
    ci_data: Optional[Dict[str, Any]] = Field(
        None, examples=[{"provider": "github_actions", "duration_seconds": 420, "status": "success"}]
    )
    local_data: Optional[Dict[str, Any]] = Field(
        None, examples=[{"duration_minutes": 90, "editor": "vim"}]
    )


class ActivityCreate(ActivityBase):
    """Schema for recording an activity.

    ``carbon_kg`` and ``calculation_confidence`` may be supplied by a
    client that already knows the footprint; otherwise both are
    calculated.  ``timestamp`` defaults to now.
    """

    carbon_kg: Optional[float] = Field(None, ge=0)
    calculation_confidence: Optional[CalculationConfidence] = None
    timestamp: Optional[datetime] = None


class ActivityRead(ActivityBase):
    """Schema for reading an activity from the API."""

    id: str
    carbon_kg: float
    calculation_confidence: CalculationConfidence
    timestamp: str
    created_at: Optional[str] = None

    model_config = {
        "from_attributes": True,
    }
