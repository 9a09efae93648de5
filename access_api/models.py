"""Pydantic models for the access service API.

Field names are camelCase to match the entitlement record and the mobile
client that consumes these responses.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# INPUT VALIDATION PATTERNS
# =============================================================================

# Firebase Auth uids are 1-128 characters with no slashes.
UID_PATTERN = re.compile(r"^[^/\s]{1,128}$")


# =============================================================================
# REQUEST MODELS (Input Validation)
# =============================================================================

class RecomputeRequest(BaseModel):
    """Recompute entitlements for the caller, or for ``uid`` (admin only)."""
    model_config = ConfigDict(extra="ignore")

    uid: Optional[str] = Field(default=None, description="Target user (defaults to caller)")

    @field_validator("uid")
    @classmethod
    def validate_uid(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not UID_PATTERN.match(v):
            raise ValueError("uid must be 1-128 characters without slashes")
        return v


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class WindowSnapshot(BaseModel):
    activeFlag: bool
    stillActive: bool
    fallbackActive: bool
    effectiveEndMillis: Optional[int] = None
    effectiveEndIso: Optional[str] = None
    endSource: str
    usedTrialFallback: bool


class WindowComparison(BaseModel):
    before: WindowSnapshot
    after: WindowSnapshot


class TrialInfo(BaseModel):
    hasActiveTrial: bool = False
    trialType: Optional[str] = None


class RecomputeResponse(BaseModel):
    """Result of a recompute, including before/after windows for debugging."""
    success: bool = True
    uid: str
    accessTier: str
    updated: bool
    updatedFields: List[str] = Field(default_factory=list)
    cme: WindowComparison
    boardReview: WindowComparison
    trial: TrialInfo
    boardReviewActive: bool
    cmeSubscriptionActive: bool
    boardReviewSubscriptionEndDate: Optional[str] = None
    cmeSubscriptionEndDate: Optional[str] = None
    cmeCreditsAvailable: float = 0


class InitializeResponse(BaseModel):
    success: bool = True
    uid: str
    created: bool
    promoApplied: bool
    accessTier: str


class HealthStatus(BaseModel):
    status: str
    timestamp: str
    version: str


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
