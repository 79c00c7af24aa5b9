from typing import Optional

from pydantic import BaseModel, Field, validator


class StartJobRequest(BaseModel):
    asin: str = Field(..., description="Product to find correlations for")

    @validator("asin")
    def normalize_asin(cls, v: str) -> str:
        v_norm = (v or "").strip().upper()
        if not v_norm:
            raise ValueError("asin is required")
        return v_norm


class WorkerTriggerRequest(BaseModel):
    jobId: str


class FeedbackRequest(BaseModel):
    searchAsin: str
    candidateAsin: str
    action: str = Field(..., description="accept | decline | clear")
    reason: Optional[str] = None

    @validator("action")
    def validate_action(cls, v: str) -> str:
        v_norm = (v or "").strip().lower()
        if v_norm not in ("accept", "decline", "clear"):
            raise ValueError("Invalid action; allowed: accept, decline, clear")
        return v_norm
