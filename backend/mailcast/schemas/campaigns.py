"""Pydantic schemas for campaign requests"""
from pydantic import BaseModel
from typing import Optional


class EstimateRequest(BaseModel):
    audience: str


class CreateCampaignRequest(BaseModel):
    audience: str
    scheduled_at_local: Optional[str] = None  # Wall-clock time in the schedule timezone, ISO-8601


class ConfirmCampaignRequest(BaseModel):
    confirmation_token: str
