"""Pydantic schemas for session management endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class SessionResponse(BaseModel):
    id: int
    device: str
    browser: str
    ip: str
    last_activity: datetime = Field(alias="lastActivity")
    created_at: datetime = Field(alias="createdAt")
    current: bool

    model_config = {"populate_by_name": True}


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]


class SessionsTerminatedResponse(BaseModel):
    message: str
    count: int
