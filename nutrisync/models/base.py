"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class NutriSyncBase(BaseModel):
    """Base model with shared config for all NutriSync schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorDetail(BaseModel):
    detail: str


class StatusResponse(NutriSyncBase):
    status: str = "ok"
