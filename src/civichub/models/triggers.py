from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from civichub.models.sources import ConnectorSchedule


class IngestInput(BaseModel):
    town: str | None = None
    schedule: ConnectorSchedule | None = None
    force: bool = False
    generate: bool = False


class MonitorInput(BaseModel):
    town: str | None = Field(default=None, min_length=1, max_length=100)


class SearchInput(BaseModel):
    q: str = Field(max_length=500)
    town: str | None = Field(default=None, min_length=1, max_length=100)

    @field_validator("q")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("q must not be empty")
        return v
