from __future__ import annotations

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    sender: str = Field(min_length=1, max_length=64, description="Sender key (partition), e.g. a phone number")
    text: str = Field(max_length=4000)


class ReplyOut(BaseModel):
    reply: str


class HealthOut(BaseModel):
    status: str
    database: str
