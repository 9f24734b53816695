"""
Pydantic schemas mirroring the relay REST/WS contract.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator, validator

from ..address import is_valid_address
from ..signaling.messages import ANSWER, CANDIDATE, DISCONNECT, MESSAGE_TYPES, OFFER


class DescriptionModel(BaseModel):
    type: str
    sdp: str

    @validator("type", pre=True)
    def _check_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in {OFFER, ANSWER}:
            raise ValueError("description type must be 'offer' or 'answer'")
        return result


class CandidateModel(BaseModel):
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class SignalingEnvelope(BaseModel):
    """
    One signaling frame as relayed between clients.
    """

    type: str
    target: str
    sender: Optional[str] = Field(default=None, alias="from")
    offer: Optional[DescriptionModel] = None
    answer: Optional[DescriptionModel] = None
    candidate: Optional[CandidateModel] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in MESSAGE_TYPES:
            raise ValueError(f"unsupported signaling type '{value}'")
        return result

    @validator("target", "sender")
    def _check_address(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_address(value):
            raise ValueError("addresses are 9 digit strings")
        return value

    @model_validator(mode="after")
    def _check_body(self) -> "SignalingEnvelope":
        if self.type != DISCONNECT and self.sender is None:
            raise ValueError(f"'{self.type}' frames require 'from'")
        required = {OFFER: self.offer, ANSWER: self.answer, CANDIDATE: self.candidate}
        if self.type in required and required[self.type] is None:
            raise ValueError(f"'{self.type}' frames require a '{self.type}' body")
        return self

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "target": self.target}
        if self.sender is not None:
            payload["from"] = self.sender
        if self.type == OFFER and self.offer is not None:
            payload["offer"] = self.offer.model_dump()
        elif self.type == ANSWER and self.answer is not None:
            payload["answer"] = self.answer.model_dump()
        elif self.type == CANDIDATE and self.candidate is not None:
            payload["candidate"] = self.candidate.model_dump()
        return payload


class ErrorFrame(BaseModel):
    code: str
    message: str


class HealthModel(BaseModel):
    status: str = "ok"
    profile: str = "default"
    clients: int = 0


class TipsResponse(BaseModel):
    topic: str
    text: str
