from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, StrictBool

MessageRole = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    role: MessageRole = "user"
    content: str = Field(min_length=1)


class ChatContext(BaseModel):
    allergies: list[str] | None = None
    medications: list[str] | None = None
    conditions: list[str] | None = None


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    context: ChatContext | None = None
    consultation_id: UUID | None = None
    stream: StrictBool = False


class ProfilePayload(BaseModel):
    age: int | None = Field(default=None, ge=0)
    gender: Literal["male", "female", "other"] | None = None
    blood_type: Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"] | None = None


class AllergyCreatePayload(BaseModel):
    name: str = Field(min_length=1)
    note: str | None = None


class AllergyDeletePayload(BaseModel):
    id: UUID


class SignInPayload(BaseModel):
    mode: Literal["password", "magiclink"]
    email: str = Field(min_length=1)
    password: str | None = None


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str | None = None
    email_confirmed_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AuthUser | None":
        user_id = payload.get("id")
        if not isinstance(user_id, str) or not user_id.strip():
            return None
        return cls(
            id=user_id,
            email=payload.get("email"),
            email_confirmed_at=payload.get("email_confirmed_at") or payload.get("confirmed_at"),
            raw=payload,
        )

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "email_confirmed_at": self.email_confirmed_at,
        }


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str | None
    expires_in: int | None = None


@dataclass
class TurnPlan:
    user_id: str
    consultation_id: str
    is_new: bool
    topic: str
    user_message: str | None
