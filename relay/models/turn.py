from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Turn(BaseModel):
    """
    One question/answer exchange retained for a session.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., description="Session the turn belongs to")
    question: str = Field(..., description="User question as sent upstream")
    answer: str = Field(..., description="Answer returned by the AI backend")
    size_bytes: int = Field(
        ..., ge=0, description="len(question) + len(answer), in characters"
    )
    created_at: float = Field(..., description="Creation timestamp (epoch seconds)")

    @classmethod
    def create(cls, session_id: str, question: str, answer: str, created_at: float) -> "Turn":
        return cls(
            session_id=session_id,
            question=question,
            answer=answer,
            size_bytes=len(question) + len(answer),
            created_at=created_at,
        )


class PromptMessage(BaseModel):
    """
    Role-tagged chat message handed to the AI backend.
    """

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


__all__ = ["Turn", "PromptMessage"]
