"""Maturador: Pydantic models."""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class PairIn(BaseModel):
    model_config = {"extra": "forbid"}

    member_a: str = Field(..., min_length=1, max_length=120)
    member_b: str = Field(..., min_length=1, max_length=120)
    scheduling_mode: Literal["generated", "scripted"] = "generated"
    script_id: Optional[str] = Field(default=None, max_length=120)
    script_loop: bool = True

    @field_validator("member_a", "member_b")
    @classmethod
    def _strip_member(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("member name cannot be blank")
        return cleaned


class PairOut(BaseModel):
    id: str
    member_a: str
    member_b: str
    active: bool
    status: Literal["stopped", "running", "paused"]
    turn_counter: int
    scheduling_mode: str
    script_id: Optional[str] = None
    script_cursor: int = 0
    script_loop: bool = True
    script_exhausted: bool = False
    waiting_response: bool = False
    last_sender: Optional[str] = None
    last_activity_at: Optional[str] = None
    started_at: Optional[str] = None
    lease_owner: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class TransitionOut(BaseModel):
    ok: bool
    changed: bool
    driver: Optional[str] = None
    pair: PairOut


class TurnOut(BaseModel):
    id: int
    pair_id: str
    turn_index: int
    from_member: str
    to_member: str
    content: str
    source: str
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    driver: Optional[str] = None
    stale: bool = False
    created_at: str


class IdentityIn(BaseModel):
    model_config = {"extra": "forbid"}

    address: Optional[str] = Field(default=None, max_length=40)
    instance_ref: Optional[str] = Field(default=None, max_length=120)
    prompt: Optional[str] = Field(default=None, max_length=8000)
    script_id: Optional[str] = Field(default=None, max_length=120)
    active: bool = True


class IdentityOut(BaseModel):
    name: str
    address: Optional[str] = None
    instance_ref: Optional[str] = None
    prompt: Optional[str] = None
    script_id: Optional[str] = None
    active: bool = True


class ScriptEntry(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)


class ScriptIn(BaseModel):
    model_config = {"extra": "forbid"}

    name: str = Field(..., min_length=1, max_length=120)
    messages: list[Union[str, ScriptEntry]] = Field(..., min_length=1)
    active: bool = True

    @field_validator("messages")
    @classmethod
    def _no_blank_messages(cls, value: list) -> list:
        for item in value:
            text = item if isinstance(item, str) else item.text
            if not text.strip():
                raise ValueError("script messages cannot be blank")
        return value


class ProviderSettingsIn(BaseModel):
    model_config = {"extra": "forbid"}

    api_key: Optional[str] = Field(default=None, max_length=500)
    base_url: Optional[str] = Field(default=None, max_length=500)
    model_default: Optional[str] = Field(default=None, max_length=120)


class EvolutionWebhookIn(BaseModel):
    """Evolution gateway webhook envelope; payload shape varies by event."""

    model_config = {"extra": "allow"}

    event: str = ""
    instance: Optional[str] = None
    data: Optional[Any] = None
