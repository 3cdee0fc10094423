"""Pydantic models for pairing metadata and delegation conditions."""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import TimeRange


class Metadata(BaseModel):
    """Application metadata carried by a pairing URI."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(
        ...,
        min_length=1,
        description="Human readable application name",
        examples=["My App"]
    )
    url: Optional[str] = Field(default=None, description="Application homepage")
    description: Optional[str] = Field(default=None, description="Short description shown to the user")
    icons: Optional[list[str]] = Field(default=None, description="Icon URLs")

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class DelegationConditions(BaseModel):
    """Conditions for a delegation token.

    ``since`` and ``until`` are Unix timestamps or relative time tokens
    (``5mins``, ``1hour``, ``1day``, ``1week``, ``1month``, ``1year``).
    """
    model_config = ConfigDict(extra='forbid')

    kind: Optional[int] = Field(default=None, ge=0, description="Event kind the delegatee may publish")
    since: Optional[Union[int, TimeRange]] = Field(default=None)
    until: Optional[Union[int, TimeRange]] = Field(default=None)

    @field_validator("kind", "since", "until", mode="before")
    @classmethod
    def _reject_booleans(cls, value):
        if isinstance(value, bool):
            raise ValueError("booleans are not valid conditions")
        return value
