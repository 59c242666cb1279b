import re
from datetime import datetime

import pytz
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIME = "07:00"
DEFAULT_TOPIC = "Technology"
DEFAULT_TIMEZONE = "UTC"

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_hour(value: str | None) -> int | None:
    """Return the hour of an "HH:MM" string, or None when it does not parse."""
    if not value:
        return None
    try:
        hour = int(value.split(":", 1)[0])
    except ValueError:
        return None
    return hour if 0 <= hour <= 23 else None


class DigestSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    url: str


class RecipientPreferences(BaseModel):
    """Digest preferences and push credentials for one recipient.

    Persisted with the camelCase keys the mobile client uses.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    enabled: bool = False
    scheduled_time: str = Field(DEFAULT_TIME, alias="time")
    topic: str = DEFAULT_TOPIC
    custom_prompt: str = Field("", alias="customPrompt")
    push_token: str | None = Field(None, alias="pushToken")
    timezone: str = DEFAULT_TIMEZONE
    updated_at: datetime | None = Field(None, alias="updatedAt")

    @property
    def scheduled_hour(self) -> int | None:
        return parse_hour(self.scheduled_time)

    @property
    def deliverable(self) -> bool:
        return self.enabled and bool(self.push_token)

    def is_due_at(self, hour: int) -> bool:
        # Minute component is intentionally ignored: hourly cadence.
        return self.deliverable and self.scheduled_hour == hour


class DigestRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    content: str
    topic: str
    sources: list[DigestSource] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")


def default_settings_payload() -> dict:
    """Settings returned to clients that have never saved preferences."""
    return {
        "enabled": False,
        "time": DEFAULT_TIME,
        "topic": DEFAULT_TOPIC,
        "customPrompt": "",
    }


# API request models

class SettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient_id: str | None = Field(
        None, validation_alias=AliasChoices("recipientId", "deviceId", "recipient_id")
    )
    enabled: bool | None = None
    scheduled_time: str | None = Field(
        None, validation_alias=AliasChoices("time", "scheduled_time")
    )
    topic: str | None = None
    custom_prompt: str | None = Field(
        None, validation_alias=AliasChoices("customPrompt", "custom_prompt")
    )
    timezone: str | None = None

    @field_validator("scheduled_time")
    @classmethod
    def check_time(cls, value: str | None) -> str | None:
        if value is not None and not TIME_PATTERN.match(value):
            raise ValueError("time must be HH:MM (24-hour, UTC)")
        return value

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str | None) -> str | None:
        if value is not None and value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @field_validator("topic")
    @classmethod
    def check_topic(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("topic must not be empty")
        return value.strip() if value is not None else None

    def preference_updates(self) -> dict:
        """Fields the client actually supplied, keyed by preference field name."""
        return self.model_dump(exclude_unset=True, exclude_none=True, exclude={"recipient_id"})


class RegisterPushRequest(BaseModel):
    recipient_id: str | None = Field(
        None, validation_alias=AliasChoices("recipientId", "deviceId", "recipient_id")
    )
    push_token: str | None = Field(
        None, validation_alias=AliasChoices("pushToken", "push_token")
    )


class ManualDigestRequest(BaseModel):
    recipient_id: str | None = Field(
        None, validation_alias=AliasChoices("recipientId", "deviceId", "recipient_id")
    )
    topic: str | None = None
    custom_prompt: str | None = Field(
        None, validation_alias=AliasChoices("customPrompt", "custom_prompt")
    )
    push_token: str | None = Field(
        None, validation_alias=AliasChoices("pushToken", "push_token")
    )


class ChatMessage(BaseModel):
    text: str | None = None
    is_user: bool = Field(False, validation_alias=AliasChoices("isUser", "is_user"))


class ChatRequest(BaseModel):
    message: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)
