from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

METADATA_ENTRY_PREFIX = "metadata-entry-"


class CaptureBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class FrozenCaptureModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SiteKind(str, Enum):
    linkedin = "linkedin"
    contacts = "contacts"
    unknown = "unknown"


class ContactStatus(str, Enum):
    populated = "populated"
    not_found = "not_found"
    access_denied = "access_denied"
    extraction_error = "extraction_error"


class IssueKind(str, Enum):
    reveal_timeout = "reveal_timeout"
    reveal_extraction_error = "reveal_extraction_error"
    snapshot_unavailable = "snapshot_unavailable"
    visual_capture_unavailable = "visual_capture_unavailable"
    artifact_write_failure = "artifact_write_failure"


class RevealState(str, Enum):
    idle = "idle"
    triggering = "triggering"
    awaiting_render = "awaiting_render"
    extracting = "extracting"
    dismissing = "dismissing"
    done = "done"
    skipped_no_trigger = "skipped_no_trigger"
    failed_timeout = "failed_timeout"


TERMINAL_REVEAL_STATES = frozenset(
    {RevealState.done, RevealState.skipped_no_trigger, RevealState.failed_timeout}
)
SINGLE_VALUE_FIELDS = ("name", "headline", "location", "about", "connections")
MULTI_VALUE_FIELDS = ("experience", "education", "skills")
CONTACT_SINGLE_FIELDS = ("email", "phone", "profile_url", "birthday")
CONTACT_MULTI_FIELDS = ("websites",)


def normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = " ".join(value.split())
    if not normalized:
        return None
    return normalized


def normalize_path_token(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.startswith("/"):
        raise ValueError("path must be relative")
    if ".." in text.split("/"):
        raise ValueError("path cannot contain '..'")
    return text


class ContactInfo(CaptureBaseModel):
    status: ContactStatus
    detail: str | None = None
    email: str | None = None
    phone: str | None = None
    profile_url: str | None = None
    websites: list[str] = Field(default_factory=list)
    birthday: str | None = None

    def values(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in CONTACT_SINGLE_FIELDS:
            value = getattr(self, name)
            if value:
                payload[name] = value
        if self.websites:
            payload["websites"] = list(self.websites)
        return payload


class ProfileFields(CaptureBaseModel):
    name: str | None = None
    headline: str | None = None
    location: str | None = None
    about: str | None = None
    connections: str | None = None
    experience: list[str] = Field(default_factory=list)
    education: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)

    def located(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in SINGLE_VALUE_FIELDS + MULTI_VALUE_FIELDS:
            value = getattr(self, name)
            if value:
                payload[name] = list(value) if isinstance(value, list) else value
        return payload

    def absent_field_names(self) -> list[str]:
        located = self.located()
        return [name for name in SINGLE_VALUE_FIELDS + MULTI_VALUE_FIELDS if name not in located]


class CaptureIssue(CaptureBaseModel):
    kind: IssueKind
    detail: str


class StrategyError(CaptureBaseModel):
    strategy: str
    error_type: str
    error: str


class RevealTrace(CaptureBaseModel):
    final_state: RevealState
    states: list[RevealState] = Field(default_factory=list)
    poll_attempts: int = 0
    dismiss_method: str | None = None
    strategy_errors: list[StrategyError] = Field(default_factory=list)


class ProfileRecord(CaptureBaseModel):
    capture_id: str
    session_id: str
    sequence_number: int
    site_kind: SiteKind
    source_url: str | None = None
    captured_at: datetime
    display_name: str
    fields: ProfileFields
    contact_info: ContactInfo | None = None
    reveal: RevealTrace | None = None
    raw_structure_snapshot: str | None = None
    visual_capture: bytes | None = None
    issues: list[CaptureIssue] = Field(default_factory=list)


class Artifact(FrozenCaptureModel):
    name: str
    mime_type: str
    payload: bytes


class ExportBundle(FrozenCaptureModel):
    base_path: str
    artifacts: tuple[Artifact, ...]

    @field_validator("base_path")
    @classmethod
    def validate_base_path(cls, value: str) -> str:
        normalized = normalize_path_token(value)
        if normalized is None:
            raise ValueError("base_path must be non-empty")
        return normalized

    def artifact_names(self) -> list[str]:
        return [artifact.name for artifact in self.artifacts]


class CaptureSession(CaptureBaseModel):
    session_id: str
    sequence_number: int
    record: ProfileRecord
    bundle: ExportBundle


class MetadataEntry(FrozenCaptureModel):
    key: str
    profile_name: str
    timestamp: datetime
    folder_path: str
    expires_at: datetime

    @field_validator("key")
    @classmethod
    def validate_key(cls, value: str) -> str:
        if not value.startswith(METADATA_ENTRY_PREFIX):
            raise ValueError(f"key must start with '{METADATA_ENTRY_PREFIX}'")
        return value


class CaptureResult(CaptureBaseModel):
    success: bool
    profile_name: str
    bundle_path: str
    capture_id: str | None = None
    contact_status: ContactStatus | None = None
    failed_artifacts: list[str] = Field(default_factory=list)


class CaptureError(RuntimeError):
    """Fatal capture failure surfaced to the caller."""

    details: str | None

    def __init__(self, message: str, *, details: str | None = None) -> None:
        self.details = details
        full_message = message
        if details:
            full_message = f"{message} ({details})"
        super().__init__(full_message)


class NoRecordProducibleError(CaptureError):
    def __init__(self, *, details: str | None = None) -> None:
        super().__init__("unable to build a profile record from the page", details=details)


class BundleDeliveryError(CaptureError):
    def __init__(self, *, base_path: str, details: str | None = None) -> None:
        self.base_path = base_path
        super().__init__(f"unable to deliver export bundle '{base_path}'", details=details)
