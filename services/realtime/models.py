"""
Typed rows, change events and the resource registry for realtime collections.

Each resource type has its own row model and a ResourceSpec describing where
its rows live (table), which foreign key scopes a collection to one parent
(parent_column) and which column the snapshot is ordered by (order_column).
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class UnknownResourceError(KeyError):
    """Raised when a resource name is not in the registry."""


class RowBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str

    @field_validator("*", mode="before")
    @classmethod
    def _uuid_to_str(cls, value: Any) -> Any:
        # asyncpg hands back uuid.UUID for uuid columns
        if isinstance(value, uuid.UUID):
            return str(value)
        return value


def _json_list(value: Any) -> Any:
    # jsonb columns come back from asyncpg as text
    if isinstance(value, str):
        return json.loads(value)
    return value or []


JsonList = Annotated[List[str], BeforeValidator(_json_list)]


class RowRef(RowBase):
    """Identity-only row carried by delete events."""
    resource: str = ""


class MessageRow(RowBase):
    resource: Literal["message"] = "message"
    meeting_id: str
    user_id: str
    user_name: str = ""
    message: str
    timestamp: datetime
    updated_at: Optional[datetime] = None


class CommentRow(RowBase):
    resource: Literal["comment"] = "comment"
    recording_id: str
    user_id: str
    text: str
    parent_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class HighlightRow(RowBase):
    resource: Literal["highlight"] = "highlight"
    recording_id: str
    user_id: str
    title: str
    start_time: float
    end_time: float
    type: Literal["important", "decision", "question", "action", "bookmark"] = "bookmark"
    importance: Literal["low", "medium", "high"] = "medium"
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class TranscriptSegmentRow(RowBase):
    resource: Literal["transcript_segment"] = "transcript_segment"
    recording_id: str
    speaker_id: str = ""
    speaker_name: str = ""
    text: str
    start_time: float
    end_time: float
    confidence: float = 0.0
    created_at: Optional[datetime] = None


class TranslationRow(RowBase):
    resource: Literal["translation"] = "translation"
    meeting_id: str
    speaker: Optional[str] = None
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    created_at: Optional[datetime] = None


class DepartmentRow(RowBase):
    resource: Literal["department"] = "department"
    workspace_id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    lead_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RoleRow(RowBase):
    resource: Literal["role"] = "role"
    workspace_id: str
    name: str
    description: Optional[str] = None
    permissions: JsonList = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TeamMemberRow(RowBase):
    resource: Literal["team_member"] = "team_member"
    workspace_id: str
    user_id: Optional[str] = None
    department_id: Optional[str] = None
    role_id: Optional[str] = None
    status: Optional[str] = None
    invited_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RecordingRow(RowBase):
    resource: Literal["recording"] = "recording"
    user_id: str
    title: str
    description: Optional[str] = None
    duration: float = 0
    file_size: int = 0
    file_url: str = ""
    thumbnail_url: Optional[str] = None
    status: Literal["processing", "ready", "failed"] = "processing"
    is_favorite: bool = False
    views_count: int = 0
    participants_count: int = 0
    transcript_url: Optional[str] = None
    folder_id: Optional[str] = None
    tags: JsonList = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MeetingSummaryRow(RowBase):
    resource: Literal["meeting_summary"] = "meeting_summary"
    meeting_id: str
    summary: str
    key_points: JsonList = []
    created_at: Optional[datetime] = None


class ParticipantRow(RowBase):
    resource: Literal["participant"] = "participant"
    recording_id: str
    name: str
    email: Optional[str] = None
    role: Optional[str] = None
    join_time: float
    leave_time: float = 0
    speaking_time: float = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    table: str
    parent_column: str
    order_column: str
    model: Type[RowBase]
    # at most one row per parent; INSERT and UPDATE replace it
    singleton: bool = False
    # False for snapshot-only views with no change feed
    live: bool = True

    def channel(self, parent_id: str) -> str:
        return f"{self.name}:{parent_id}"


RESOURCES: Dict[str, ResourceSpec] = {
    spec.name: spec
    for spec in (
        ResourceSpec("message", "meeting_messages", "meeting_id", "timestamp", MessageRow),
        ResourceSpec("comment", "recording_comments", "recording_id", "created_at", CommentRow),
        ResourceSpec("highlight", "highlights", "recording_id", "start_time", HighlightRow),
        ResourceSpec("transcript_segment", "transcript_segments", "recording_id", "start_time", TranscriptSegmentRow),
        ResourceSpec("translation", "meeting_translations", "meeting_id", "created_at", TranslationRow),
        ResourceSpec("department", "departments", "workspace_id", "name", DepartmentRow),
        ResourceSpec("role", "roles", "workspace_id", "name", RoleRow),
        ResourceSpec("team_member", "team_members", "workspace_id", "created_at", TeamMemberRow),
        # a recording view is scoped by the row's own id
        ResourceSpec("recording", "recordings", "id", "created_at", RecordingRow, singleton=True),
        ResourceSpec("meeting_summary", "meeting_summaries", "meeting_id", "created_at", MeetingSummaryRow, singleton=True),
        ResourceSpec("participant", "participants", "recording_id", "join_time", ParticipantRow, live=False),
    )
}


def get_resource(name: str) -> ResourceSpec:
    try:
        return RESOURCES[name]
    except KeyError:
        raise UnknownResourceError(f"Unknown resource: {name}") from None


def parse_row(spec: ResourceSpec, payload: Dict[str, Any]) -> RowBase:
    return spec.model.model_validate(dict(payload))


def parse_rows(spec: ResourceSpec, payloads: List[Dict[str, Any]]) -> List[RowBase]:
    """Validate a batch of rows, dropping (and logging) malformed ones."""
    rows: List[RowBase] = []
    for payload in payloads:
        try:
            rows.append(parse_row(spec, payload))
        except ValidationError as e:
            logger.warning(f"Dropping malformed {spec.name} row {dict(payload).get('id')}: {e.error_count()} errors")
    return rows


@dataclass
class ChangeEvent:
    operation: Operation
    resource: str
    row: RowBase
    old: Optional[RowBase] = None
    commit_ts: float = field(default_factory=time.time)

    @property
    def row_id(self) -> str:
        return self.row.id


def encode_event(event: ChangeEvent) -> str:
    """Serialize a change event into the wire shape used on the feed."""
    new = None if event.operation == Operation.DELETE else event.row.model_dump(mode="json")
    old_row = event.old if event.old is not None else (event.row if event.operation == Operation.DELETE else None)
    old = old_row.model_dump(mode="json") if old_row is not None else {}
    return json.dumps(
        {
            "eventType": event.operation.value,
            "resource": event.resource,
            "new": new,
            "old": old,
            "commit_ts": event.commit_ts,
        }
    )


def decode_event(spec: ResourceSpec, raw: Any) -> ChangeEvent:
    """Parse and validate a wire message.

    Insert/Update are validated against the resource's row model; Delete only
    needs the old row's id. Raises ValueError or ValidationError on malformed
    payloads.
    """
    data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(data, dict):
        raise ValueError("change event must be a JSON object")

    operation = Operation(str(data.get("eventType", "")).upper())
    resource = data.get("resource") or spec.name
    if resource != spec.name:
        raise ValueError(f"event for {resource} delivered on {spec.name} channel")
    commit_ts = float(data.get("commit_ts") or time.time())

    if operation == Operation.DELETE:
        old = data.get("old") or {}
        row = RowRef.model_validate({"id": old.get("id"), "resource": spec.name})
        return ChangeEvent(operation, spec.name, row, old=row, commit_ts=commit_ts)

    new = data.get("new")
    if not isinstance(new, dict):
        raise ValueError(f"{operation.value} event without a new row")
    row = parse_row(spec, new)
    old_payload = data.get("old") or None
    old = RowRef.model_validate({"id": old_payload["id"], "resource": spec.name}) if old_payload and old_payload.get("id") else None
    return ChangeEvent(operation, spec.name, row, old=old, commit_ts=commit_ts)
