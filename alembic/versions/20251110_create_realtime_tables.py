"""
Create the tables served by the realtime service

Revision ID: 20251110_create_realtime_tables
Revises: 
Create Date: 2025-11-10
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20251110_create_realtime_tables'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _now(name="created_at", nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=sa.text("now()"))


def upgrade():
    # gen_random_uuid() lives in pgcrypto before Postgres 13
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.create_table(
        "meeting_messages",
        _id(),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("message", sa.Text(), nullable=False),
        _now("timestamp", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_meeting_messages_meeting", "meeting_messages", ["meeting_id", "timestamp"])

    op.create_table(
        "recording_comments",
        _id(),
        sa.Column("recording_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("parent_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("recording_comments.id", ondelete="CASCADE")),
        _now(nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_recording_comments_recording", "recording_comments", ["recording_id", "created_at"])

    op.create_table(
        "highlights",
        _id(),
        sa.Column("recording_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("start_time", sa.Float(), nullable=False),
        sa.Column("end_time", sa.Float(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False, server_default="bookmark"),
        sa.Column("importance", sa.Text(), nullable=False, server_default="medium"),
        sa.Column("notes", sa.Text()),
        _now(),
        sa.CheckConstraint("type IN ('important', 'decision', 'question', 'action', 'bookmark')", name="ck_highlights_type"),
        sa.CheckConstraint("importance IN ('low', 'medium', 'high')", name="ck_highlights_importance"),
    )
    op.create_index("idx_highlights_recording", "highlights", ["recording_id", "start_time"])

    op.create_table(
        "transcript_segments",
        _id(),
        sa.Column("recording_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("speaker_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("speaker_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("start_time", sa.Float(), nullable=False),
        sa.Column("end_time", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        _now(),
    )
    op.create_index("idx_transcript_segments_recording", "transcript_segments", ["recording_id", "start_time"])

    op.create_table(
        "meeting_translations",
        _id(),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("speaker", sa.Text()),
        sa.Column("original_text", sa.Text(), nullable=False),
        sa.Column("translated_text", sa.Text(), nullable=False),
        sa.Column("source_language", sa.String(16), nullable=False),
        sa.Column("target_language", sa.String(16), nullable=False),
        _now(),
    )
    op.create_index("idx_meeting_translations_meeting", "meeting_translations", ["meeting_id", "created_at"])

    op.create_table(
        "departments",
        _id(),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(16)),
        sa.Column("lead_id", postgresql.UUID(as_uuid=False)),
        sa.Column("created_by", postgresql.UUID(as_uuid=False)),
        _now(),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_departments_workspace", "departments", ["workspace_id", "name"])

    op.create_table(
        "roles",
        _id(),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("permissions", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _now(),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("idx_roles_workspace", "roles", ["workspace_id", "name"])

    op.create_table(
        "team_members",
        _id(),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False)),
        sa.Column("department_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("departments.id", ondelete="SET NULL")),
        sa.Column("role_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("roles.id", ondelete="SET NULL")),
        sa.Column("status", sa.Text()),
        sa.Column("invited_at", sa.DateTime(timezone=True)),
        sa.Column("joined_at", sa.DateTime(timezone=True)),
        _now(),
    )
    op.create_index("idx_team_members_workspace", "team_members", ["workspace_id", "created_at"])

    op.create_table(
        "recordings",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("duration", sa.Float(), nullable=False, server_default="0"),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("file_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("thumbnail_url", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False, server_default="processing"),
        sa.Column("is_favorite", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("views_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("participants_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transcript_url", sa.Text()),
        sa.Column("folder_id", postgresql.UUID(as_uuid=False)),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _now(),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("status IN ('processing', 'ready', 'failed')", name="ck_recordings_status"),
    )
    op.create_index("idx_recordings_user", "recordings", ["user_id", "created_at"])

    op.create_table(
        "meeting_summaries",
        _id(),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("key_points", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _now(),
    )
    # one summary per meeting
    op.create_index("idx_meeting_summaries_meeting", "meeting_summaries", ["meeting_id"], unique=True)

    op.create_table(
        "participants",
        _id(),
        sa.Column("recording_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("recordings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text()),
        sa.Column("role", sa.Text()),
        sa.Column("join_time", sa.Float(), nullable=False),
        sa.Column("leave_time", sa.Float(), nullable=False, server_default="0"),
        sa.Column("speaking_time", sa.Float(), nullable=False, server_default="0"),
        _now(),
    )
    op.create_index("idx_participants_recording", "participants", ["recording_id", "join_time"])


def downgrade():
    for table in (
        "participants",
        "meeting_summaries",
        "recordings",
        "team_members",
        "roles",
        "departments",
        "meeting_translations",
        "transcript_segments",
        "highlights",
        "recording_comments",
        "meeting_messages",
    ):
        op.drop_table(table)
