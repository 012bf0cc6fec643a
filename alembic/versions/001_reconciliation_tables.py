"""Create reconciliation tables.

Revision ID: 001_reconciliation_tables
Revises:
Create Date: 2026-10-19

Creates six tables:
- calendar_events: Events written by calendar sync, with the dispatch flag
- meetings: Bot-attended meetings and their lifecycle status
- bot_records: Cached snapshots of external bots
- meeting_bot_links: Every bot associated with a meeting
- meeting_transcripts: Retrieved transcripts and media ids
- automations: Content-generation rules per account

Uniqueness relied on by reconciliation:
- uq_meetings_active_event: one non-cancelled meeting per (account, event)
- uq_meetings_bot_id: one meeting per external bot
No foreign key constraints (application-level referential integrity via
repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_reconciliation_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # ── calendar_events table ────────────────────────────────────────────

    op.create_table(
        "calendar_events",
        _uuid_pk(),
        sa.Column("account_id", sa.String(100), nullable=False),
        sa.Column("external_event_id", sa.String(300), nullable=False),
        sa.Column("title", sa.String(500), server_default=sa.text("''"), nullable=False),
        sa.Column("join_url", sa.String(2000), nullable=True),
        sa.Column("platform", sa.String(50), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "dispatch_requested",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("account_id", "external_event_id", name="uq_calendar_event_external"),
    )
    op.create_index(
        "ix_calendar_events_dispatch",
        "calendar_events",
        ["dispatch_requested", "ends_at"],
    )

    # ── meetings table ───────────────────────────────────────────────────

    op.create_table(
        "meetings",
        _uuid_pk(),
        sa.Column("account_id", sa.String(100), nullable=False),
        sa.Column("calendar_event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("bot_id", sa.String(200), nullable=True),
        sa.Column(
            "status",
            sa.String(50),
            server_default=sa.text("'scheduled'"),
            nullable=False,
        ),
        sa.Column("platform", sa.String(50), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("bot_id", name="uq_meetings_bot_id"),
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_meetings_active_event "
        "ON meetings (account_id, calendar_event_id) "
        "WHERE status <> 'cancelled'"
    )
    op.create_index("ix_meetings_status", "meetings", ["status"])

    # ── bot_records table ────────────────────────────────────────────────

    op.create_table(
        "bot_records",
        sa.Column("bot_id", sa.String(200), primary_key=True),
        sa.Column("meeting_url", sa.String(2000), nullable=True),
        sa.Column("platform", sa.String(50), nullable=True),
        sa.Column("bot_name", sa.String(200), nullable=True),
        sa.Column("join_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status_changes_data",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column(
            "recordings_data",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column("has_recording", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("has_transcript", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "synced_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── meeting_bot_links table ──────────────────────────────────────────

    op.create_table(
        "meeting_bot_links",
        _uuid_pk(),
        sa.Column("meeting_id", UUID(as_uuid=True), nullable=False),
        sa.Column("bot_id", sa.String(200), nullable=False),
        sa.Column(
            "linked_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("meeting_id", "bot_id", name="uq_meeting_bot_link"),
    )

    # ── meeting_transcripts table ────────────────────────────────────────

    op.create_table(
        "meeting_transcripts",
        _uuid_pk(),
        sa.Column("meeting_id", UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(50), server_default=sa.text("'recall'"), nullable=False),
        sa.Column(
            "segments_data",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column("transcript_text", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column(
            "media_data",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("meeting_id", name="uq_meeting_transcripts_meeting"),
    )

    # ── automations table ────────────────────────────────────────────────

    op.create_table(
        "automations",
        _uuid_pk(),
        sa.Column("account_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("platform", sa.String(50), server_default=sa.text("''"), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_automations_account", "automations", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_automations_account", table_name="automations")
    op.drop_table("automations")
    op.drop_table("meeting_transcripts")
    op.drop_table("meeting_bot_links")
    op.drop_table("bot_records")
    op.drop_index("ix_meetings_status", table_name="meetings")
    op.execute("DROP INDEX IF EXISTS uq_meetings_active_event")
    op.drop_table("meetings")
    op.drop_index("ix_calendar_events_dispatch", table_name="calendar_events")
    op.drop_table("calendar_events")
