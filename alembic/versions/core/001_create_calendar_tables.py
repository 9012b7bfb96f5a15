"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendars (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            remote_url TEXT,
            sync_token TEXT,
            last_synced_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_calendars_user ON calendars (user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id BIGSERIAL PRIMARY KEY,
            calendar_id BIGINT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            uid TEXT NOT NULL,
            sequence INTEGER NOT NULL DEFAULT 0 CHECK (sequence >= 0),
            etag TEXT,
            href TEXT,
            sync_status TEXT NOT NULL DEFAULT 'local'
                CHECK (sync_status IN ('local', 'pending', 'synced', 'sync_failed')),
            sync_error TEXT,
            last_sync_attempt TIMESTAMPTZ,
            title TEXT NOT NULL DEFAULT 'Untitled Event',
            description TEXT,
            location TEXT,
            starts_at TIMESTAMPTZ,
            ends_at TIMESTAMPTZ,
            all_day BOOLEAN NOT NULL DEFAULT false,
            recurrence_rule TEXT,
            attendees JSONB NOT NULL DEFAULT '[]',
            resources JSONB NOT NULL DEFAULT '[]',
            raw_data TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (calendar_id, uid)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_events_calendar_href ON events (calendar_id, href)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            type TEXT NOT NULL CHECK (type IN (
                'event_invitation', 'event_update', 'event_cancellation',
                'invitation_accepted', 'invitation_declined', 'invitation_tentative',
                'event_reminder', 'resource_confirmed', 'resource_denied'
            )),
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'medium'
                CHECK (priority IN ('low', 'medium', 'high')),
            related_event_id BIGINT,
            related_event_uid TEXT,
            related_user_id BIGINT,
            related_user_name TEXT,
            related_user_email TEXT,
            requires_action BOOLEAN NOT NULL DEFAULT false,
            is_read BOOLEAN NOT NULL DEFAULT false,
            is_dismissed BOOLEAN NOT NULL DEFAULT false,
            action_taken BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user_created
        ON notifications (user_id, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_related_event
        ON notifications (related_event_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS calendars")
