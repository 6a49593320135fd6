"""create matchmaking tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


USER_GENDER = sa.Enum("MAN", "WOMAN", "NONBINARY", name="user_gender")
QUEUE_STATUS = sa.Enum("WAITING", "MATCHED", "LEFT", name="queue_status")
MATCH_STATUS = sa.Enum("PENDING", "ACCEPTED", "DECLINED", "EXPIRED", name="match_status")
MATCH_SOURCE = sa.Enum("QUEUE", "SUGGESTION", name="match_source")
SESSION_KIND = sa.Enum("VIDEO", "VOICE", name="session_kind")
SESSION_STATE = sa.Enum("PROPOSED", "ACCEPTED", "LIVE", "ENDED", "SKIPPED", name="session_state")
MESSAGE_TYPE = sa.Enum("TEXT", "VOICE", name="message_type")
NOTIFICATION_TYPE = sa.Enum(
    "NEW_MATCH",
    "CALL_REQUEST",
    "CALL_ACCEPTED",
    "CALL_DECLINED",
    "CALL_ENDED",
    name="notification_type",
)
ACTIVITY_KIND = sa.Enum(
    "MATCH_ACCEPTED",
    "MATCH_DECLINED",
    "CALL_STARTED",
    "CALL_ENDED",
    "CALL_SKIPPED",
    "UNMATCH",
    name="activity_kind",
)
CONNECTION_STATUS = sa.Enum("ACTIVE", "REMOVED", name="connection_status")
REPORT_REASON = sa.Enum(
    "HARASSMENT",
    "INAPPROPRIATE_CONTENT",
    "SPAM",
    "FAKE_PROFILE",
    "UNDERAGE",
    "OTHER",
    name="report_reason",
)
REPORT_STATUS = sa.Enum("OPEN", "REVIEWED", "DISMISSED", name="report_status")


def upgrade() -> None:
    op.create_table(
        "user_refs",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("profile_picture_url", sa.String(length=512), nullable=True),
        sa.Column("gender", USER_GENDER, nullable=True),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("is_photo_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interests", sa.JSON(), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("show_online_status", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "queue_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "user_id",
            sa.String(length=64),
            sa.ForeignKey("user_refs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("status", QUEUE_STATUS, nullable=False),
        sa.Column("preferences", sa.JSON(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("matched_at", sa.DateTime(), nullable=True),
        sa.Column("left_at", sa.DateTime(), nullable=True),
        sa.Column("left_reason", sa.String(length=32), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_queue_entries_status_enqueued", "queue_entries", ["status", "enqueued_at"])

    op.create_table(
        "matches",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "user1_id",
            sa.String(length=64),
            sa.ForeignKey("user_refs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user2_id",
            sa.String(length=64),
            sa.ForeignKey("user_refs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("total_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", MATCH_STATUS, nullable=False),
        sa.Column("source", MATCH_SOURCE, nullable=False, server_default="QUEUE"),
        sa.Column("pending_key", sa.String(length=140), nullable=True),
        sa.Column("user1_accepted_at", sa.DateTime(), nullable=True),
        sa.Column("user2_accepted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("responded_by", sa.String(length=64), nullable=True),
        sa.CheckConstraint("user1_id < user2_id", name="chk_match_canonical_pair"),
        sa.UniqueConstraint("pending_key", name="uq_matches_pending_pair"),
    )
    op.create_index("ix_matches_pair_status", "matches", ["user1_id", "user2_id", "status"])

    op.create_table(
        "call_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "match_id",
            sa.String(length=36),
            sa.ForeignKey("matches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("user1_id", sa.String(length=64), nullable=False),
        sa.Column("user2_id", sa.String(length=64), nullable=False),
        sa.Column("initiator_id", sa.String(length=64), nullable=True),
        sa.Column("kind", SESSION_KIND, nullable=False),
        sa.Column("room_id", sa.String(length=36), nullable=False),
        sa.Column("state", SESSION_STATE, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("accepted_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("ended_by", sa.String(length=64), nullable=True),
        sa.Column("end_reason", sa.String(length=32), nullable=True),
        sa.CheckConstraint("user1_id < user2_id", name="chk_session_canonical_pair"),
    )
    op.create_index("ix_call_sessions_state_created", "call_sessions", ["state", "created_at"])
    op.create_index("ix_call_sessions_room", "call_sessions", ["room_id"])

    op.create_table(
        "session_claims",
        sa.Column("user_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column(
            "session_id",
            sa.String(length=36),
            sa.ForeignKey("call_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_session_claims_session_id", "session_claims", ["session_id"])

    op.create_table(
        "chat_rooms",
        sa.Column("room_id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("participant1_id", sa.String(length=64), nullable=False),
        sa.Column("participant2_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_activity", sa.DateTime(), nullable=False),
        sa.CheckConstraint("participant1_id < participant2_id", name="chk_chat_room_canonical_pair"),
        sa.UniqueConstraint("participant1_id", "participant2_id", name="uq_chat_rooms_pair"),
    )

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "room_id",
            sa.String(length=36),
            sa.ForeignKey("chat_rooms.room_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(length=64), nullable=False),
        sa.Column("type", MESSAGE_TYPE, nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("voice_url", sa.String(length=512), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=False),
        sa.Column("is_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_chat_messages_room_sent", "chat_messages", ["room_id", "sent_at", "id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("match_id", sa.String(length=36), nullable=True),
        sa.Column("session_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("recipient_id", "type", "match_id", name="uq_notifications_match"),
        sa.UniqueConstraint("recipient_id", "type", "session_id", name="uq_notifications_session"),
    )
    op.create_index(
        "ix_notifications_recipient_created", "notifications", ["recipient_id", "created_at"]
    )

    op.create_table(
        "activity_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", ACTIVITY_KIND, nullable=False),
        sa.Column("partner_id", sa.String(length=64), nullable=True),
        sa.Column("match_id", sa.String(length=36), nullable=True),
        sa.Column("session_id", sa.String(length=36), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_activity_events_user_created", "activity_events", ["user_id", "created_at"]
    )

    op.create_table(
        "connections",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user1_id", sa.String(length=64), nullable=False),
        sa.Column("user2_id", sa.String(length=64), nullable=False),
        sa.Column("match_id", sa.String(length=36), nullable=True),
        sa.Column("status", CONNECTION_STATUS, nullable=False),
        sa.Column("active_key", sa.String(length=140), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("removed_at", sa.DateTime(), nullable=True),
        sa.Column("removed_by", sa.String(length=64), nullable=True),
        sa.CheckConstraint("user1_id < user2_id", name="chk_connection_canonical_pair"),
        sa.UniqueConstraint("active_key", name="uq_connections_active_pair"),
    )

    op.create_table(
        "reports",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("reporter_id", sa.String(length=64), nullable=False),
        sa.Column("reported_user_id", sa.String(length=64), nullable=False),
        sa.Column("reason", REPORT_REASON, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=True),
        sa.Column("status", REPORT_STATUS, nullable=False, server_default="OPEN"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_reports_reporter_created", "reports", ["reporter_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_reports_reporter_created", table_name="reports")
    op.drop_table("reports")
    op.drop_table("connections")
    op.drop_index("ix_activity_events_user_created", table_name="activity_events")
    op.drop_table("activity_events")
    op.drop_index("ix_notifications_recipient_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_chat_messages_room_sent", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_table("chat_rooms")
    op.drop_index("ix_session_claims_session_id", table_name="session_claims")
    op.drop_table("session_claims")
    op.drop_index("ix_call_sessions_room", table_name="call_sessions")
    op.drop_index("ix_call_sessions_state_created", table_name="call_sessions")
    op.drop_table("call_sessions")
    op.drop_index("ix_matches_pair_status", table_name="matches")
    op.drop_table("matches")
    op.drop_index("ix_queue_entries_status_enqueued", table_name="queue_entries")
    op.drop_table("queue_entries")
    op.drop_table("user_refs")

    bind = op.get_bind()
    for enum in (
        REPORT_STATUS,
        REPORT_REASON,
        CONNECTION_STATUS,
        ACTIVITY_KIND,
        NOTIFICATION_TYPE,
        MESSAGE_TYPE,
        SESSION_STATE,
        SESSION_KIND,
        MATCH_SOURCE,
        MATCH_STATUS,
        QUEUE_STATUS,
        USER_GENDER,
    ):
        enum.drop(bind, checkfirst=True)
