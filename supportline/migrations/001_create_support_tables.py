"""Create customer, conversation, message, ticket and delivery tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_create_support_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_BIGINT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_NOW = sa.text("CURRENT_TIMESTAMP")


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        _UUID,
        nullable=False,
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _serial_pk() -> sa.Column:
    return sa.Column("id", _BIGINT, primary_key=True, autoincrement=True)


def _timestamp(name: str, *, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=_NOW if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "customers",
        _uuid_pk(),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "customer_identifiers",
        _uuid_pk(),
        sa.Column(
            "customer_id",
            _UUID,
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("identifier_type", sa.String(length=32), nullable=False),
        sa.Column("value", sa.String(length=320), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
        _timestamp("last_seen_at"),
        sa.UniqueConstraint(
            "identifier_type", "value", name="uq_customer_identifiers_type_value"
        ),
    )
    op.create_index(
        "ix_customer_identifiers_customer_id", "customer_identifiers", ["customer_id"]
    )

    op.create_table(
        "conversations",
        _uuid_pk(),
        sa.Column(
            "customer_id",
            _UUID,
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("initiating_channel", sa.String(length=32), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")
        ),
        _timestamp("start_time", default=False),
        _timestamp("end_time", nullable=True, default=False),
        _timestamp("last_message_at", default=False),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("sentiment_samples", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("resolution_type", sa.String(length=64), nullable=True),
    )
    op.create_index(
        "ix_conversations_customer_status", "conversations", ["customer_id", "status"]
    )
    op.create_index(
        "ix_conversations_status_last_message", "conversations", ["status", "last_message_at"]
    )

    op.create_table(
        "messages",
        _serial_pk(),
        sa.Column(
            "conversation_id",
            _UUID,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(length=998), nullable=True),
        _timestamp("created_at"),
        sa.Column("channel_message_id", sa.String(length=255), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("destination", sa.String(length=320), nullable=True),
        sa.Column("delivery_status", sa.String(length=16), nullable=True),
        sa.Column(
            "processing_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        _timestamp("processed_at", nullable=True, default=False),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("metadata", _JSON, nullable=False),
        sa.UniqueConstraint(
            "channel", "channel_message_id", name="uq_messages_channel_message_id"
        ),
    )
    op.create_index(
        "ix_messages_conversation_created",
        "messages",
        ["conversation_id", "created_at", "id"],
    )
    op.create_index(
        "ix_messages_channel_external_id", "messages", ["channel", "external_id"]
    )

    op.create_table(
        "tickets",
        _uuid_pk(),
        sa.Column(
            "conversation_id",
            _UUID,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "customer_id",
            _UUID,
            sa.ForeignKey("customers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_channel", sa.String(length=32), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'open'")
        ),
        sa.Column("escalation_reason", sa.String(length=255), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("conversation_id", name="uq_tickets_conversation_id"),
    )
    op.create_index("ix_tickets_customer_id", "tickets", ["customer_id"])

    op.create_table(
        "ticket_transitions",
        _serial_pk(),
        sa.Column(
            "ticket_id",
            _UUID,
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", sa.String(length=16), nullable=False),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_ticket_transitions_ticket_id", "ticket_transitions", ["ticket_id"])

    op.create_table(
        "delivery_attempts",
        _serial_pk(),
        sa.Column(
            "message_id",
            _BIGINT,
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "message_id", "attempt_number", name="uq_delivery_attempts_message_attempt"
        ),
    )

    op.create_table(
        "dead_letters",
        _serial_pk(),
        sa.Column("channel", sa.String(length=32), nullable=True),
        sa.Column("channel_message_id", sa.String(length=255), nullable=True),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("error_type", sa.String(length=128), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("context", _JSON, nullable=False),
        _timestamp("created_at"),
        _timestamp("replayed_at", nullable=True, default=False),
    )

    op.create_table(
        "channel_metrics",
        _serial_pk(),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=True),
        sa.Column("latency_ms", sa.Float(), nullable=False),
        sa.Column("escalated", sa.Boolean(), nullable=False),
        sa.Column("tool_calls_count", sa.Integer(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_channel_metrics_created_at", "channel_metrics", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_channel_metrics_created_at", table_name="channel_metrics")
    op.drop_table("channel_metrics")
    op.drop_table("dead_letters")
    op.drop_table("delivery_attempts")
    op.drop_index("ix_ticket_transitions_ticket_id", table_name="ticket_transitions")
    op.drop_table("ticket_transitions")
    op.drop_index("ix_tickets_customer_id", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_messages_channel_external_id", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_status_last_message", table_name="conversations")
    op.drop_index("ix_conversations_customer_status", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_customer_identifiers_customer_id", table_name="customer_identifiers")
    op.drop_table("customer_identifiers")
    op.drop_table("customers")
