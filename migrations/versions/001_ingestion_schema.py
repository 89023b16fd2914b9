"""Ingestion schema: users, conversations, participants, messages.

Revision ID: 001_ingestion_schema
Revises:
Create Date: 2026-10-19

The UNIQUE keys on users.phone and conversations.whatsapp_chat_id are what
make concurrent find-or-create safe. messages.whatsapp_message_id is indexed
but not unique: redelivered events are stored again.
"""

from __future__ import annotations

from alembic import op


revision = "001_ingestion_schema"
down_revision = None
branch_labels = None
depends_on = None


UPGRADE_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS users (
    id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name        TEXT NOT NULL,
    phone       TEXT NOT NULL,
    email       TEXT NOT NULL,
    role        TEXT NOT NULL DEFAULT 'customer',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT users_phone_key UNIQUE (phone),
    CONSTRAINT users_email_key UNIQUE (email),
    CONSTRAINT users_role_check CHECK (role IN ('customer', 'agent'))
);

CREATE TABLE IF NOT EXISTS conversations (
    id                     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    title                  TEXT NOT NULL,
    type                   TEXT NOT NULL DEFAULT 'support',
    whatsapp_chat_id       TEXT NOT NULL,
    evolution_instance_id  TEXT NOT NULL DEFAULT 'default',
    created_by             UUID REFERENCES users (id),
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT conversations_whatsapp_chat_id_key UNIQUE (whatsapp_chat_id)
);

CREATE TABLE IF NOT EXISTS conversation_participants (
    conversation_id  UUID NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    user_id          UUID NOT NULL REFERENCES users (id),
    role             TEXT NOT NULL DEFAULT 'member',
    joined_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (conversation_id, user_id),
    CONSTRAINT conversation_participants_role_check CHECK (role IN ('admin', 'member'))
);

CREATE TABLE IF NOT EXISTS messages (
    id                    UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id       UUID NOT NULL REFERENCES conversations (id),
    sender_id             UUID REFERENCES users (id),
    content               TEXT NOT NULL,
    msg_type              TEXT NOT NULL,
    msg_status            TEXT NOT NULL,
    whatsapp_message_id   TEXT,
    evolution_message_id  TEXT,
    metadata              JSONB NOT NULL DEFAULT '{}'::jsonb,
    processed_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT messages_msg_type_check CHECK (
        msg_type IN ('text', 'image', 'video', 'audio', 'file', 'location', 'contact', 'system')
    ),
    CONSTRAINT messages_msg_status_check CHECK (
        msg_status IN ('sending', 'sent', 'delivered', 'read', 'failed')
    )
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_id
    ON messages (conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_whatsapp_message_id
    ON messages (whatsapp_message_id);
"""


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(UPGRADE_SQL)


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(
        """
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS conversation_participants;
        DROP TABLE IF EXISTS conversations;
        DROP TABLE IF EXISTS users;
        """
    )
