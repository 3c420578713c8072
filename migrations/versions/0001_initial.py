"""initial fleet schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _json_type():
    if _is_postgres():
        return postgresql.JSONB(astext_type=sa.Text())
    return sa.JSON()


def _json_object_default():
    if _is_postgres():
        return sa.text("'{}'::jsonb")
    return sa.text("'{}'")


def _now_default():
    if _is_postgres():
        return sa.text("now()")
    return sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    if _is_postgres():
        op.execute(sa.schema.CreateSequence(sa.Sequence("project_public_id_seq", start=1, increment=1)))

    op.create_table(
        "identity_counters",
        sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("public_id", sa.String(length=8), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.String(length=1024), nullable=True),
        sa.Column("owner", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.UniqueConstraint("public_id", name="uq_projects_public_id"),
        sa.UniqueConstraint("name", name="uq_projects_name"),
        sa.CheckConstraint("status IN ('active', 'archived')", name="ck_projects_status"),
    )
    op.create_index("ix_projects_owner", "projects", ["owner"], unique=False)

    op.create_table(
        "devices",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("slot", sa.Integer(), nullable=False),
        sa.Column("composite_id", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("secret_hash", sa.String(length=255), nullable=True),
        sa.Column("secret_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("state", sa.String(length=16), nullable=False, server_default=sa.text("'waiting'")),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("firmware_version", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("hostname", sa.String(length=128), nullable=True),
        sa.Column("rssi", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.UniqueConstraint("project_id", "slot", name="uq_devices_project_slot"),
        sa.UniqueConstraint("composite_id", name="uq_devices_composite_id"),
        sa.CheckConstraint("slot >= 1 AND slot <= 20", name="ck_devices_slot_range"),
        sa.CheckConstraint("state IN ('waiting', 'online', 'offline')", name="ck_devices_state"),
    )
    op.create_index("ix_devices_state_last_seen", "devices", ["state", "last_seen_at"], unique=False)

    op.create_table(
        "heartbeat_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "device_id",
            sa.String(length=36),
            sa.ForeignKey("devices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("rssi", sa.Integer(), nullable=True),
        sa.Column("firmware_version", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("hostname", sa.String(length=128), nullable=True),
        sa.Column("telemetry", _json_type(), nullable=False, server_default=_json_object_default()),
    )
    op.create_index(
        "ix_heartbeat_events_device_received",
        "heartbeat_events",
        ["device_id", "received_at"],
        unique=False,
    )

    op.create_table(
        "commands",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column(
            "device_id",
            sa.String(length=36),
            sa.ForeignKey("devices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actuator_ref", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("state", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_now_default()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("id", name="uq_commands_id"),
        sa.CheckConstraint("state IN ('pending', 'confirmed')", name="ck_commands_state"),
    )
    op.create_index("ix_commands_device_state_seq", "commands", ["device_id", "state", "seq"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_commands_device_state_seq", table_name="commands")
    op.drop_table("commands")
    op.drop_index("ix_heartbeat_events_device_received", table_name="heartbeat_events")
    op.drop_table("heartbeat_events")
    op.drop_index("ix_devices_state_last_seen", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_projects_owner", table_name="projects")
    op.drop_table("projects")
    op.drop_table("identity_counters")

    if _is_postgres():
        op.execute(sa.schema.DropSequence(sa.Sequence("project_public_id_seq")))
