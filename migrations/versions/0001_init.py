"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "credentials",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("token_encrypted", sa.Text(), nullable=False),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("visibility", sa.String(length=16), nullable=False, server_default="private"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_credentials_owner", "credentials", ["owner"])

    op.create_table(
        "services",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("repository_url", sa.String(length=512), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=False),
        sa.Column("source_directory", sa.String(length=512), nullable=True),
        sa.Column("script", sa.String(length=512), nullable=True),
        sa.Column("args", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column(
            "use_package_manager", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("package_script", sa.String(length=128), nullable=True),
        sa.Column("package_args", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("active_environment", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="stopped"),
        sa.Column("process_handle", sa.String(length=255), nullable=True),
        sa.Column("visibility", sa.String(length=16), nullable=False, server_default="private"),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("credential_id", sa.String(length=64), nullable=True),
        sa.Column("runtime_version", sa.String(length=32), nullable=True),
        sa.Column("cluster_instances", sa.Integer(), nullable=True),
        sa.Column("autostart", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("repo_path", sa.String(length=1024), nullable=True),
        sa.Column("deploy_key", sa.String(length=128), nullable=True),
        sa.Column("webhook_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("webhook_id", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_services_name", "services", ["name"], unique=True)
    op.create_index("ix_services_owner", "services", ["owner"])
    op.create_index("ix_services_deploy_key", "services", ["deploy_key"], unique=True)

    op.create_table(
        "service_environments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "service_id",
            sa.String(length=64),
            sa.ForeignKey("services.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("variables", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
        sa.UniqueConstraint("service_id", "name", name="uq_service_environment_name"),
    )
    op.create_index(
        "ix_service_environments_service_id", "service_environments", ["service_id"]
    )

    op.create_table(
        "domains",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("domain", sa.String(length=253), nullable=False),
        sa.Column("port", sa.Integer(), nullable=False),
        sa.Column(
            "service_id", sa.String(length=64), sa.ForeignKey("services.id"), nullable=False
        ),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("ssl_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("config_path", sa.String(length=1024), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_domains_domain", "domains", ["domain"], unique=True)
    op.create_index("ix_domains_service_id", "domains", ["service_id"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=True),
        sa.Column("fields", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
    )
    op.create_index("ix_events_category", "events", ["category"])
    op.create_index("ix_events_created_at", "events", ["created_at"])
    op.create_index("ix_events_subject_id", "events", ["subject_id"])


def downgrade() -> None:
    op.drop_index("ix_events_subject_id", table_name="events")
    op.drop_index("ix_events_created_at", table_name="events")
    op.drop_index("ix_events_category", table_name="events")
    op.drop_table("events")

    op.drop_index("ix_domains_service_id", table_name="domains")
    op.drop_index("ix_domains_domain", table_name="domains")
    op.drop_table("domains")

    op.drop_index("ix_service_environments_service_id", table_name="service_environments")
    op.drop_table("service_environments")

    op.drop_index("ix_services_deploy_key", table_name="services")
    op.drop_index("ix_services_owner", table_name="services")
    op.drop_index("ix_services_name", table_name="services")
    op.drop_table("services")

    op.drop_index("ix_credentials_owner", table_name="credentials")
    op.drop_table("credentials")

    op.drop_table("app_settings")
