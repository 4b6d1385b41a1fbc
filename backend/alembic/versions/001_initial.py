"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "crawl_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="started"),
        sa.Column("longliving", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("worker_type", sa.String(20), nullable=False, server_default="http"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("priority_policy", sa.String(20), nullable=False, server_default="absolute"),
        sa.Column("num_crawl_workers_started", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_workers_running", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_lost_workers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_lost_workers", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_workers", sa.Integer(), nullable=True),
        sa.Column("max_items_per_worker", sa.Integer(), nullable=True),
        sa.Column("max_items_per_second", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("avg_items_per_second_worker", sa.JSON(), nullable=False),
        sa.Column("retry_failed_items", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("num_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_items_crawled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queue", sa.String(255), nullable=True),
        sa.Column("worker_meta", sa.String(255), nullable=True),
        sa.Column("whitelisted_proxies", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("regions", sa.JSON(), nullable=False),
        sa.Column("crawl_options", sa.JSON(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("function_code", sa.Text(), nullable=False, server_default=""),
        sa.Column("storage_policy", sa.String(20), nullable=False, server_default="itemwise"),
        sa.Column("log_ip_address", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("items_browser_debug", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_crawl_tasks_status", "crawl_tasks", ["status"])

    op.create_table(
        "proxies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("proxy", sa.String(255), nullable=False),
        sa.Column("public_ip", sa.String(64), nullable=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="functional"),
        sa.Column("provider", sa.String(255), nullable=True),
        sa.Column("subtype", sa.String(255), nullable=True),
        sa.Column("protocol", sa.String(20), nullable=False, server_default="http"),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("password", sa.String(255), nullable=True),
        sa.Column("whitelisted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("rotating", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("recaptcha_passed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("geolocation", sa.JSON(), nullable=True),
        sa.Column("block_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("proxy_fail_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("obtain_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_blocked", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_proxies_proxy", "proxies", ["proxy"], unique=True)
    op.create_index("ix_proxies_type", "proxies", ["type"])
    op.create_index("ix_proxies_status", "proxies", ["status"])

    op.create_table(
        "machines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="initial"),
        sa.Column("size", sa.String(20), nullable=True),
        sa.Column("region", sa.String(64), nullable=True),
        sa.Column("info", sa.JSON(), nullable=False),
        sa.Column("eip", sa.JSON(), nullable=True),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_machines_type", "machines", ["type"])
    op.create_index("ix_machines_status", "machines", ["status"])

    op.create_table(
        "scheduler_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("scheduler_started", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scheduler_config_name", "scheduler_config", ["name"], unique=True)

    op.create_table(
        "elastic_ips",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("eid", sa.String(255), nullable=False, unique=True),
        sa.Column("ip", sa.String(64), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_elastic_ips_used", "elastic_ips", ["used"])


def downgrade() -> None:
    op.drop_table("elastic_ips")
    op.drop_table("scheduler_config")
    op.drop_table("machines")
    op.drop_table("proxies")
    op.drop_table("crawl_tasks")
