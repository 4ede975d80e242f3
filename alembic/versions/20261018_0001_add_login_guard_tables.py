"""add login guard tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


_BIGINT_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

_INDEXES: dict[str, list[tuple[str, list[str]]]] = {
    "account_lockouts": [
        ("ix_account_lockouts_locked_until", ["locked_until"]),
    ],
    "login_attempts": [
        ("ix_login_attempts_identity", ["identity"]),
        ("ix_login_attempts_identity_attempted_at", ["identity", "attempted_at"]),
        ("ix_login_attempts_attempted_at", ["attempted_at"]),
    ],
    "security_events": [
        ("ix_security_events_identity", ["identity"]),
        ("ix_security_events_created_at", ["created_at"]),
        ("ix_security_events_type_created_at", ["event_type", "created_at"]),
    ],
}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "account_lockouts"):
        op.create_table(
            "account_lockouts",
            sa.Column("identity", sa.String(length=255), nullable=False),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_attempt", sa.DateTime(timezone=True), nullable=False),
            sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.PrimaryKeyConstraint("identity"),
        )

    if not _table_exists(inspector, "login_attempts"):
        op.create_table(
            "login_attempts",
            sa.Column("id", _BIGINT_ID, autoincrement=True, nullable=False),
            sa.Column("identity", sa.String(length=255), nullable=False),
            sa.Column("success", sa.Boolean(), nullable=False),
            sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "security_events"):
        op.create_table(
            "security_events",
            sa.Column("id", _BIGINT_ID, autoincrement=True, nullable=False),
            sa.Column("identity", sa.String(length=255), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    for table_name, indexes in _INDEXES.items():
        for index_name, columns in indexes:
            if not _index_exists(inspector, table_name, index_name):
                op.create_index(index_name, table_name, columns, unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name, indexes in reversed(list(_INDEXES.items())):
        if not _table_exists(inspector, table_name):
            continue
        for index_name, _columns in reversed(indexes):
            if _index_exists(inspector, table_name, index_name):
                op.drop_index(index_name, table_name=table_name)
        op.drop_table(table_name)
