"""initial trading schema

Revision ID: 4c1f7a9e2b10
Revises:
Create Date: 2026-10-18 09:12:40.118305

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "4c1f7a9e2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=200), nullable=True),
        sa.Column("avatar_url", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "books",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("author", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("condition", sa.String(length=20), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("genres", sa.JSON(), nullable=False),
        sa.Column("isbn", sa.String(length=17), nullable=True),
        sa.Column("published_year", sa.Integer(), nullable=True),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_books_owner", "books", ["owner_id"])
    op.create_index("idx_books_available", "books", ["is_available"])
    op.create_index("idx_books_title", "books", ["title"])

    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("initiator_id", sa.Integer(), nullable=False),
        sa.Column("receiver_id", sa.Integer(), nullable=False),
        sa.Column("book_offered_id", sa.Integer(), nullable=False),
        sa.Column("book_requested_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("is_seen", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["initiator_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["receiver_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["book_offered_id"], ["books.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["book_requested_id"], ["books.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_trade_initiator", "trades", ["initiator_id", "status"])
    op.create_index("idx_trade_receiver", "trades", ["receiver_id", "status"])
    op.create_index("idx_trade_book_offered", "trades", ["book_offered_id", "status"])
    op.create_index("idx_trade_book_requested", "trades", ["book_requested_id", "status"])


def downgrade() -> None:
    op.drop_index("idx_trade_book_requested", table_name="trades")
    op.drop_index("idx_trade_book_offered", table_name="trades")
    op.drop_index("idx_trade_receiver", table_name="trades")
    op.drop_index("idx_trade_initiator", table_name="trades")
    op.drop_table("trades")

    op.drop_index("idx_books_title", table_name="books")
    op.drop_index("idx_books_available", table_name="books")
    op.drop_index("idx_books_owner", table_name="books")
    op.drop_table("books")

    op.drop_table("users")
