"""add calendar event exceptions

Revision ID: 202610081400
Revises: 202610010900
Create Date: 2026-10-08 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610081400"
down_revision = "202610010900"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "calendar_event_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("calendar_events.id"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "event_id", "date", name="uq_calendar_exception_event_date"
        ),
    )


def downgrade():
    op.drop_table("calendar_event_exceptions")
