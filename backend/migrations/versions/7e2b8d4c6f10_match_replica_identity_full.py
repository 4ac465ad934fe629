"""full-row change events for match

Revision ID: 7e2b8d4c6f10
Revises: 3a9c51e0d7b2
Create Date: 2026-01-09 16:40:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '7e2b8d4c6f10'
down_revision = '3a9c51e0d7b2'
branch_labels = None
depends_on = None


def upgrade():
    # Row-level replication must carry every column, not just the key,
    # so UPDATE events hold the full match row. Postgres only.
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute('ALTER TABLE "match" REPLICA IDENTITY FULL')


def downgrade():
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute('ALTER TABLE "match" REPLICA IDENTITY DEFAULT')
