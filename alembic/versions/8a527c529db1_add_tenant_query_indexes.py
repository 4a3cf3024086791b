"""Add tenant query indexes

Revision ID: 8a527c529db1
Revises: 3f1c9a2d7b40
Create Date: 2026-10-19 09:42:33.921788

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '8a527c529db1'
down_revision: Union[str, Sequence[str], None] = '3f1c9a2d7b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    # Every listing is tenant scoped and ordered by timestamp
    op.create_index('idx_events_tenant_timestamp', 'events', ['tenant_id', 'timestamp'], if_not_exists=True)
    op.create_index(
        'idx_events_tenant_type_timestamp', 'events', ['tenant_id', 'event_type', 'timestamp'], if_not_exists=True
    )


def downgrade():
    op.drop_index('idx_events_tenant_type_timestamp', 'events')
    op.drop_index('idx_events_tenant_timestamp', 'events')
