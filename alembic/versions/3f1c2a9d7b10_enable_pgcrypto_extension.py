"""Enable pgcrypto extension

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:41.201553

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Enable pgcrypto extension for vault encryption."""
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')


def downgrade() -> None:
    """Disable pgcrypto extension."""
    op.execute('DROP EXTENSION IF EXISTS pgcrypto')
