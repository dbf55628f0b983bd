"""baseline schema: accounts, pairings, programs, steps, contributions, messages, sessions

Revision ID: 4c2e9a7d1f30
Revises:
Create Date: 2026-10-15 09:12:40.511204

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from duet.database import Base
from duet import models  # noqa: F401  registers every table on Base.metadata

# revision identifiers, used by Alembic.
revision: str = "4c2e9a7d1f30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create account, pairing, program, program_step, step_contribution,
    step_message and refresh_session."""
    bind: Connection = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    bind: Connection = op.get_bind()
    Base.metadata.drop_all(bind)
