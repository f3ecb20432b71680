"""baseline_schema

Revision ID: 5d3a9c1e7b42
Revises: 
Create Date: 2026-10-19 09:12:41.308114

"""
from typing import Sequence, Union

from alembic import op

from billing_core.db_base import Base
import billing_core.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '5d3a9c1e7b42'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
