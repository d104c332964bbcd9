"""Index ledger responses by response unit for the outflow query.

Revision ID: 002_responses_by_response_unit
Revises: 001_stats_tables
Create Date: 2026-10-19 00:01:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op

revision: str = "002_responses_by_response_unit"
down_revision: Union[str, None] = "001_stats_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # The ledger owns aa_responses; only the index is added here.
    op.create_index("byResponseUnit", "aa_responses", ["response_unit"], if_not_exists=True)


def downgrade() -> None:
    op.drop_index("byResponseUnit", table_name="aa_responses", if_exists=True)
