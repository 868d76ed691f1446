"""Add deploy_pending flag to fine_tuning_jobs

Revision ID: 003
Revises: 002
Create Date: 2024-10-02 00:00:00.000000+00:00

What:  Marks succeeded jobs whose auto-deploy has not completed, so the
       monitor can retry the deployment on a later pass.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "fine_tuning_jobs",
        sa.Column(
            "deploy_pending",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
            comment="Succeeded under auto-deploy, deployment not yet recorded",
        ),
    )
    op.create_index(
        "idx_fine_tuning_jobs_deploy_pending", "fine_tuning_jobs", ["deploy_pending"]
    )


def downgrade() -> None:
    op.drop_index("idx_fine_tuning_jobs_deploy_pending", table_name="fine_tuning_jobs")
    op.drop_column("fine_tuning_jobs", "deploy_pending")
