"""Per-user ad destination links (smart link, pre-save, one-click, profiles).

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LINK_COLUMNS = (
    "smart_link_url",
    "presave_link_url",
    "one_click_link_url",
    "instagram_profile_url",
    "facebook_page_url",
)


def upgrade() -> None:
    for column in LINK_COLUMNS:
        op.add_column("user_ads_settings", sa.Column(column, sa.Text(), nullable=True))


def downgrade() -> None:
    for column in reversed(LINK_COLUMNS):
        op.drop_column("user_ads_settings", column)
