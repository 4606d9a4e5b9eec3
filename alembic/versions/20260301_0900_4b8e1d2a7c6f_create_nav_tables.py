"""create nav_history, funds and fund_returns tables

Revision ID: 4b8e1d2a7c6f
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b8e1d2a7c6f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RETURN_PERIODS = ('1w', '1m', '3m', '6m', '1y', '2y', '3y', '5y', '7y', '10y', 'since_inception')
CAGR_PERIODS = ('1y', '2y', '3y', '5y', '7y', '10y', 'since_inception')


def upgrade() -> None:
    op.create_table(
        'nav_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scheme_code', sa.String(length=20), nullable=False),
        sa.Column('nav_date', sa.Date(), nullable=False),
        sa.Column('nav_value', sa.Float(), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scheme_code', 'nav_date', name='uq_nav_history_scheme_date')
    )
    op.create_index('ix_nav_history_scheme_date', 'nav_history', ['scheme_code', 'nav_date'], unique=False)

    op.create_table(
        'funds',
        sa.Column('scheme_code', sa.String(length=20), nullable=False),
        sa.Column('scheme_name', sa.String(length=500), nullable=True),
        sa.Column('amc_name', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=255), nullable=True),
        sa.Column('latest_nav', sa.Float(), nullable=True),
        sa.Column('latest_nav_date', sa.Date(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('scheme_code')
    )

    op.create_table(
        'fund_returns',
        sa.Column('scheme_code', sa.String(length=20), nullable=False),
        sa.Column('as_of_date', sa.Date(), nullable=True),
        sa.Column('latest_nav', sa.Float(), nullable=True),
        *[sa.Column(f'return_{key}', sa.Float(), nullable=True) for key in RETURN_PERIODS],
        *[sa.Column(f'cagr_{key}', sa.Float(), nullable=True) for key in CAGR_PERIODS],
        sa.Column('data_quality_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('scheme_code')
    )


def downgrade() -> None:
    op.drop_table('fund_returns')
    op.drop_table('funds')
    op.drop_index('ix_nav_history_scheme_date', table_name='nav_history')
    op.drop_table('nav_history')
