"""initial_schema

tokens (bonding curve state), trades (unique signature), platform_stats
(singleton counters row).

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0a1b2c3d4e5f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('mint', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('symbol', sa.String(50), nullable=False),
        sa.Column('creator', sa.String(64), nullable=False),
        sa.Column('bonding_curve', sa.String(64), nullable=False),
        sa.Column('creation_tx', sa.String(128), nullable=False),
        sa.Column('virtual_sol_reserves', sa.BigInteger(), nullable=False),
        sa.Column('virtual_token_reserves', sa.BigInteger(), nullable=False),
        sa.Column('real_sol_reserves', sa.BigInteger(), nullable=False),
        sa.Column('real_token_reserves', sa.BigInteger(), nullable=False),
        sa.Column('tokens_sold', sa.BigInteger(), nullable=False),
        sa.Column('market_cap_lamports', sa.BigInteger(), nullable=False),
        sa.Column('migrated', sa.Boolean(), nullable=False),
        sa.Column('migration_tx', sa.String(128), nullable=True),
        sa.Column('migrated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('indexed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('idx_tokens_creator', 'tokens', ['creator'])
    op.create_index('idx_tokens_created_at', 'tokens', ['created_at'])

    op.create_table(
        'trades',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('signature', sa.String(128), nullable=False, unique=True),
        sa.Column('token_id', sa.Integer(), sa.ForeignKey('tokens.id'), nullable=False),
        sa.Column('trader', sa.String(64), nullable=False),
        sa.Column('side', sa.String(10), nullable=False),
        sa.Column('sol_amount', sa.BigInteger(), nullable=False),
        sa.Column('token_amount', sa.BigInteger(), nullable=False),
        sa.Column('fee_amount', sa.BigInteger(), nullable=False),
        sa.Column('price', sa.Numeric(38, 18), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_trades_token_time', 'trades', ['token_id', 'timestamp'])

    op.create_table(
        'platform_stats',
        sa.Column('id', sa.String(16), primary_key=True),
        sa.Column('total_volume', sa.BigInteger(), nullable=False),
        sa.Column('total_trades', sa.BigInteger(), nullable=False),
        sa.Column('total_tokens', sa.BigInteger(), nullable=False),
        sa.Column('total_migrated', sa.BigInteger(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('platform_stats')
    op.drop_index('idx_trades_token_time', 'trades')
    op.drop_table('trades')
    op.drop_index('idx_tokens_created_at', 'tokens')
    op.drop_index('idx_tokens_creator', 'tokens')
    op.drop_table('tokens')
