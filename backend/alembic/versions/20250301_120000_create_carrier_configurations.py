"""Create carrier_configurations

Revision ID: carrier_configs_001
Revises:
Create Date: 2025-03-01 12:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = 'carrier_configs_001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create carrier_configurations (idempotent)"""
    conn = op.get_bind()
    inspector = inspect(conn)

    if 'carrier_configurations' in inspector.get_table_names():
        print("carrier_configurations already exists, skipping")
        return

    op.create_table(
        'carrier_configurations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('carrier_name', sa.String(50), nullable=False),
        sa.Column('account_number', sa.String(100), nullable=True),
        sa.Column('api_credentials', sa.JSON(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('markup', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'carrier_name', name='uq_carrier_configurations_user_carrier'),
    )
    op.create_index('ix_carrier_configurations_user_id', 'carrier_configurations', ['user_id'])
    op.create_index(
        'idx_carrier_configurations_user_active', 'carrier_configurations', ['user_id', 'is_active']
    )


def downgrade() -> None:
    op.drop_index('idx_carrier_configurations_user_active', table_name='carrier_configurations')
    op.drop_index('ix_carrier_configurations_user_id', table_name='carrier_configurations')
    op.drop_table('carrier_configurations')
