"""Initial cart recovery schema

Revision ID: 5d2e9a7c41b8
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5d2e9a7c41b8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_STATUS_PREDICATE = "status IN ('active', 'contacted')"


def upgrade() -> None:
    # Create abandoned_carts table
    op.create_table('abandoned_carts',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('session_id', sa.String(length=255), nullable=True),
    sa.Column('user_id', sa.String(length=255), nullable=True),
    sa.Column('customer_email', sa.String(length=320), nullable=True),
    sa.Column('customer_name', sa.String(length=255), nullable=True),
    sa.Column('cart_value_cents', sa.Integer(), nullable=False),
    sa.Column('item_count', sa.Integer(), nullable=False),
    sa.Column('abandoned_at', sa.DateTime(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('recovered_at', sa.DateTime(), nullable=True),
    sa.Column('recovery_method', sa.String(length=20), nullable=True),
    sa.Column('last_contacted_at', sa.DateTime(), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('promotion_code', sa.String(length=64), nullable=True),
    sa.Column('promotion_code_expires_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    sa.CheckConstraint('(session_id IS NULL) <> (user_id IS NULL)', name='ck_abandoned_carts_single_identity'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_abandoned_carts_session_id', 'abandoned_carts', ['session_id'], unique=False)
    op.create_index('ix_abandoned_carts_user_id', 'abandoned_carts', ['user_id'], unique=False)
    op.create_index('ix_abandoned_carts_status_abandoned_at', 'abandoned_carts', ['status', 'abandoned_at'], unique=False)
    op.create_index('ix_abandoned_carts_customer_email', 'abandoned_carts', ['customer_email'], unique=False)

    # At most one open abandonment per identity
    op.create_index(
        'uq_abandoned_carts_open_session', 'abandoned_carts', ['session_id'], unique=True,
        postgresql_where=sa.text(f"{OPEN_STATUS_PREDICATE} AND session_id IS NOT NULL"),
        sqlite_where=sa.text(f"{OPEN_STATUS_PREDICATE} AND session_id IS NOT NULL"),
    )
    op.create_index(
        'uq_abandoned_carts_open_user', 'abandoned_carts', ['user_id'], unique=True,
        postgresql_where=sa.text(f"{OPEN_STATUS_PREDICATE} AND user_id IS NOT NULL"),
        sqlite_where=sa.text(f"{OPEN_STATUS_PREDICATE} AND user_id IS NOT NULL"),
    )

    # Create cart_snapshots table
    op.create_table('cart_snapshots',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('abandoned_cart_id', sa.Integer(), nullable=False),
    sa.Column('product_id', sa.String(length=255), nullable=False),
    sa.Column('product_name', sa.String(length=500), nullable=False),
    sa.Column('product_sku', sa.String(length=255), nullable=True),
    sa.Column('product_image_url', sa.Text(), nullable=True),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.Column('unit_price_cents', sa.Integer(), nullable=False),
    sa.Column('total_price_cents', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    sa.ForeignKeyConstraint(['abandoned_cart_id'], ['abandoned_carts.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cart_snapshots_abandoned_cart_id', 'cart_snapshots', ['abandoned_cart_id'], unique=False)
    op.create_index('ix_cart_snapshots_product_id', 'cart_snapshots', ['product_id'], unique=False)

    # Create cart_recovery_attempts table
    op.create_table('cart_recovery_attempts',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('abandoned_cart_id', sa.Integer(), nullable=False),
    sa.Column('tier', sa.String(length=20), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('email_subject', sa.String(length=255), nullable=True),
    sa.Column('tracking_token', sa.String(length=64), nullable=False),
    sa.Column('sent_at', sa.DateTime(), nullable=False),
    sa.Column('opened_at', sa.DateTime(), nullable=True),
    sa.Column('clicked_at', sa.DateTime(), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    sa.ForeignKeyConstraint(['abandoned_cart_id'], ['abandoned_carts.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('abandoned_cart_id', 'tier', name='uq_cart_recovery_attempts_cart_tier'),
    sa.UniqueConstraint('tracking_token', name='uq_cart_recovery_attempts_tracking_token')
    )
    op.create_index('ix_cart_recovery_attempts_tier_sent_at', 'cart_recovery_attempts', ['tier', 'sent_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_cart_recovery_attempts_tier_sent_at', table_name='cart_recovery_attempts')
    op.drop_table('cart_recovery_attempts')

    op.drop_index('ix_cart_snapshots_product_id', table_name='cart_snapshots')
    op.drop_index('ix_cart_snapshots_abandoned_cart_id', table_name='cart_snapshots')
    op.drop_table('cart_snapshots')

    op.drop_index('uq_abandoned_carts_open_user', table_name='abandoned_carts')
    op.drop_index('uq_abandoned_carts_open_session', table_name='abandoned_carts')
    op.drop_index('ix_abandoned_carts_customer_email', table_name='abandoned_carts')
    op.drop_index('ix_abandoned_carts_status_abandoned_at', table_name='abandoned_carts')
    op.drop_index('ix_abandoned_carts_user_id', table_name='abandoned_carts')
    op.drop_index('ix_abandoned_carts_session_id', table_name='abandoned_carts')
    op.drop_table('abandoned_carts')
