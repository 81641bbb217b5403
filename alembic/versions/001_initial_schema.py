"""Initial boost queue schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

Tables:
- categories
- business_owners
- businesses
- subscriptions
- category_queues
- boost_queue_entries
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.db.types import GUID


# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUM_TYPES = {
    'subscription_type_enum': ('business', 'boost'),
    'subscription_status_enum': ('pending', 'active', 'expired', 'canceled'),
    'refund_status_enum': ('none', 'issued', 'intent_canceled', 'pending_compensation'),
    'boost_status_enum': ('pending', 'active', 'expired', 'canceled'),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUM_TYPES[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()

    # ===========================================
    # ENUM TYPES
    # ===========================================
    if bind.dialect.name == 'postgresql':
        for name, values in ENUM_TYPES.items():
            labels = ", ".join(f"'{value}'" for value in values)
            op.execute(f"""
                DO $$ BEGIN
                    CREATE TYPE {name} AS ENUM ({labels});
                EXCEPTION WHEN duplicate_object THEN NULL; END $$;
            """)

    # ===========================================
    # TABLE: categories
    # ===========================================
    op.create_table('categories',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_categories_name', 'categories', ['name'], unique=True)

    # ===========================================
    # TABLE: business_owners
    # ===========================================
    op.create_table('business_owners',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('payment_customer_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_business_owners_email', 'business_owners', ['email'], unique=True)

    # ===========================================
    # TABLE: businesses
    # ===========================================
    op.create_table('businesses',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('owner_id', GUID(), nullable=False),
        sa.Column('category_id', GUID(), nullable=True),
        sa.Column('is_boosted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_boost_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('boost_expiry_at', sa.DateTime(), nullable=True),
        sa.Column('boost_subscription_id', GUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['owner_id'], ['business_owners.id']),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_businesses_owner_id', 'businesses', ['owner_id'])
    op.create_index('ix_businesses_category_id', 'businesses', ['category_id'])

    # ===========================================
    # TABLE: subscriptions
    # ===========================================
    op.create_table('subscriptions',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('business_id', GUID(), nullable=False),
        sa.Column('owner_id', GUID(), nullable=False),
        sa.Column('subscription_type', _enum('subscription_type_enum'), nullable=False),
        sa.Column('status', _enum('subscription_status_enum'), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('payment_intent_id', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('queue_id', GUID(), nullable=True),
        sa.Column('queue_position', sa.Integer(), nullable=True),
        sa.Column('estimated_start_time', sa.DateTime(), nullable=True),
        sa.Column('estimated_end_time', sa.DateTime(), nullable=True),
        sa.Column('is_currently_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('boost_start_time', sa.DateTime(), nullable=True),
        sa.Column('boost_end_time', sa.DateTime(), nullable=True),
        sa.Column('boost_category_id', GUID(), nullable=True),
        sa.Column('refund_percent', sa.Integer(), nullable=True),
        sa.Column('refund_amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('refund_status', _enum('refund_status_enum'), nullable=False, server_default='none'),
        sa.Column('refund_id', sa.String(), nullable=True),
        sa.Column('refund_error', sa.String(), nullable=True),
        sa.Column('refund_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_rejections', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['owner_id'], ['business_owners.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_subscriptions_payment_intent_id', 'subscriptions', ['payment_intent_id'])
    op.create_index('ix_subscriptions_business_type', 'subscriptions', ['business_id', 'subscription_type'])
    op.create_index('ix_subscriptions_refund_status', 'subscriptions', ['refund_status'])

    # ===========================================
    # TABLE: category_queues
    # ===========================================
    op.create_table('category_queues',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('category_id', GUID(), nullable=False),
        sa.Column('category_name', sa.String(), nullable=False),
        sa.Column('active_entry_id', GUID(), nullable=True),
        sa.Column('active_business_id', GUID(), nullable=True),
        sa.Column('active_subscription_id', GUID(), nullable=True),
        sa.Column('boost_start_time', sa.DateTime(), nullable=True),
        sa.Column('boost_end_time', sa.DateTime(), nullable=True),
        sa.Column('next_sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('category_id')
    )
    op.create_index('ix_category_queues_active_business_id', 'category_queues', ['active_business_id'])

    # ===========================================
    # TABLE: boost_queue_entries
    # ===========================================
    op.create_table('boost_queue_entries',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('queue_id', GUID(), nullable=False),
        sa.Column('business_id', GUID(), nullable=False),
        sa.Column('business_name', sa.String(), nullable=False),
        sa.Column('business_owner_id', GUID(), nullable=False),
        sa.Column('subscription_id', GUID(), nullable=False),
        sa.Column('payment_intent_id', sa.String(), nullable=True),
        sa.Column('amount_paid', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('status', _enum('boost_status_enum'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('boost_start_time', sa.DateTime(), nullable=True),
        sa.Column('boost_end_time', sa.DateTime(), nullable=True),
        sa.Column('estimated_start_time', sa.DateTime(), nullable=True),
        sa.Column('estimated_end_time', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['queue_id'], ['category_queues.id']),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['business_owner_id'], ['business_owners.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_boost_queue_entries_queue_status', 'boost_queue_entries', ['queue_id', 'status'])
    op.create_index('ix_boost_queue_entries_business', 'boost_queue_entries', ['business_id'])

    # At most one open entry per business per category
    op.create_index(
        'uq_boost_queue_entries_open_business', 'boost_queue_entries', ['queue_id', 'business_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'active')"),
        sqlite_where=sa.text("status IN ('pending', 'active')"),
    )
    # At most one active entry per category
    op.create_index(
        'uq_boost_queue_entries_active_slot', 'boost_queue_entries', ['queue_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign keys)
    op.drop_table('boost_queue_entries')
    op.drop_table('category_queues')
    op.drop_table('subscriptions')
    op.drop_table('businesses')
    op.drop_table('business_owners')
    op.drop_table('categories')

    # Drop enum types
    if op.get_bind().dialect.name == 'postgresql':
        for name in reversed(list(ENUM_TYPES)):
            op.execute(f'DROP TYPE IF EXISTS {name}')
