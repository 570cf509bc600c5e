"""Create users, listings, navis, dealings and ledger_entries

Revision ID: trade_ledger_001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = 'trade_ledger_001'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'navitype': ('PHONE_AGREEMENT', 'ONLINE_INQUIRY'),
    'navistatus': ('DRAFT', 'SENT', 'APPROVED', 'REJECTED'),
    'dealingstatus': ('APPROVAL_REQUIRED', 'PAYMENT_REQUIRED', 'CONFIRM_REQUIRED', 'COMPLETED', 'CANCELED'),
    'listingstatus': ('DRAFT', 'PUBLISHED', 'SOLD'),
    'ledgerentrycategory': ('PURCHASE', 'SALE', 'DEPOSIT', 'WITHDRAWAL'),
    'ledgerentrykind': ('PLANNED', 'ACTUAL'),
    'ledgerentrysource': ('TRADE_STATUS_TRANSITION', 'MANUAL_ADJUSTMENT'),
}

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def _enum(name):
    # Postgres types are created once up front; dealingstatus is shared by two tables.
    if op.get_bind().dialect.name == 'postgresql':
        return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)
    return sa.Enum(*ENUMS[name], name=name)


def upgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    if conn.dialect.name == 'postgresql':
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(conn, checkfirst=True)

    if 'users' not in tables:
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('company_name', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'listings' not in tables:
        op.create_table(
            'listings',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('seller_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('status', _enum('listingstatus'), nullable=False, server_default='PUBLISHED'),
            sa.Column('title', sa.Text(), nullable=True),
            sa.Column('maker', sa.Text(), nullable=True),
            sa.Column('machine_name', sa.Text(), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('unit_price_excl_tax', sa.Integer(), nullable=True),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_listings_seller_user_id', 'listings', ['seller_user_id'])

    if 'navis' not in tables:
        op.create_table(
            'navis',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('owner_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('buyer_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('navi_type', _enum('navitype'), nullable=False, server_default='PHONE_AGREEMENT'),
            sa.Column('status', _enum('navistatus'), nullable=False, server_default='DRAFT'),
            sa.Column('listing_id', sa.String(length=36), sa.ForeignKey('listings.id'), nullable=True),
            sa.Column('listing_snapshot', JSON_TYPE, nullable=True),
            sa.Column('payload', JSON_TYPE, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_navis_owner_user_id', 'navis', ['owner_user_id'])
        op.create_index('ix_navis_buyer_user_id', 'navis', ['buyer_user_id'])
        op.create_index('idx_navis_owner_status', 'navis', ['owner_user_id', 'status'])
        op.create_index('idx_navis_buyer_status', 'navis', ['buyer_user_id', 'status'])

    if 'dealings' not in tables:
        op.create_table(
            'dealings',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('seller_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('buyer_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('status', _enum('dealingstatus'), nullable=False, server_default='APPROVAL_REQUIRED'),
            sa.Column('payload', JSON_TYPE, nullable=True),
            sa.Column('navi_id', sa.Integer(), sa.ForeignKey('navis.id'), nullable=False),
            sa.Column('payment_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            # ON CONFLICT (navi_id) DO NOTHING relies on this constraint.
            sa.UniqueConstraint('navi_id', name='uq_dealings_navi_id'),
        )
        op.create_index('ix_dealings_seller_user_id', 'dealings', ['seller_user_id'])
        op.create_index('ix_dealings_buyer_user_id', 'dealings', ['buyer_user_id'])
        op.create_index('idx_dealings_seller_status', 'dealings', ['seller_user_id', 'status'])
        op.create_index('idx_dealings_buyer_status', 'dealings', ['buyer_user_id', 'status'])

    if 'ledger_entries' not in tables:
        op.create_table(
            'ledger_entries',
            sa.Column('id', BIGINT_PK, primary_key=True, autoincrement=True),
            sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('trade_id', sa.Integer(), sa.ForeignKey('dealings.id'), nullable=True),
            sa.Column('category', _enum('ledgerentrycategory'), nullable=False),
            sa.Column('kind', _enum('ledgerentrykind'), nullable=False, server_default='PLANNED'),
            sa.Column('amount_yen', sa.BigInteger(), nullable=False),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('counterparty_name', sa.Text(), nullable=True),
            sa.Column('maker_name', sa.Text(), nullable=True),
            sa.Column('item_name', sa.Text(), nullable=True),
            sa.Column('memo', sa.Text(), nullable=True),
            sa.Column('balance_after_yen', sa.BigInteger(), nullable=True),
            sa.Column('breakdown', JSON_TYPE, nullable=True),
            sa.Column('created_by_user_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('source', _enum('ledgerentrysource'), nullable=False, server_default='TRADE_STATUS_TRANSITION'),
            sa.Column('trade_status_at_creation', _enum('dealingstatus'), nullable=True),
            sa.Column('dedupe_key', sa.String(length=255), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('user_id', 'trade_id', 'category', 'kind', name='uq_ledger_entry_user_trade_category_kind'),
            sa.UniqueConstraint('dedupe_key', name='uq_ledger_entries_dedupe_key'),
        )
        op.create_index('ix_ledger_entries_user_id', 'ledger_entries', ['user_id'])
        op.create_index('ix_ledger_entries_trade_id', 'ledger_entries', ['trade_id'])
        op.create_index('ix_ledger_entries_occurred_at', 'ledger_entries', ['occurred_at'])
        op.create_index('idx_ledger_entries_user_occurred', 'ledger_entries', ['user_id', 'occurred_at'])


def downgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    for table in ('ledger_entries', 'dealings', 'navis', 'listings', 'users'):
        if table in tables:
            op.drop_table(table)

    if conn.dialect.name == 'postgresql':
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).drop(conn, checkfirst=True)
