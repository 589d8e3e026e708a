"""Create customer companies, locations, invoices and invoice lines

Revision ID: 001_create_billing_sync_tables
Revises:
Create Date: 2025-01-15

QBO link columns (Id + SyncToken) are either both set or both NULL,
enforced by a check constraint on each synced table.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_billing_sync_tables'
down_revision = None
branch_labels = None
depends_on = None


def _qbo_link_check(table: str, id_column: str) -> sa.CheckConstraint:
    return sa.CheckConstraint(
        f"({id_column} IS NULL) = (qbo_sync_token IS NULL)",
        name=f"ck_{table}_qbo_link",
    )


def upgrade():
    """Create billing sync tables."""
    op.create_table(
        'customer_companies',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('legal_name', sa.String(255)),
        sa.Column('phone', sa.String(50)),
        sa.Column('email', sa.String(255)),
        # Billing address
        sa.Column('billing_street', sa.String(255)),
        sa.Column('billing_city', sa.String(100)),
        sa.Column('billing_province', sa.String(50)),
        sa.Column('billing_postal_code', sa.String(20)),
        sa.Column('billing_country', sa.String(50)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        # QBO link
        sa.Column('qbo_customer_id', sa.String(50), index=True),
        sa.Column('qbo_sync_token', sa.String(50)),
        sa.Column('qbo_last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        _qbo_link_check('customer_companies', 'qbo_customer_id'),
    )

    op.create_table(
        'locations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'parent_company_id', sa.String(36),
            sa.ForeignKey('customer_companies.id', ondelete='SET NULL'), index=True,
        ),
        sa.Column('company_name', sa.String(255), nullable=False),
        sa.Column('location_name', sa.String(255)),
        # Service address
        sa.Column('address', sa.String(255)),
        sa.Column('city', sa.String(100)),
        sa.Column('province', sa.String(50)),
        sa.Column('postal_code', sa.String(20)),
        sa.Column('contact_name', sa.String(255)),
        sa.Column('phone', sa.String(50)),
        sa.Column('email', sa.String(255)),
        sa.Column('notes', sa.Text()),
        sa.Column('bill_with_parent', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('inactive', sa.Boolean(), nullable=False, server_default=sa.false()),
        # QBO link
        sa.Column('qbo_customer_id', sa.String(50), index=True),
        sa.Column('qbo_sync_token', sa.String(50)),
        sa.Column('qbo_parent_customer_id', sa.String(50)),
        sa.Column('qbo_last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        _qbo_link_check('locations', 'qbo_customer_id'),
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'location_id', sa.String(36),
            sa.ForeignKey('locations.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column(
            'customer_company_id', sa.String(36),
            sa.ForeignKey('customer_companies.id', ondelete='SET NULL'), index=True,
        ),
        sa.Column('invoice_number', sa.String(50)),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('issue_date', sa.String(10), nullable=False),
        sa.Column('due_date', sa.String(10)),
        sa.Column('currency', sa.String(3), nullable=False, server_default='CAD'),
        # Money as text to keep decimal precision
        sa.Column('subtotal', sa.String(32), nullable=False, server_default='0'),
        sa.Column('tax_total', sa.String(32), nullable=False, server_default='0'),
        sa.Column('total', sa.String(32), nullable=False, server_default='0'),
        sa.Column('notes_internal', sa.Text()),
        sa.Column('notes_customer', sa.Text()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        # QBO link
        sa.Column('qbo_invoice_id', sa.String(50), index=True),
        sa.Column('qbo_sync_token', sa.String(50)),
        sa.Column('qbo_doc_number', sa.String(50)),
        sa.Column('qbo_last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        _qbo_link_check('invoices', 'qbo_invoice_id'),
    )

    op.create_table(
        'invoice_lines',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'invoice_id', sa.String(36),
            sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('quantity', sa.String(32), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.String(32), nullable=False, server_default='0'),
        sa.Column('line_subtotal', sa.String(32), nullable=False, server_default='0'),
        sa.Column('tax_code', sa.String(50)),
        sa.Column('qbo_item_ref_id', sa.String(50)),
        sa.Column('qbo_tax_code_ref_id', sa.String(50)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )


def downgrade():
    """Drop billing sync tables."""
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('locations')
    op.drop_table('customer_companies')
