"""initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the catalog, ledger, request, quotation, payment and audit tables.
Enum columns are VARCHAR with CHECK constraints so the schema is portable.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _enum(name, *values):
    return sa.Enum(*values, name=name, native_enum=False, length=32)


def upgrade() -> None:
    supplier_status = _enum('supplierstatus', 'active', 'inactive')
    request_type = _enum('requesttype', 'SC', 'SM')
    request_priority = _enum('requestpriority', 'standard', 'priority', 'urgent')
    request_status = _enum('requeststatus', 'pending', 'approved', 'rejected', 'completed')
    item_kind = _enum('requestitemkind', 'catalogued', 'adhoc')
    quotation_status = _enum('quotationstatus', 'pending', 'in_progress', 'completed', 'cancelled')
    quotation_item_status = _enum('quotationitemstatus', 'pending', 'submitted', 'selected', 'rejected')
    movement_type = _enum('movementtype', 'out')
    movement_reason = _enum('movementreason', 'sale', 'internal-transfer', 'return', 'internal-consumption', 'other')
    payment_type = _enum('paymentrequesttype', 'payment', 'reimbursement', 'advance')
    payment_method = _enum('paymentmethod', 'pix', 'cash', 'bank_slip', 'caju', 'solides')
    payment_status = _enum('paymentrequeststatus', 'pending', 'approved', 'rejected', 'paid', 'cancelled')

    # Suppliers
    op.create_table('suppliers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('tax_id', sa.String(20), index=True),
        sa.Column('email', sa.String(255)),
        sa.Column('phone', sa.String(50)),
        sa.Column('address', sa.Text()),
        sa.Column('contact_person', sa.String(255)),
        sa.Column('products', sa.JSON()),
        sa.Column('status', supplier_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Products
    op.create_table('products',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('code', sa.String(100), unique=True, nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('category', sa.String(100), index=True),
        sa.Column('unit', sa.String(50)),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=True),
        sa.Column('supplier_name', sa.String(255)),
        sa.Column('batch', sa.String(100)),
        sa.Column('location', sa.String(255)),
        sa.Column('invoice_number', sa.String(100)),
        sa.Column('is_withholding', sa.Boolean()),
        sa.Column('entry_date', sa.Date()),
        sa.Column('expiration_date', sa.Date(), nullable=False),
        sa.Column('quantity', sa.Integer(), sa.CheckConstraint('quantity >= 0'), nullable=False),
        sa.Column('min_stock', sa.Integer(), sa.CheckConstraint('min_stock >= 0'), nullable=False),
        sa.Column('unit_price', sa.Float(), sa.CheckConstraint('unit_price >= 0'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Requests
    op.create_table('requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('type', request_type, nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('requested_by', sa.String(255), nullable=False),
        sa.Column('department', sa.String(100), index=True),
        sa.Column('priority', request_priority, nullable=False),
        sa.Column('status', request_status, nullable=False, index=True),
        sa.Column('request_date', sa.Date(), nullable=False),
        sa.Column('notes', sa.Text()),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=True),
        sa.Column('supplier_name', sa.String(255)),
        sa.Column('approved_by', sa.String(255)),
        sa.Column('approval_date', sa.DateTime(timezone=True)),
        sa.Column('receiver_signature', sa.Text()),
        sa.Column('received_by', sa.String(255)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "(status = 'completed') = (receiver_signature IS NOT NULL AND received_by IS NOT NULL)",
            name='ck_requests_receipt_iff_completed',
        ),
    )

    op.create_table('request_items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('kind', item_kind, nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer(), sa.CheckConstraint('quantity > 0'), nullable=False),
        sa.Column('category', sa.String(100)),
        sa.CheckConstraint(
            "(kind = 'catalogued' AND product_id IS NOT NULL) OR (kind = 'adhoc' AND product_id IS NULL)",
            name='ck_request_items_kind_product',
        ),
    )

    op.create_table('request_periods',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('department', sa.String(100), unique=True, nullable=False),
        sa.Column('start_day', sa.Integer(), nullable=False),
        sa.Column('end_day', sa.Integer(), nullable=False),
        sa.Column('updated_by', sa.String(255)),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Ledger
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False, index=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('type', movement_type, nullable=False),
        sa.Column('reason', movement_reason, nullable=False),
        sa.Column('quantity', sa.Integer(), sa.CheckConstraint('quantity > 0'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=True, index=True),
        sa.Column('authorized_by', sa.String(255)),
        sa.Column('notes', sa.Text()),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('total_value', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('product_change_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('changed_by', sa.String(255), nullable=False),
        sa.Column('change_reason', sa.Text(), nullable=False),
        sa.Column('field_changes', sa.JSON(), nullable=False),
        sa.Column('change_date', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Quotations
    op.create_table('quotations',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('requests.id'), nullable=False, index=True),
        sa.Column('request_item_id', sa.Integer(), sa.ForeignKey('request_items.id'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('requested_quantity', sa.Integer(), nullable=False),
        sa.Column('status', quotation_status, nullable=False),
        sa.Column('selected_supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=True),
        sa.Column('selected_price', sa.Float()),
        sa.Column('selected_delivery_time', sa.String(100)),
        sa.Column('created_by', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table('quotation_items',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quotation_id', sa.Integer(), sa.ForeignKey('quotations.id'), nullable=False, index=True),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('suppliers.id'), nullable=False),
        sa.Column('supplier_name', sa.String(255), nullable=False),
        sa.Column('unit_price', sa.Float()),
        sa.Column('total_price', sa.Float()),
        sa.Column('delivery_time', sa.String(100)),
        sa.Column('notes', sa.Text()),
        sa.Column('status', quotation_item_status, nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('quotation_id', 'supplier_id', name='uq_quotation_item_supplier'),
    )

    # Payments
    op.create_table('payment_requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('code', sa.String(100), nullable=False, unique=True),
        sa.Column('compact_code', sa.String(50), nullable=False),
        sa.Column('request_type', payment_type, nullable=False),
        sa.Column('document_number', sa.String(100), nullable=False),
        sa.Column('payee', sa.String(255), nullable=False),
        sa.Column('tax_id', sa.String(20), nullable=False),
        sa.Column('total_amount', sa.Float(), sa.CheckConstraint('total_amount > 0'), nullable=False),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('payment_details', sa.Text()),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('requested_by', sa.String(255), nullable=False),
        sa.Column('authorized_by', sa.String(255)),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('requester_email', sa.String(255)),
        sa.Column('department', sa.String(100)),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('approved_by', sa.String(255)),
        sa.Column('approval_date', sa.DateTime(timezone=True)),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Audit logs
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column('actor', sa.String(255)),
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('entity_type', sa.String(100), index=True),
        sa.Column('entity_id', sa.Integer()),
        sa.Column('details', sa.JSON()),
        sa.Column('ip_address', sa.String(50)),
    )
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign keys)
    op.drop_index('ix_audit_logs_entity', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_table('payment_requests')
    op.drop_table('quotation_items')
    op.drop_table('quotations')
    op.drop_table('product_change_logs')
    op.drop_table('stock_movements')
    op.drop_table('request_periods')
    op.drop_table('request_items')
    op.drop_table('requests')
    op.drop_table('products')
    op.drop_table('suppliers')
