"""Baseline migration - tenants, staff, catalog, clients, appointments, audit

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create all scheduling tables."""

    # ==========================================================================
    # Tenants & staff
    # ==========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('timezone', sa.String(50), nullable=False, server_default=sa.text("'America/Guatemala'")),
        sa.Column('business_hours', JSONType, nullable=True),
        sa.Column('logo_url', sa.String(500), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('address', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('booking_seq', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('token_version', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_users_tenant', 'users', ['tenant_id'])

    # ==========================================================================
    # Catalog & resources
    # ==========================================================================
    op.create_table(
        'services',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('duration > 0', name='ck_service_duration_positive'),
    )
    op.create_index('idx_services_tenant', 'services', ['tenant_id', 'is_active'])

    op.create_table(
        'team_members',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('idx_team_members_tenant', 'team_members', ['tenant_id'])

    op.create_table(
        'cabins',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('idx_cabins_tenant', 'cabins', ['tenant_id'])

    op.create_table(
        'clients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_clients_tenant_phone', 'clients', ['tenant_id', 'phone'])

    # ==========================================================================
    # Appointments
    # ==========================================================================
    op.create_table(
        'appointments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('client_id', sa.Uuid(), sa.ForeignKey('clients.id', ondelete='CASCADE'), nullable=False),
        sa.Column('specialist_id', sa.Uuid(), sa.ForeignKey('team_members.id', ondelete='SET NULL'), nullable=True),
        sa.Column('cabin_id', sa.Uuid(), sa.ForeignKey('cabins.id', ondelete='SET NULL'), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('receipt_url', sa.String(1000), nullable=True),
        sa.Column('confirmation_token', sa.String(100), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('confirmation_token', name='uq_appointment_confirmation_token'),
        sa.CheckConstraint('end_time > start_time', name='ck_appointment_time_order'),
    )
    op.create_index('idx_appointments_tenant_start', 'appointments', ['tenant_id', 'start_time'])
    op.create_index('idx_appointments_tenant_status', 'appointments', ['tenant_id', 'status'])

    op.create_table(
        'appointment_services',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('appointment_id', sa.Uuid(), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Uuid(), sa.ForeignKey('services.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('price_at_time', sa.Numeric(10, 2), nullable=False),
        sa.Column('duration_at_time', sa.Integer(), nullable=False),
        sa.UniqueConstraint('appointment_id', 'service_id', name='uq_appointment_service'),
    )
    op.create_index('idx_appointment_services_appointment', 'appointment_services', ['appointment_id'])

    # ==========================================================================
    # Audit
    # ==========================================================================
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('action', sa.String(30), nullable=False),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=True),
        sa.Column('details', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_audit_log_tenant_created', 'audit_log', ['tenant_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('appointment_services')
    op.drop_table('appointments')
    op.drop_table('clients')
    op.drop_table('cabins')
    op.drop_table('team_members')
    op.drop_table('services')
    op.drop_table('users')
    op.drop_table('tenants')
