"""initial schema - create all tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create transactions table (status enums as VARCHAR)
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_name', sa.String(255), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('customer_phone', sa.String(32), nullable=True),
        sa.Column('customer_zip', sa.String(10), nullable=True, index=True),
        sa.Column('customer_address', sa.Text(), nullable=True),
        sa.Column('vehicle_year', sa.String(8), nullable=True),
        sa.Column('vehicle_make', sa.String(64), nullable=True),
        sa.Column('vehicle_model', sa.String(64), nullable=True),
        sa.Column('vehicle_vin', sa.String(32), nullable=True),
        sa.Column('damage_description', sa.Text(), nullable=True),
        sa.Column('service_type', sa.String(64), nullable=True),
        sa.Column('source_type', sa.String(32), nullable=False, server_default='intake'),
        sa.Column('form_data', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(10), nullable=False, server_default='pending', index=True),
        sa.Column('status_history', sa.JSON(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('external_job_id', sa.String(64), nullable=True),
        sa.Column('fulfillment_status', sa.String(18), nullable=True),
        sa.Column('job_request_id', sa.Integer(), nullable=True),
        sa.Column('assigned_subcontractor_id', sa.Integer(), nullable=True),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )

    # Create retry_queue table
    op.create_table(
        'retry_queue',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('operation', sa.String(64), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=True, index=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('claimed_until', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('is_dead_letter', sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column('dead_lettered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )

    # Create activity_logs table
    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('type', sa.String(64), nullable=False, index=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=True, index=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, index=True),
    )

    # Create notifications table (severity as VARCHAR)
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('type', sa.String(64), nullable=False, index=True),
        sa.Column('severity', sa.String(8), nullable=False, server_default='info'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('source', sa.String(64), nullable=True),
        sa.Column('transaction_id', sa.Integer(), nullable=True, index=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Create field_mappings table
    op.create_table(
        'field_mappings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('source_field', sa.String(128), nullable=False),
        sa.Column('target_field', sa.String(128), nullable=False),
        sa.Column('transform_rule', sa.String(32), nullable=True),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    # Create subcontractors table
    op.create_table(
        'subcontractors',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(32), nullable=False, index=True),
        sa.Column('service_areas', sa.JSON(), nullable=False),
        sa.Column('specialties', sa.JSON(), nullable=False),
        sa.Column('rating', sa.Float(), nullable=False, server_default='5.0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_jobs_per_day', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('preferred_contact_method', sa.String(16), nullable=False, server_default='sms'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )

    # Create subcontractor_availability table (one row per subcontractor per day)
    op.create_table(
        'subcontractor_availability',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subcontractor_id', sa.Integer(), sa.ForeignKey('subcontractors.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('time_slots', sa.JSON(), nullable=False),
        sa.Column('max_jobs', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('current_jobs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('subcontractor_id', 'date', name='uq_availability_subcontractor_date'),
        sa.CheckConstraint('current_jobs <= max_jobs', name='ck_availability_capacity'),
    )

    # Create job_requests table (status as VARCHAR)
    op.create_table(
        'job_requests',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('vin', sa.String(32), nullable=False, server_default=''),
        sa.Column('customer_location', sa.Text(), nullable=False),
        sa.Column('service_type', sa.String(64), nullable=False, server_default='windshield'),
        sa.Column('preferred_date', sa.Date(), nullable=True),
        sa.Column('preferred_time_slot', sa.String(16), nullable=True),
        sa.Column('target_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(18), nullable=False, server_default='pending_contractor', index=True),
        sa.Column('assigned_subcontractor_id', sa.Integer(), sa.ForeignKey('subcontractors.id', ondelete='SET NULL'), nullable=True),
        sa.Column('assigned_date', sa.Date(), nullable=True),
        sa.Column('estimated_duration', sa.Integer(), nullable=False, server_default='120'),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )

    # Create subcontractor_responses table (append-only)
    op.create_table(
        'subcontractor_responses',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_request_id', sa.Integer(), sa.ForeignKey('job_requests.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('subcontractor_id', sa.Integer(), sa.ForeignKey('subcontractors.id', ondelete='CASCADE'), nullable=False),
        sa.Column('response', sa.String(13), nullable=False),
        sa.Column('available_time_slots', sa.JSON(), nullable=True),
        sa.Column('proposed_date', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('subcontractor_responses')
    op.drop_table('job_requests')
    op.drop_table('subcontractor_availability')
    op.drop_table('subcontractors')
    op.drop_table('field_mappings')
    op.drop_table('notifications')
    op.drop_table('activity_logs')
    op.drop_table('retry_queue')
    op.drop_table('transactions')
