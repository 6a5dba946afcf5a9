"""create clinic booking tables

Revision ID: 001
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

slot_kind = sa.Enum('APPOINTMENT', 'BREAK', name='slot_kind')
slot_payment_mode = sa.Enum('FREE', 'ONLINE', 'OFFLINE', name='slot_payment_mode')
slot_status = sa.Enum('PENDING', 'PENDING_PAYMENT', 'CONFIRMED', name='slot_status')
appointment_status = sa.Enum(
    'PENDING', 'PENDING_PAYMENT', 'CONFIRMED', 'CANCELLED', 'COMPLETED', 'NO_SHOW',
    name='appointment_status',
)
payment_status = postgresql.ENUM('NOT_REQUIRED', 'PENDING', 'PAID', 'FAILED', name='payment_status', create_type=False)
subscription_status = sa.Enum('ACTIVE', 'TRIAL', 'EXPIRED', 'CANCELLED', name='subscription_status')
notification_type = sa.Enum('BOOKING', 'PAYMENT', 'CANCELLATION', 'RESCHEDULE', name='clinic_notification_type')


def upgrade() -> None:
    payment_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'clinics',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'doctors',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_doctors_clinic_id', 'doctors', ['clinic_id'])

    op.create_table(
        'users',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'plans',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False, unique=True),
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('max_bookings_per_month', sa.Integer(), nullable=True),
        sa.Column('allow_online_payments', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_plans_id', 'plans', ['id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False, unique=True),
        sa.Column('plan_id', UUID, sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('status', subscription_status, nullable=False, server_default='ACTIVE'),
        sa.Column('start_date', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'payment_gateways',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('secret', sa.String(), nullable=True),
        sa.Column('webhook_secret', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.UniqueConstraint('clinic_id', 'name', name='uq_payment_gateways_clinic_name'),
    )
    op.create_index('ix_payment_gateways_clinic_id', 'payment_gateways', ['clinic_id'])

    op.create_table(
        'slots',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False),
        sa.Column('doctor_id', UUID, sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('time', sa.Time(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('kind', slot_kind, nullable=False, server_default='APPOINTMENT'),
        sa.Column('payment_mode', slot_payment_mode, nullable=False, server_default='ONLINE'),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('status', slot_status, nullable=False, server_default='PENDING'),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('doctor_id', 'date', 'time', name='uq_slots_doctor_date_time'),
    )
    op.create_index('ix_slots_clinic_id', 'slots', ['clinic_id'])
    op.create_index('ix_slots_doctor_id', 'slots', ['doctor_id'])
    op.create_index('ix_slots_date', 'slots', ['date'])

    op.create_table(
        'appointments',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('slot_id', UUID, sa.ForeignKey('slots.id'), nullable=False),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False),
        sa.Column('doctor_id', UUID, sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('status', appointment_status, nullable=False, server_default='PENDING'),
        sa.Column('payment_status', payment_status, nullable=False, server_default='PENDING'),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('provider', sa.String(), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('payment_id', sa.String(), nullable=True),
        sa.Column('payment_expiry', sa.DateTime(), nullable=True),
        sa.Column('pending_slot_id', UUID, sa.ForeignKey('slots.id'), nullable=True),
        sa.Column('reschedule_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('reschedule_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_appointments_user_id', 'appointments', ['user_id'])
    op.create_index('ix_appointments_clinic_id', 'appointments', ['clinic_id'])
    op.create_index('ix_appointments_doctor_id', 'appointments', ['doctor_id'])
    op.create_index('ix_appointments_order_id', 'appointments', ['order_id'])
    op.create_index('ix_appointments_pending_slot_id', 'appointments', ['pending_slot_id'])
    op.create_index('ix_appointments_slot_status', 'appointments', ['slot_id', 'status'])
    # One live confirmation per slot
    op.create_index(
        'uq_appointments_slot_confirmed',
        'appointments',
        ['slot_id'],
        unique=True,
        postgresql_where=sa.text("status = 'CONFIRMED' AND deleted_at IS NULL"),
    )

    op.create_table(
        'payments',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('appointment_id', UUID, sa.ForeignKey('appointments.id'), nullable=False),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id'), nullable=False),
        sa.Column('doctor_id', UUID, sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('gateway_id', UUID, sa.ForeignKey('payment_gateways.id'), nullable=True),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', payment_status, nullable=False, server_default='PAID'),
        sa.Column('gateway_ref_id', sa.String(), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_payments_appointment_id', 'payments', ['appointment_id'])
    op.create_index('ix_payments_clinic_id', 'payments', ['clinic_id'])

    op.create_table(
        'clinic_notifications',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('clinic_id', UUID, sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', notification_type, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('read_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_clinic_notifications_clinic_id', 'clinic_notifications', ['clinic_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', UUID, primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('entity', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('clinic_notifications')
    op.drop_table('payments')
    op.drop_index('uq_appointments_slot_confirmed', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('slots')
    op.drop_table('payment_gateways')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('users')
    op.drop_table('doctors')
    op.drop_table('clinics')
    for enum_name in (
        'clinic_notification_type', 'subscription_status', 'payment_status',
        'appointment_status', 'slot_status', 'slot_payment_mode', 'slot_kind',
    ):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
