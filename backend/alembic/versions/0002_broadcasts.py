"""broadcasts, audience snapshot, delivery tracking, inbox

Revision ID: 0002_broadcasts
Revises: 0001_initial
Create Date: 2026-09-30
"""
from alembic import op
import sqlalchemy as sa

revision = '0002_broadcasts'
down_revision = '0001_initial'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('type', sa.String(length=32), nullable=False, server_default='SYSTEM'),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='NORMAL'),
        sa.Column('banner_url', sa.Text()),
        sa.Column('cta_label', sa.String(length=120)),
        sa.Column('cta_url', sa.Text()),
        sa.Column('target', sa.String(length=32), nullable=False, server_default='ALL_USERS'),
        sa.Column('target_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('send_in_app', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('send_email', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('send_push', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('send_mode', sa.String(length=16), nullable=False, server_default='NOW'),
        sa.Column('scheduled_at', sa.DateTime()),
        sa.Column('expiry_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('expires_at', sa.DateTime()),
        sa.Column('email_subject', sa.String(length=255)),
        sa.Column('email_template', sa.Text()),
        sa.Column('total_targets', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('in_app_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('push_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('email_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('email_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='DRAFT'),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime()),
    )
    op.create_index('ix_notifications_status', 'notifications', ['status'])
    op.create_index('ix_notifications_expires_at', 'notifications', ['expires_at'])
    op.create_index('ix_notifications_due', 'notifications', ['status', 'scheduled_at'])

    op.create_table('broadcast_recipients',
        sa.Column('notification_id', sa.Integer(), sa.ForeignKey('notifications.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table('delivery_tracking',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('notification_id', sa.Integer(), sa.ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('queued_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime()),
        sa.Column('failed_at', sa.DateTime()),
        sa.Column('opened_at', sa.DateTime()),
        sa.Column('clicked_at', sa.DateTime()),
        sa.Column('error_message', sa.String(length=200)),
        sa.Column('email_address', sa.String(length=255)),
        sa.Column('device_token', sa.String(length=512)),
        sa.UniqueConstraint('notification_id', 'user_id', 'channel', name='uq_delivery_notification_user_channel'),
    )
    op.create_index('ix_delivery_tracking_notification_channel', 'delivery_tracking', ['notification_id', 'channel'])
    op.create_index('ix_delivery_tracking_user_id', 'delivery_tracking', ['user_id'])
    op.create_index('ix_delivery_tracking_queued_at', 'delivery_tracking', ['queued_at'])

    op.create_table('user_notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('notification_id', sa.Integer(), sa.ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('read_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'notification_id', name='uq_user_notification'),
    )
    op.create_index('ix_user_notifications_unread', 'user_notifications', ['user_id', 'is_read'])
    op.create_index('ix_user_notifications_notification_id', 'user_notifications', ['notification_id'])

def downgrade():
    op.drop_index('ix_user_notifications_notification_id', table_name='user_notifications')
    op.drop_index('ix_user_notifications_unread', table_name='user_notifications')
    op.drop_table('user_notifications')
    op.drop_index('ix_delivery_tracking_queued_at', table_name='delivery_tracking')
    op.drop_index('ix_delivery_tracking_user_id', table_name='delivery_tracking')
    op.drop_index('ix_delivery_tracking_notification_channel', table_name='delivery_tracking')
    op.drop_table('delivery_tracking')
    op.drop_table('broadcast_recipients')
    op.drop_index('ix_notifications_due', table_name='notifications')
    op.drop_index('ix_notifications_expires_at', table_name='notifications')
    op.drop_index('ix_notifications_status', table_name='notifications')
    op.drop_table('notifications')
