"""email template library

Revision ID: 0003_email_templates
Revises: 0002_broadcasts
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = '0003_email_templates'
down_revision = '0002_broadcasts'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('email_templates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=False),
        sa.Column('html_content', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False, server_default='GENERIC'),
        sa.Column('variables', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_email_templates_is_active', 'email_templates', ['is_active'])

def downgrade():
    op.drop_index('ix_email_templates_is_active', table_name='email_templates')
    op.drop_table('email_templates')
