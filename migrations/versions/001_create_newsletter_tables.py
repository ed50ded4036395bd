"""Create newsletter, subscription, idempotency and delivery tables

Revision ID: 001_create_newsletter_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_newsletter_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('subscriptions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('name', sa.String(256), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('subscription_token', sa.String(64), nullable=False),
        sa.Column('subscribed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('subscription_token'),
    )
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    op.create_table('newsletter_issues',
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('text_content', sa.Text(), nullable=False),
        sa.Column('html_content', sa.Text(), nullable=False),
        sa.Column('published_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('newsletter_issue_id'),
    )

    # Admission relies on this primary key for mutual exclusion
    op.create_table('idempotency',
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('response_status_code', sa.SmallInteger(), nullable=True),
        sa.Column('response_headers', sa.JSON(), nullable=True),
        sa.Column('response_body', sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint('account_id', 'idempotency_key'),
    )
    op.create_index('idx_idempotency_created_at', 'idempotency', ['created_at'])

    op.create_table('issue_delivery_queue',
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False),
        sa.Column('subscriber_email', sa.String(320), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('execute_after', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['newsletter_issue_id'], ['newsletter_issues.newsletter_issue_id']),
        sa.PrimaryKeyConstraint('newsletter_issue_id', 'subscriber_email'),
    )
    op.create_index('idx_issue_delivery_queue_execute_after', 'issue_delivery_queue', ['execute_after'])

    op.create_table('issue_delivery_failures',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False),
        sa.Column('subscriber_email', sa.String(320), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('failed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['newsletter_issue_id'], ['newsletter_issues.newsletter_issue_id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_issue_delivery_failures_newsletter_issue_id',
        'issue_delivery_failures',
        ['newsletter_issue_id'],
    )


def downgrade():
    op.drop_index('ix_issue_delivery_failures_newsletter_issue_id', table_name='issue_delivery_failures')
    op.drop_table('issue_delivery_failures')
    op.drop_index('idx_issue_delivery_queue_execute_after', table_name='issue_delivery_queue')
    op.drop_table('issue_delivery_queue')
    op.drop_index('idx_idempotency_created_at', table_name='idempotency')
    op.drop_table('idempotency')
    op.drop_table('newsletter_issues')
    op.drop_index('idx_subscriptions_status', table_name='subscriptions')
    op.drop_table('subscriptions')
