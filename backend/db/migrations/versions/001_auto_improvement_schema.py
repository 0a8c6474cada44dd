"""Auto-improvement schema

Revision ID: 001_auto_improvement
Revises:
Create Date: 2024-06-03

Adds:
- ai_agents, ai_feedback, ai_performance_metrics, self_improvement_log,
  prompt_ab_tests when the hosted datastore does not have them yet
- ai_agents.version: optimistic concurrency token for prompt replacement
- ai_feedback.ab_test_id / ab_test_variant: experiment tagging
- improvement_reviews: proposals parked for human review
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from backend.db.models import GUID, JSONType

# revision identifiers, used by Alembic.
revision: str = '001_auto_improvement'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create or extend the improvement loop tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = inspector.get_table_names()

    # ==========================================================================
    # ai_agents
    # ==========================================================================
    if 'ai_agents' not in tables:
        op.create_table(
            'ai_agents',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('name', sa.String(100), nullable=False, unique=True),
            sa.Column('specialization', sa.String(255), nullable=True),
            sa.Column('system_prompt', sa.Text(), nullable=False),
            sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_ai_agents_name', 'ai_agents', ['name'])
        op.create_index('ix_ai_agents_active', 'ai_agents', ['active'])
    else:
        existing_columns = [c['name'] for c in inspector.get_columns('ai_agents')]
        if 'version' not in existing_columns:
            op.add_column('ai_agents', sa.Column(
                'version', sa.Integer(), nullable=False, server_default='1'
            ))

    # ==========================================================================
    # prompt_ab_tests
    # ==========================================================================
    if 'prompt_ab_tests' not in tables:
        op.create_table(
            'prompt_ab_tests',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('agent_id', GUID(), sa.ForeignKey('ai_agents.id'), nullable=False),
            sa.Column('test_name', sa.String(255), nullable=False),
            sa.Column('prompt_a', sa.Text(), nullable=False),
            sa.Column('prompt_b', sa.Text(), nullable=False),
            sa.Column('success_metric', sa.String(100), nullable=False, server_default='user_satisfaction'),
            sa.Column('traffic_split', sa.Float(), nullable=False, server_default='0.5'),
            sa.Column('status', sa.String(20), nullable=False, server_default='active'),
            sa.Column('winner', sa.String(1), nullable=True),
            sa.Column('confidence_level', sa.Float(), nullable=True),
            sa.Column('results', JSONType(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index('ix_prompt_ab_tests_agent_id', 'prompt_ab_tests', ['agent_id'])
        op.create_index('ix_prompt_ab_tests_status_agent', 'prompt_ab_tests', ['status', 'agent_id'])

    # ==========================================================================
    # ai_feedback
    # ==========================================================================
    if 'ai_feedback' not in tables:
        op.create_table(
            'ai_feedback',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('agent_id', GUID(), sa.ForeignKey('ai_agents.id'), nullable=False),
            sa.Column('user_id', sa.String(100), nullable=True),
            sa.Column('session_id', sa.String(100), nullable=True),
            sa.Column('feedback_type', sa.String(50), nullable=False, server_default='explicit'),
            sa.Column('user_feedback', JSONType(), nullable=False),
            sa.Column('prompt_used', sa.Text(), nullable=True),
            sa.Column('ai_response', sa.Text(), nullable=True),
            sa.Column('response_time_ms', sa.Integer(), nullable=True),
            sa.Column('tokens_used', sa.Integer(), nullable=True),
            sa.Column('ab_test_id', GUID(), sa.ForeignKey('prompt_ab_tests.id'), nullable=True),
            sa.Column('ab_test_variant', sa.String(1), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_ai_feedback_agent_id', 'ai_feedback', ['agent_id'])
        op.create_index('ix_ai_feedback_ab_test_id', 'ai_feedback', ['ab_test_id'])
        op.create_index('ix_ai_feedback_created_at', 'ai_feedback', ['created_at'])
    else:
        existing_columns = [c['name'] for c in inspector.get_columns('ai_feedback')]
        if 'ab_test_id' not in existing_columns:
            op.add_column('ai_feedback', sa.Column('ab_test_id', GUID(), nullable=True))
            op.create_index('ix_ai_feedback_ab_test_id', 'ai_feedback', ['ab_test_id'])
        if 'ab_test_variant' not in existing_columns:
            op.add_column('ai_feedback', sa.Column('ab_test_variant', sa.String(1), nullable=True))

    # ==========================================================================
    # ai_performance_metrics
    # ==========================================================================
    if 'ai_performance_metrics' not in tables:
        op.create_table(
            'ai_performance_metrics',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('agent_id', GUID(), sa.ForeignKey('ai_agents.id'), nullable=False),
            sa.Column('metric_date', sa.Date(), nullable=False),
            sa.Column('avg_rating', sa.Float(), nullable=True),
            sa.Column('avg_response_time_ms', sa.Float(), nullable=True),
            sa.Column('total_requests', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('successful_requests', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint('agent_id', 'metric_date', name='uq_performance_metric_agent_day'),
        )
        op.create_index('ix_ai_performance_metrics_metric_date', 'ai_performance_metrics', ['metric_date'])

    # ==========================================================================
    # self_improvement_log
    # ==========================================================================
    if 'self_improvement_log' not in tables:
        op.create_table(
            'self_improvement_log',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('agent_id', GUID(), sa.ForeignKey('ai_agents.id'), nullable=False),
            sa.Column('improvement_type', sa.String(50), nullable=False),
            sa.Column('before_state', JSONType(), nullable=False),
            sa.Column('after_state', JSONType(), nullable=False),
            sa.Column('improvement_reason', sa.Text(), nullable=True),
            sa.Column('success_metrics', JSONType(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_self_improvement_log_agent_id', 'self_improvement_log', ['agent_id'])

    # ==========================================================================
    # improvement_reviews
    # ==========================================================================
    if 'improvement_reviews' not in tables:
        op.create_table(
            'improvement_reviews',
            sa.Column('id', GUID(), primary_key=True),
            sa.Column('agent_id', GUID(), sa.ForeignKey('ai_agents.id'), nullable=False),
            sa.Column('source', sa.String(20), nullable=False),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending_review'),
            sa.Column('confidence', sa.Float(), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('proposal', JSONType(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_improvement_reviews_agent_id', 'improvement_reviews', ['agent_id'])
        op.create_index('ix_improvement_reviews_status', 'improvement_reviews', ['status'])


def downgrade() -> None:
    """Drop the tables and columns owned by the improvement loop."""
    op.drop_table('improvement_reviews')
    op.drop_index('ix_ai_feedback_ab_test_id', table_name='ai_feedback')
    op.drop_column('ai_feedback', 'ab_test_variant')
    op.drop_column('ai_feedback', 'ab_test_id')
    op.drop_column('ai_agents', 'version')
