"""initial session pipeline schema

Revision ID: 202510010001
Revises:
Create Date: 2025-10-01 00:01:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '202510010001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('company',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('csv_url', sa.Text()),
        sa.Column('csv_username', sa.Text()),
        sa.Column('csv_password', sa.Text()),
        sa.Column('status', sa.String(32), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table('ai_model',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(128), nullable=False, unique=True),
        sa.Column('provider', sa.String(64), nullable=False, server_default='openai'),
        sa.Column('max_tokens', sa.Integer()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table('ai_model_pricing',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('ai_model_id', sa.String(36), sa.ForeignKey('ai_model.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_token_cost', sa.Float(), nullable=False),
        sa.Column('completion_token_cost', sa.Float(), nullable=False),
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_until', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_ai_model_pricing_window', 'ai_model_pricing', ['ai_model_id', 'effective_from'])

    op.create_table('company_ai_model',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('company_id', sa.String(36), sa.ForeignKey('company.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ai_model_id', sa.String(36), sa.ForeignKey('ai_model.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'ai_model_id', name='uq_company_ai_model'),
    )

    op.create_table('session_import',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('company_id', sa.String(36), sa.ForeignKey('company.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_session_id', sa.Text(), nullable=False),
        sa.Column('start_time_raw', sa.Text(), nullable=False),
        sa.Column('end_time_raw', sa.Text(), nullable=False),
        sa.Column('ip_address', sa.Text()),
        sa.Column('country_code', sa.String(8)),
        sa.Column('full_transcript_url', sa.Text()),
        sa.Column('avg_response_time_seconds', sa.Float()),
        sa.Column('initial_message', sa.Text()),
        sa.Column('raw_transcript_content', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'external_session_id', name='uq_import_company_external'),
    )

    op.create_table('session',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('company_id', sa.String(36), sa.ForeignKey('company.id', ondelete='CASCADE'), nullable=False),
        sa.Column('import_id', sa.String(36), sa.ForeignKey('session_import.id', ondelete='SET NULL'), unique=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('ip_address', sa.Text()),
        sa.Column('country', sa.String(8)),
        sa.Column('full_transcript_url', sa.Text()),
        sa.Column('avg_response_time', sa.Float()),
        sa.Column('initial_msg', sa.Text()),
        sa.Column('language', sa.String(8)),
        sa.Column('messages_sent', sa.Integer()),
        sa.Column('sentiment', sa.String(32)),
        sa.Column('escalated', sa.Boolean()),
        sa.Column('forwarded_hr', sa.Boolean()),
        sa.Column('category', sa.String(32)),
        sa.Column('summary', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_session_created_at', 'session', ['created_at'])

    op.create_table('message',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('timestamp', sa.DateTime()),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('session_id', 'order', name='uq_message_session_order'),
    )

    op.create_table('session_processing_status',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stage', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='PENDING'),
        sa.Column('started_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('error_message', sa.Text()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', sa.JSON()),
        sa.UniqueConstraint('session_id', 'stage', name='uq_processing_status_session_stage'),
    )
    op.create_index('idx_processing_status_stage_status', 'session_processing_status', ['stage', 'status'])

    op.create_table('ai_processing_request',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('openai_request_id', sa.Text()),
        sa.Column('model', sa.String(128), nullable=False),
        sa.Column('system_fingerprint', sa.Text()),
        sa.Column('prompt_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completion_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cached_tokens', sa.Integer()),
        sa.Column('audio_tokens_prompt', sa.Integer()),
        sa.Column('reasoning_tokens', sa.Integer()),
        sa.Column('audio_tokens_completion', sa.Integer()),
        sa.Column('prompt_token_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('completion_token_cost', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_cost_eur', sa.Float(), nullable=False, server_default='0'),
        sa.Column('processing_type', sa.String(64), nullable=False, server_default='session_analysis'),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text()),
        sa.Column('requested_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime()),
    )
    op.create_index('ix_ai_processing_request_session_id', 'ai_processing_request', ['session_id'])
    op.create_index('ix_ai_processing_request_requested_at', 'ai_processing_request', ['requested_at'])

    op.create_table('question',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('content', sa.Text(), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table('session_question',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('question_id', sa.String(36), sa.ForeignKey('question.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('session_id', 'order', name='uq_session_question_order'),
        sa.UniqueConstraint('session_id', 'question_id', name='uq_session_question_question'),
    )


def downgrade() -> None:
    op.drop_table('session_question')
    op.drop_table('question')
    op.drop_index('ix_ai_processing_request_requested_at', table_name='ai_processing_request')
    op.drop_index('ix_ai_processing_request_session_id', table_name='ai_processing_request')
    op.drop_table('ai_processing_request')
    op.drop_index('idx_processing_status_stage_status', table_name='session_processing_status')
    op.drop_table('session_processing_status')
    op.drop_table('message')
    op.drop_index('ix_session_created_at', table_name='session')
    op.drop_table('session')
    op.drop_table('session_import')
    op.drop_table('company_ai_model')
    op.drop_index('idx_ai_model_pricing_window', table_name='ai_model_pricing')
    op.drop_table('ai_model_pricing')
    op.drop_table('ai_model')
    op.drop_table('company')
