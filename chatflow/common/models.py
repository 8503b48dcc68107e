"""
SQLAlchemy Database Models

This module defines the database schema for the chatflow session
processing pipeline. It includes models for companies and their AI model
configuration, raw session imports, normalized chat sessions and messages,
per-stage processing status, AI request accounting and extracted questions.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Index,
    Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from chatflow.common.db import Base


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the schema stores naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ProcessingStage(str, enum.Enum):
    """The five fixed pipeline stages, in required completion order."""
    CSV_IMPORT = "CSV_IMPORT"
    TRANSCRIPT_FETCH = "TRANSCRIPT_FETCH"
    SESSION_CREATION = "SESSION_CREATION"
    AI_ANALYSIS = "AI_ANALYSIS"
    QUESTION_EXTRACTION = "QUESTION_EXTRACTION"


STAGE_ORDER = [
    ProcessingStage.CSV_IMPORT,
    ProcessingStage.TRANSCRIPT_FETCH,
    ProcessingStage.SESSION_CREATION,
    ProcessingStage.AI_ANALYSIS,
    ProcessingStage.QUESTION_EXTRACTION,
]


class ProcessingStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class CompanyStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class SentimentCategory(str, enum.Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


class SessionCategory(str, enum.Enum):
    SCHEDULE_HOURS = "SCHEDULE_HOURS"
    LEAVE_VACATION = "LEAVE_VACATION"
    SICK_LEAVE_RECOVERY = "SICK_LEAVE_RECOVERY"
    SALARY_COMPENSATION = "SALARY_COMPENSATION"
    CONTRACT_HOURS = "CONTRACT_HOURS"
    ONBOARDING = "ONBOARDING"
    OFFBOARDING = "OFFBOARDING"
    WORKWEAR_STAFF_PASS = "WORKWEAR_STAFF_PASS"
    TEAM_CONTACTS = "TEAM_CONTACTS"
    PERSONAL_QUESTIONS = "PERSONAL_QUESTIONS"
    ACCESS_LOGIN = "ACCESS_LOGIN"
    SOCIAL_QUESTIONS = "SOCIAL_QUESTIONS"
    UNRECOGNIZED_OTHER = "UNRECOGNIZED_OTHER"


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, native_enum=False, length=32)


class Company(Base):
    """
    Represents a customer company.

    Owns imports and sessions, and stores the credentials used to fetch
    transcripts from the company's chat provider.
    """
    __tablename__ = 'company'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(Text, nullable=False)

    # Transcript source credentials
    csv_url = Column(Text)
    csv_username = Column(Text)
    csv_password = Column(Text)

    status = Column(
        _enum(CompanyStatus, 'company_status'),
        nullable=False,
        default=CompanyStatus.ACTIVE,
        comment='Only ACTIVE companies are picked up by the pipeline'
    )

    # Audit fields
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    sessions = relationship('ChatSession', back_populates='company')
    ai_models = relationship('CompanyAIModel', back_populates='company')


class AIModel(Base):
    """An inference model the pipeline may call."""
    __tablename__ = 'ai_model'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), unique=True, nullable=False)
    provider = Column(String(64), nullable=False, default='openai')
    max_tokens = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    pricing = relationship('AIModelPricing', back_populates='ai_model')


class AIModelPricing(Base):
    """
    Per-token prices for a model, valid within an effective-date window.

    Prices are stored in USD per token.
    """
    __tablename__ = 'ai_model_pricing'

    id = Column(String(36), primary_key=True, default=new_id)
    ai_model_id = Column(
        String(36),
        ForeignKey('ai_model.id', ondelete='CASCADE'),
        nullable=False
    )
    prompt_token_cost = Column(Float, nullable=False)
    completion_token_cost = Column(Float, nullable=False)
    effective_from = Column(DateTime, nullable=False)
    effective_until = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)

    ai_model = relationship('AIModel', back_populates='pricing')

    __table_args__ = (
        Index('idx_ai_model_pricing_window', 'ai_model_id', 'effective_from'),
    )


class CompanyAIModel(Base):
    """Assignment of a model to a company; at most one should be the default."""
    __tablename__ = 'company_ai_model'

    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(
        String(36),
        ForeignKey('company.id', ondelete='CASCADE'),
        nullable=False
    )
    ai_model_id = Column(
        String(36),
        ForeignKey('ai_model.id', ondelete='CASCADE'),
        nullable=False
    )
    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)

    company = relationship('Company', back_populates='ai_models')
    ai_model = relationship('AIModel')

    __table_args__ = (
        UniqueConstraint('company_id', 'ai_model_id', name='uq_company_ai_model'),
    )


class SessionImport(Base):
    """
    A raw import row describing one external chat session.

    Values are kept exactly as they arrived; normalization happens when
    the import is turned into a ChatSession.
    """
    __tablename__ = 'session_import'

    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(
        String(36),
        ForeignKey('company.id', ondelete='CASCADE'),
        nullable=False
    )
    external_session_id = Column(Text, nullable=False)

    # Raw values as exported
    start_time_raw = Column(Text, nullable=False, comment='DD.MM.YYYY HH:mm:ss')
    end_time_raw = Column(Text, nullable=False, comment='DD.MM.YYYY HH:mm:ss')
    ip_address = Column(Text)
    country_code = Column(String(8))
    full_transcript_url = Column(Text)
    avg_response_time_seconds = Column(Float)
    initial_message = Column(Text)

    # Filled in by the transcript fetch stage
    raw_transcript_content = Column(Text)

    created_at = Column(DateTime, default=utcnow)

    company = relationship('Company')
    session = relationship('ChatSession', uselist=False, back_populates='import_record')

    __table_args__ = (
        UniqueConstraint('company_id', 'external_session_id', name='uq_import_company_external'),
    )


class ChatSession(Base):
    """
    One normalized conversation.

    Created from a SessionImport, then enriched with AI-derived metadata.
    The pipeline never deletes sessions.
    """
    __tablename__ = 'session'

    id = Column(String(36), primary_key=True, default=new_id)
    company_id = Column(
        String(36),
        ForeignKey('company.id', ondelete='CASCADE'),
        nullable=False
    )
    import_id = Column(
        String(36),
        ForeignKey('session_import.id', ondelete='SET NULL'),
        unique=True
    )

    # Copied from the import
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    ip_address = Column(Text)
    country = Column(String(8))
    full_transcript_url = Column(Text)
    avg_response_time = Column(Float)
    initial_msg = Column(Text)

    # Enrichment fields
    language = Column(String(8))
    messages_sent = Column(Integer)
    sentiment = Column(_enum(SentimentCategory, 'sentiment_category'))
    escalated = Column(Boolean)
    forwarded_hr = Column(Boolean)
    category = Column(_enum(SessionCategory, 'session_category'))
    summary = Column(Text)

    # Audit fields
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    company = relationship('Company', back_populates='sessions')
    import_record = relationship('SessionImport', back_populates='session')
    messages = relationship(
        'Message',
        back_populates='session',
        order_by='Message.order'
    )
    processing_statuses = relationship('SessionProcessingStatus', back_populates='session')
    session_questions = relationship(
        'SessionQuestion',
        back_populates='session',
        order_by='SessionQuestion.order'
    )


class Message(Base):
    """
    One transcript line of a session.

    Ordered by `order`, never by timestamp: timestamps may be missing
    or duplicated.
    """
    __tablename__ = 'message'

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey('session.id', ondelete='CASCADE'),
        nullable=False
    )
    timestamp = Column(DateTime)
    role = Column(String(16), nullable=False, comment='user, assistant, system or unknown')
    content = Column(Text, nullable=False)
    order = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    session = relationship('ChatSession', back_populates='messages')

    __table_args__ = (
        UniqueConstraint('session_id', 'order', name='uq_message_session_order'),
    )


class SessionProcessingStatus(Base):
    """
    Status of one pipeline stage for one session.

    Exactly one row exists per (session_id, stage); it is the single
    source of truth for pipeline progress.
    """
    __tablename__ = 'session_processing_status'

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey('session.id', ondelete='CASCADE'),
        nullable=False
    )
    stage = Column(_enum(ProcessingStage, 'processing_stage'), nullable=False)
    status = Column(
        _enum(ProcessingStatus, 'processing_status'),
        nullable=False,
        default=ProcessingStatus.PENDING
    )

    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    stage_metadata = Column(
        'metadata',
        JSON,
        comment='Flat map of small diagnostic values'
    )

    session = relationship('ChatSession', back_populates='processing_statuses')

    __table_args__ = (
        UniqueConstraint('session_id', 'stage', name='uq_processing_status_session_stage'),
        Index('idx_processing_status_stage_status', 'stage', 'status'),
    )


class AIProcessingRequest(Base):
    """
    Audit row for one inference call attempt.

    Append-only: a retried stage appends a new row.
    """
    __tablename__ = 'ai_processing_request'

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey('session.id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )

    # Provider identity
    openai_request_id = Column(Text)
    model = Column(String(128), nullable=False)
    system_fingerprint = Column(Text)

    # Token usage
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cached_tokens = Column(Integer)
    audio_tokens_prompt = Column(Integer)
    reasoning_tokens = Column(Integer)
    audio_tokens_completion = Column(Integer)

    # Cost in EUR
    prompt_token_cost = Column(Float, nullable=False, default=0.0)
    completion_token_cost = Column(Float, nullable=False, default=0.0)
    total_cost_eur = Column(Float, nullable=False, default=0.0)

    processing_type = Column(String(64), nullable=False, default='session_analysis')
    success = Column(Boolean, nullable=False)
    error_message = Column(Text)

    requested_at = Column(DateTime, default=utcnow, index=True)
    completed_at = Column(DateTime)


class Question(Base):
    """Globally deduplicated question text."""
    __tablename__ = 'question'

    id = Column(String(36), primary_key=True, default=new_id)
    content = Column(Text, unique=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)


class SessionQuestion(Base):
    """Ordered link between a session and the questions extracted from it."""
    __tablename__ = 'session_question'

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey('session.id', ondelete='CASCADE'),
        nullable=False
    )
    question_id = Column(
        String(36),
        ForeignKey('question.id', ondelete='CASCADE'),
        nullable=False
    )
    order = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    session = relationship('ChatSession', back_populates='session_questions')
    question = relationship('Question')

    __table_args__ = (
        UniqueConstraint('session_id', 'order', name='uq_session_question_order'),
        UniqueConstraint('session_id', 'question_id', name='uq_session_question_question'),
    )
