"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatflow.common.db import dispose_engine
from chatflow.common.init_db import create_tables
from chatflow.common.models import (
    ChatSession, Company, CompanyStatus, Message, SessionImport
)
from chatflow.services.status_manager import ProcessingStatusManager


@pytest.fixture
def engine():
    """In-memory SQLite database with the full schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    dispose_engine()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def status_manager(session_factory):
    return ProcessingStatusManager(session_factory)


@pytest.fixture
def make_company(session_factory):
    def _make(name="Acme", status=CompanyStatus.ACTIVE, username=None, password=None):
        with session_factory() as db:
            company = Company(name=name, status=status, csv_username=username, csv_password=password)
            db.add(company)
            db.commit()
            return company
    return _make


@pytest.fixture
def make_import(session_factory):
    counter = {"n": 0}

    def _make(company, url=None, content=None, start="01.02.2025 10:00:00", end="01.02.2025 10:15:00"):
        counter["n"] += 1
        with session_factory() as db:
            record = SessionImport(
                company_id=company.id,
                external_session_id=f"ext-{counter['n']}",
                start_time_raw=start,
                end_time_raw=end,
                ip_address="10.0.0.1",
                country_code="NL",
                full_transcript_url=url,
                avg_response_time_seconds=2.5,
                initial_message="Hello",
                raw_transcript_content=content,
                created_at=datetime(2025, 1, 1) + timedelta(seconds=counter["n"]),
            )
            db.add(record)
            db.commit()
            return record
    return _make


@pytest.fixture
def make_session(session_factory):
    counter = {"n": 0}

    def _make(company, messages=()):
        """Create a session; `messages` is a sequence of (role, content, timestamp)."""
        counter["n"] += 1
        with session_factory() as db:
            chat_session = ChatSession(
                company_id=company.id,
                start_time=datetime(2025, 2, 1, 10, 0, 0),
                end_time=datetime(2025, 2, 1, 10, 15, 0),
                created_at=datetime(2025, 1, 1) + timedelta(seconds=counter["n"]),
            )
            db.add(chat_session)
            db.flush()
            for order, (role, content, timestamp) in enumerate(messages):
                db.add(Message(
                    session_id=chat_session.id,
                    role=role,
                    content=content,
                    timestamp=timestamp,
                    order=order,
                ))
            db.commit()
            return chat_session
    return _make
