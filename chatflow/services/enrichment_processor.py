"""
AI Enrichment Processor

Runs the AI_ANALYSIS and QUESTION_EXTRACTION stages for a session:

1. Render the session's ordered messages into a flat transcript
2. Ask the company's configured model for a structured analysis
3. Validate the result strictly (no partial persistence of bad output)
4. Record the call with token usage and EUR cost in AIProcessingRequest
5. Store the enrichment fields on the session
6. Rebuild the session's links into the shared question pool

Failures are recorded on whichever stage was running and returned as an
unsuccessful ProcessingResult.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, StrictBool, StringConstraints, ValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from chatflow.common.config import settings
from chatflow.common.db import get_session
from chatflow.common.errors import EnrichmentValidationError, PipelineError, QuestionExtractionError
from chatflow.common.models import (
    AIModel, AIModelPricing, AIProcessingRequest, ChatSession, CompanyAIModel,
    Message, ProcessingStage, Question, SentimentCategory, SessionCategory,
    SessionQuestion, utcnow
)
from .import_processor import ProcessingResult
from .inference_client import InferenceClient, InferenceResponse
from .status_manager import ProcessingStatusManager

logger = logging.getLogger("enrichment_processor")

NO_MESSAGES_REASON = "Session has no messages"
INVALID_DATA_SUMMARY = "No user messages found - marked as invalid data"
USER_ROLES = ("user", "human")
PROCESSING_TYPE = "session_analysis"

# Pricing rows are in USD per token; costs are stored in EUR
USD_TO_EUR = 0.92
DEFAULT_PROMPT_TOKEN_COST = 0.0000025      # gpt-4o, $2.50 per 1M tokens
DEFAULT_COMPLETION_TOKEN_COST = 0.00001    # gpt-4o, $10.00 per 1M tokens

SYSTEM_PROMPT = f"""You are a JSON-generating assistant. Analyze the raw chat transcript
between a user and an assistant and return a single valid JSON object, with no
markdown, code fences or commentary, containing exactly these fields:

- "language": ISO 639-1 code of the user's primary language, two lowercase letters (e.g. "en", "nl")
- "sentiment": overall tone of the user, one of {", ".join(s.value for s in SentimentCategory)}
- "escalated": boolean, true if the assistant connected or referred the user to a human agent
- "forwarded_hr": boolean, true if HR contact information was given
- "category": best-fitting topic, one of {", ".join(c.value for c in SessionCategory)}
- "questions": array of at most 5 questions asked by the user, paraphrased in English
- "summary": brief summary of the conversation, between 10 and 300 characters
"""


class SessionAnalysis(BaseModel):
    """Structured result expected from the model."""

    model_config = ConfigDict(extra="ignore")

    language: Annotated[str, StringConstraints(strict=True, pattern=r"^[a-z]{2}$")]
    sentiment: SentimentCategory
    escalated: StrictBool
    forwarded_hr: StrictBool
    category: SessionCategory
    questions: List[Annotated[str, StringConstraints(strict=True)]]
    summary: Annotated[str, StringConstraints(strict=True, min_length=10, max_length=300)]


def parse_analysis(content: str) -> SessionAnalysis:
    """
    Validate the model's JSON answer.

    Raises:
        EnrichmentValidationError: If the content is not valid JSON or any
            field violates the schema
    """
    try:
        return SessionAnalysis.model_validate_json(content)
    except ValidationError as ex:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'response'}: {err['msg']}"
            for err in ex.errors()
        )
        raise EnrichmentValidationError(f"Invalid analysis result: {problems}") from ex


@dataclass
class MessageView:
    role: str
    content: str
    timestamp: Optional[datetime]
    created_at: Optional[datetime]


@dataclass
class SessionSnapshot:
    id: str
    company_id: str
    end_time: datetime
    messages: List[MessageView]


@dataclass
class TokenPricing:
    prompt_token_cost: float
    completion_token_cost: float


def render_transcript(messages: List[MessageView]) -> str:
    """One "[DD/MM/YYYY HH:MM:SS] role: content" line per message."""
    lines = []
    for msg in messages:
        moment = msg.timestamp or msg.created_at
        stamp = moment.strftime("%d/%m/%Y %H:%M:%S") if moment else ""
        lines.append(f"[{stamp}] {msg.role}: {msg.content}")
    return "\n".join(lines)


def calculate_cost(response: InferenceResponse, pricing: TokenPricing) -> Tuple[float, float, float]:
    """Return (prompt, completion, total) cost in EUR."""
    prompt_cost = response.usage.prompt_tokens * pricing.prompt_token_cost * USD_TO_EUR
    completion_cost = response.usage.completion_tokens * pricing.completion_token_cost * USD_TO_EUR
    return prompt_cost, completion_cost, prompt_cost + completion_cost


def clean_questions(questions: List[str]) -> List[str]:
    """Trim, drop blanks and collapse repeats, keeping the model's order."""
    cleaned = []
    for question in questions:
        text = question.strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


class EnrichmentProcessor:
    """Processes sessions through AI_ANALYSIS and QUESTION_EXTRACTION."""

    def __init__(
        self,
        status_manager: Optional[ProcessingStatusManager] = None,
        inference_client: Optional[InferenceClient] = None,
        session_factory: Callable = get_session
    ):
        self._session_factory = session_factory
        self.status = status_manager or ProcessingStatusManager(session_factory)
        self.inference = inference_client or InferenceClient()

    async def process_session(self, session_id: str) -> ProcessingResult:
        """
        Enrich one session.

        Args:
            session_id: Session to analyze

        Returns:
            ProcessingResult: success flag and error text for this session
        """
        stage = ProcessingStage.AI_ANALYSIS

        snapshot = self._load_session(session_id)
        if snapshot is None:
            return ProcessingResult(session_id, False, f"Session {session_id} not found")

        if not snapshot.messages:
            # Hard failure on both stages; a later transcript fetch requeues them
            self.status.fail_stage(session_id, ProcessingStage.AI_ANALYSIS, NO_MESSAGES_REASON)
            self.status.fail_stage(session_id, ProcessingStage.QUESTION_EXTRACTION, NO_MESSAGES_REASON)
            logger.warning(f"session={session_id} has no messages, failing enrichment")
            return ProcessingResult(session_id, False, NO_MESSAGES_REASON)

        if not any(m.role.lower() in USER_ROLES for m in snapshot.messages):
            self._mark_invalid_data(snapshot)
            return ProcessingResult(session_id, True)

        try:
            self.status.start_stage(session_id, stage)

            transcript = render_transcript(snapshot.messages)
            model = self.resolve_model(snapshot.company_id)
            analysis = await self._analyze(session_id, model, transcript)

            self._persist_analysis(snapshot, analysis)
            self.status.complete_stage(session_id, stage, {
                "language": analysis.language,
                "sentiment": analysis.sentiment.value,
                "category": analysis.category.value,
                "questionCount": len(analysis.questions),
            })

            stage = ProcessingStage.QUESTION_EXTRACTION
            self.status.start_stage(session_id, stage)
            question_count = self._store_questions(session_id, analysis.questions)
            self.status.complete_stage(session_id, stage, {"questionCount": question_count})

            logger.info(
                f"session={session_id} enriched model={model} "
                f"sentiment={analysis.sentiment.value} questions={question_count}"
            )
            return ProcessingResult(session_id, True)

        except Exception as ex:
            error_message = str(ex)
            self.status.fail_stage(session_id, stage, error_message)
            logger.warning(f"session={session_id} {stage.value} failed: {error_message}")
            return ProcessingResult(session_id, False, error_message)

    def _mark_invalid_data(self, snapshot: SessionSnapshot) -> None:
        """Close both stages without a model call for sessions with no user input."""
        with self._session_factory() as db:
            chat_session = db.get(ChatSession, snapshot.id)
            if chat_session is None:
                raise PipelineError(f"Session {snapshot.id} disappeared during analysis")
            chat_session.summary = INVALID_DATA_SUMMARY
            chat_session.messages_sent = 0
            db.commit()

        metadata = {"invalidData": True, "messageCount": len(snapshot.messages)}
        self.status.complete_stage(snapshot.id, ProcessingStage.AI_ANALYSIS, metadata)
        self.status.complete_stage(snapshot.id, ProcessingStage.QUESTION_EXTRACTION, {
            "invalidData": True,
            "questionCount": 0,
        })
        logger.info(f"session={snapshot.id} has no user messages, marked as invalid data")

    def _load_session(self, session_id: str) -> Optional[SessionSnapshot]:
        with self._session_factory() as db:
            chat_session = db.get(ChatSession, session_id)
            if chat_session is None:
                return None
            messages = (
                db.query(Message)
                .filter(Message.session_id == session_id)
                .order_by(Message.order.asc())
                .all()
            )
            return SessionSnapshot(
                id=chat_session.id,
                company_id=chat_session.company_id,
                end_time=chat_session.end_time,
                messages=[
                    MessageView(m.role, m.content, m.timestamp, m.created_at)
                    for m in messages
                ],
            )

    def resolve_model(self, company_id: str) -> str:
        """The company's default active model, else the configured system default."""
        with self._session_factory() as db:
            row = (
                db.query(AIModel.name)
                .join(CompanyAIModel, CompanyAIModel.ai_model_id == AIModel.id)
                .filter(
                    CompanyAIModel.company_id == company_id,
                    CompanyAIModel.is_default.is_(True),
                    AIModel.is_active.is_(True),
                )
                .first()
            )
        return row[0] if row else settings.default_ai_model

    def get_current_pricing(self, model: str, now: Optional[datetime] = None) -> TokenPricing:
        """Pricing window covering `now` for a model, else the built-in default."""
        now = now or utcnow()
        with self._session_factory() as db:
            pricing = (
                db.query(AIModelPricing)
                .join(AIModel, AIModel.id == AIModelPricing.ai_model_id)
                .filter(
                    AIModel.name == model,
                    AIModelPricing.effective_from <= now,
                    or_(
                        AIModelPricing.effective_until.is_(None),
                        AIModelPricing.effective_until > now,
                    ),
                )
                .order_by(AIModelPricing.effective_from.desc())
                .first()
            )
        if pricing is None:
            logger.warning(f"No pricing found for model {model}, using default prices")
            return TokenPricing(DEFAULT_PROMPT_TOKEN_COST, DEFAULT_COMPLETION_TOKEN_COST)
        return TokenPricing(pricing.prompt_token_cost, pricing.completion_token_cost)

    async def _analyze(self, session_id: str, model: str, transcript: str) -> SessionAnalysis:
        """Call the model and validate its answer, recording the attempt either way."""
        requested_at = utcnow()
        try:
            response = await self.inference.complete(model, SYSTEM_PROMPT, transcript)
            analysis = parse_analysis(response.content)
        except Exception as ex:
            self._record_request(session_id, model, requested_at, error=str(ex))
            raise

        self._record_request(session_id, model, requested_at, response=response)
        return analysis

    def _record_request(
        self,
        session_id: str,
        model: str,
        requested_at: datetime,
        response: Optional[InferenceResponse] = None,
        error: Optional[str] = None
    ) -> None:
        """Append an AIProcessingRequest row; failures are stored with zero usage."""
        request = AIProcessingRequest(
            session_id=session_id,
            model=model,
            processing_type=PROCESSING_TYPE,
            requested_at=requested_at,
            completed_at=utcnow(),
        )

        if response is None:
            request.success = False
            request.error_message = error
            request.prompt_tokens = 0
            request.completion_tokens = 0
            request.total_tokens = 0
            request.prompt_token_cost = 0.0
            request.completion_token_cost = 0.0
            request.total_cost_eur = 0.0
        else:
            usage = response.usage
            prompt_cost, completion_cost, total_cost = calculate_cost(
                response, self.get_current_pricing(model)
            )
            request.success = True
            request.openai_request_id = response.request_id
            request.system_fingerprint = response.system_fingerprint
            request.prompt_tokens = usage.prompt_tokens
            request.completion_tokens = usage.completion_tokens
            request.total_tokens = usage.total_tokens
            request.cached_tokens = usage.cached_tokens
            request.audio_tokens_prompt = usage.audio_tokens_prompt
            request.reasoning_tokens = usage.reasoning_tokens
            request.audio_tokens_completion = usage.audio_tokens_completion
            request.prompt_token_cost = prompt_cost
            request.completion_token_cost = completion_cost
            request.total_cost_eur = total_cost

        with self._session_factory() as db:
            db.add(request)
            db.commit()

    def _persist_analysis(self, snapshot: SessionSnapshot, analysis: SessionAnalysis) -> None:
        """Write enrichment fields and recomputed counts onto the session."""
        messages_sent = sum(1 for m in snapshot.messages if m.role == "user")
        timestamps = [m.timestamp for m in snapshot.messages if m.timestamp is not None]

        with self._session_factory() as db:
            chat_session = db.get(ChatSession, snapshot.id)
            if chat_session is None:
                raise PipelineError(f"Session {snapshot.id} disappeared during analysis")

            chat_session.language = analysis.language
            chat_session.sentiment = analysis.sentiment
            chat_session.escalated = analysis.escalated
            chat_session.forwarded_hr = analysis.forwarded_hr
            chat_session.category = analysis.category
            chat_session.summary = analysis.summary
            chat_session.messages_sent = messages_sent
            if timestamps:
                chat_session.end_time = max(timestamps)
            db.commit()

    def _store_questions(self, session_id: str, questions: List[str]) -> int:
        """
        Upsert questions into the shared pool and rebuild this session's links.

        Returns:
            int: Number of questions linked to the session
        """
        texts = clean_questions(questions)
        question_ids = self._upsert_question_pool(texts)

        with self._session_factory() as db:
            db.query(SessionQuestion).filter(SessionQuestion.session_id == session_id).delete(
                synchronize_session=False
            )
            db.add_all([
                SessionQuestion(session_id=session_id, question_id=question_ids[text], order=order)
                for order, text in enumerate(texts)
            ])
            db.commit()

        return len(texts)

    def _upsert_question_pool(self, texts: List[str]) -> dict:
        """Insert missing questions, skipping ones that already exist; returns content -> id."""
        if not texts:
            return {}

        for attempt in range(2):
            with self._session_factory() as db:
                existing = {
                    q.content: q.id
                    for q in db.query(Question).filter(Question.content.in_(texts))
                }
                new_questions = [Question(content=text) for text in texts if text not in existing]
                db.add_all(new_questions)
                try:
                    db.commit()
                except IntegrityError:
                    # Another session inserted the same question concurrently
                    db.rollback()
                    if attempt == 1:
                        raise QuestionExtractionError("Could not store questions after a concurrent insert")
                    continue
                existing.update({q.content: q.id for q in new_questions})
                return existing
