"""
Chat Provider Mock Service

Development stand-in for the two outbound integrations of the pipeline:

- Transcript download behind HTTP Basic auth
- OpenAI-compatible chat completions returning a structured analysis

Transcripts and analyses are derived from a hash of the request, so the
same session always yields the same conversation and the same answer.

Usage:
    uvicorn mock_source.main:app --port 8080
"""

import datetime
import hashlib
import json
import os
import secrets
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials


app = FastAPI(title="Chat Provider Mock API", version="1.0.0")
security = HTTPBasic()

MOCK_USERNAME = os.getenv("MOCK_USERNAME", "demo")
MOCK_PASSWORD = os.getenv("MOCK_PASSWORD", "demo")

TOPICS = [
    ("LEAVE_VACATION", "How many vacation days do I have left this year?"),
    ("SALARY_COMPENSATION", "When will my salary for this month be paid?"),
    ("PERSONAL_QUESTIONS", "Is my partner covered by the health insurance?"),
    ("ONBOARDING", "Where do I pick up my laptop on the first day?"),
    ("CONTRACT_HOURS", "Can I reduce my contract to 32 hours?"),
]
SENTIMENTS = ["POSITIVE", "NEUTRAL", "NEGATIVE"]

# Number of transcript downloads served, for the health endpoint
served_transcripts = 0


def _seed(value: str) -> int:
    return int(hashlib.md5(value.encode()).hexdigest(), 16)


def require_credentials(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """Reject requests that do not carry the configured Basic credentials."""
    user_ok = secrets.compare_digest(credentials.username.encode(), MOCK_USERNAME.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), MOCK_PASSWORD.encode())
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def generate_transcript(session_id: str) -> str:
    """
    Build a deterministic transcript for a session id.

    Lines use the "[DD.MM.YYYY HH:mm:ss] Role: text" layout the import
    processor parses.
    """
    seed = _seed(session_id)
    _, question = TOPICS[seed % len(TOPICS)]
    start = datetime.datetime(2025, 1, 1, 8, 0, 0) + datetime.timedelta(minutes=seed % (60 * 24 * 30))

    turns = [
        ("User", question),
        ("Assistant", "Let me look that up for you."),
        ("Assistant", "You can find the details in the employee portal under My Contract."),
        ("User", "Thanks, that helps!"),
    ]
    lines = []
    for offset, (role, text) in enumerate(turns):
        moment = start + datetime.timedelta(seconds=30 * offset)
        lines.append(f"[{moment.strftime('%d.%m.%Y %H:%M:%S')}] {role}: {text}")
    return "\n".join(lines)


def build_analysis(transcript: str) -> Dict[str, Any]:
    """Deterministic structured analysis for a rendered transcript."""
    seed = _seed(transcript)
    category, question = TOPICS[seed % len(TOPICS)]
    for candidate_category, candidate_question in TOPICS:
        if candidate_question in transcript:
            category, question = candidate_category, candidate_question
            break

    return {
        "language": "en",
        "sentiment": SENTIMENTS[seed % len(SENTIMENTS)],
        "escalated": False,
        "forwarded_hr": "HR" in transcript,
        "category": category,
        "questions": [question],
        "summary": f"User asked: {question}"[:300],
    }


@app.get("/transcripts/{session_id}", response_class=PlainTextResponse)
def get_transcript(session_id: str, username: str = Depends(require_credentials)):
    """Serve the transcript of a session as plain text."""
    global served_transcripts
    if session_id.startswith("missing"):
        raise HTTPException(status_code=404, detail="Transcript not found")
    served_transcripts += 1
    return PlainTextResponse(content=generate_transcript(session_id))


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    OpenAI-compatible completion endpoint.

    Reads the last user message as the transcript and answers with a JSON
    analysis in the first choice's message content.
    """
    if not request.headers.get("authorization", "").startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    body = await request.json()
    messages: List[Dict[str, Any]] = body.get("messages") or []
    transcript = next(
        (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
        ""
    )
    prompt_text = "".join(m.get("content", "") for m in messages)
    content = json.dumps(build_analysis(transcript))

    prompt_tokens = max(len(prompt_text) // 4, 1)
    completion_tokens = max(len(content) // 4, 1)

    return {
        "id": f"chatcmpl-mock-{_seed(transcript) % 10**12:012d}",
        "object": "chat.completion",
        "model": body.get("model", "gpt-4o"),
        "system_fingerprint": "fp_mock",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "prompt_tokens_details": {"cached_tokens": 0, "audio_tokens": 0},
            "completion_tokens_details": {"reasoning_tokens": 0, "audio_tokens": 0},
        },
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "served_transcripts": served_transcripts}
