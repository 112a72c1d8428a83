"""Thread priority scoring: one LLM call returning JSON, normalized; keyword heuristic fallback."""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ..config import settings

logger = logging.getLogger(__name__)

ACTION_TYPES = ("reply", "schedule", "task", "wait", "archive", "label")
MAX_PROMPT_CHARS = 25_000

SYSTEM_PROMPT = """You are an email triage assistant. Your job is to assign a single priority score and a short reason.
OUTPUT STRICT JSON with keys: priority_score, priority_reason, suggested_action_type, extracted.
- priority_score: number from 0-100 (100 = most urgent/important).
- priority_reason: 1-2 sentences, plain text, explain the urgency.
- suggested_action_type: one of reply | schedule | task | wait | archive | label.
- extracted: optional object with arrays: deadlines, asks, people.
Rules:
- Treat security alerts, account lock risk, payment issues, legal/contract deadlines, and time-sensitive requests as high priority.
- Marketing/newsletters/announcements without action should be low priority (0-20) and usually archive or label.
- If there is a clear ask or decision needed, prefer reply.
- If there is a time-bound meeting request, prefer schedule.
- If it requires future follow-up with no immediate response, prefer task.
- If no action is needed, prefer wait or archive.
Return ONLY JSON."""

PRIORITY_PATTERNS = {
    "urgent": re.compile(
        r"\b(urgent|asap|immediately|time[-\s]?sensitive|deadline|final notice|action required|response required|"
        r"reply needed|respond by|past due|overdue|expir(?:e|es|ing))\b",
        re.I,
    ),
    "security": re.compile(
        r"\b(security|verify|verification|password|2fa|unauthorized|suspicious|fraud|breach|locked?|login|"
        r"sign[-\s]?in|account alert)\b",
        re.I,
    ),
    "payment": re.compile(r"\b(payment|invoice|receipt|billing|charge|charged|refund|past due|overdue|card)\b", re.I),
    "approval": re.compile(r"\b(approve|approval|sign[-\s]?off|contract|legal|compliance|policy)\b", re.I),
    "scheduling": re.compile(
        r"\b(meeting|call|calendar|schedule|reschedule|availability|zoom|appointment|rsvp|invite)\b", re.I
    ),
    "marketing": re.compile(r"\b(unsubscribe|newsletter|promotion|sale|discount|marketing)\b", re.I),
}

# (pattern, points, reason); later matches overwrite the reason
HEURISTIC_RULES = [
    ("security", 50, "Account or security alert requires attention."),
    ("urgent", 25, "Time-sensitive request."),
    ("payment", 20, "Billing or payment related."),
    ("approval", 15, "Approval or legal decision needed."),
    ("scheduling", 10, "Scheduling request."),
]


@dataclass
class ThreadScoreInput:
    thread_id: str
    subject: str = ""
    participants: list[str] = field(default_factory=list)
    snippet: str = ""
    content: str = ""


@dataclass
class ThreadScoreResult:
    priority_score: int
    priority_reason: str
    suggested_action_type: str
    extracted: Optional[dict] = None


class ThreadScorer(Protocol):
    def score(self, item: ThreadScoreInput) -> ThreadScoreResult:
        ...


def extract_json(payload: str) -> Optional[dict]:
    """First {...} object in an LLM reply (tolerates markdown fences and chatter)."""
    if not payload:
        return None
    match = re.search(r"\{[\s\S]*\}", payload)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def clamp_score(value) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if num != num or num in (float("inf"), float("-inf")):
        return 0
    return min(100, max(0, int(round(num))))


def normalize_action_type(value) -> str:
    raw = value.strip().lower() if isinstance(value, str) else ""
    return raw if raw in ACTION_TYPES else "wait"


def normalize_reason(value) -> str:
    text = value.strip() if isinstance(value, str) else ""
    return re.sub(r"\s+", " ", text) if text else "Needs attention."


def normalize_extracted(raw) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None

    def _strings(value) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    return {
        "deadlines": _strings(raw.get("deadlines")),
        "asks": _strings(raw.get("asks")),
        "people": _strings(raw.get("people")),
    }


def result_from_llm_json(data: dict) -> ThreadScoreResult:
    """Clamp/normalize a parsed reply; accepts snake_case or camelCase keys."""
    return ThreadScoreResult(
        priority_score=clamp_score(data.get("priority_score", data.get("priorityScore"))),
        priority_reason=normalize_reason(data.get("priority_reason", data.get("priorityReason"))),
        suggested_action_type=normalize_action_type(
            data.get("suggested_action_type", data.get("suggestedActionType"))
        ),
        extracted=normalize_extracted(data.get("extracted")),
    )


class HeuristicThreadScorer:
    """Deterministic keyword scorer, used without an API key and whenever the LLM call fails."""

    base_score = 10

    def score(self, item: ThreadScoreInput) -> ThreadScoreResult:
        text = f"{item.subject or ''}\n{item.snippet or ''}\n{item.content or ''}".lower()
        if PRIORITY_PATTERNS["marketing"].search(text):
            return ThreadScoreResult(10, "Promotional or informational email.", "archive", None)

        score = self.base_score
        reason = "Low urgency."
        for name, points, rule_reason in HEURISTIC_RULES:
            if PRIORITY_PATTERNS[name].search(text):
                score += points
                reason = rule_reason
        if score >= 60:
            action = "reply"
        elif score >= 30:
            action = "task"
        else:
            action = "wait"
        return ThreadScoreResult(min(score, 100), reason, action, None)


def build_user_prompt(item: ThreadScoreInput) -> str:
    content = (item.content or "")[:MAX_PROMPT_CHARS]
    participants = ", ".join(item.participants or []) or "Unknown"
    return (
        f"Subject: {item.subject or '(no subject)'}\n"
        f"Participants: {participants}\n"
        f"Snippet: {item.snippet or '(none)'}\n\n"
        f"Thread (oldest to newest):\n{content}"
    )


class OpenAIThreadScorer:
    def __init__(self, client=None, model: Optional[str] = None, temperature: Optional[float] = None, fallback=None):
        self._client = client
        self.model = model or settings.openai_model
        self.temperature = settings.openai_temperature if temperature is None else temperature
        self.fallback = fallback or HeuristicThreadScorer()

    def _get_client(self):
        if self._client is None:
            api_key = settings.openai_api_key
            if not api_key:
                raise ValueError("OPENAI_API_KEY not set. Add to .env or environment.")
            from openai import OpenAI
            self._client = OpenAI(api_key=api_key)
        return self._client

    def score(self, item: ThreadScoreInput) -> ThreadScoreResult:
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(item)},
                ],
            )
            raw = response.choices[0].message.content or ""
        except Exception as e:
            logger.warning(f"Priority scoring failed for thread {item.thread_id}, using heuristic: {e}")
            return self.fallback.score(item)

        data = extract_json(raw)
        if data is None:
            logger.warning(f"Unparsable priority reply for thread {item.thread_id}, using heuristic")
            return self.fallback.score(item)
        return result_from_llm_json(data)


def get_default_scorer() -> ThreadScorer:
    if settings.openai_api_key:
        return OpenAIThreadScorer()
    return HeuristicThreadScorer()
