import json, logging, re, time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from duet.errors import GenerationError
from duet.settings.config import settings

logger = logging.getLogger(__name__)


def _masked_key() -> str:
    key = settings.OPENAI_API_KEY or ""
    return f"...{key[-4:]}" if len(key) >= 4 else "<unset>"


def is_configured() -> bool:
    return bool(settings.OPENAI_API_KEY)


#----------metrics---------------

@dataclass
class GenerationMetrics:
    """Process-local counters for calls to the generation API and for failed generation jobs."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limit_errors: int = 0
    total_response_time: float = 0.0
    failed_generations: int = 0
    generation_timeouts: int = 0

    def record_request(self, ok: bool, elapsed: float, *, rate_limited: bool = False) -> None:
        self.total_requests += 1
        if ok:
            self.successful_requests += 1
            self.total_response_time += elapsed
        else:
            self.failed_requests += 1
        if rate_limited:
            self.rate_limit_errors += 1

    def record_generation_failure(self, *, timed_out: bool = False) -> None:
        if timed_out:
            self.generation_timeouts += 1
        else:
            self.failed_generations += 1

    def snapshot(self) -> dict:
        avg = self.total_response_time / self.successful_requests if self.successful_requests else 0.0
        return {
            "configured": is_configured(),
            "model": settings.LLM_MODEL,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rate_limit_errors": self.rate_limit_errors,
            "average_response_time": round(avg, 3),
            "failed_generations": self.failed_generations,
            "generation_timeouts": self.generation_timeouts,
        }

    def reset(self) -> None:
        self.__init__()


metrics = GenerationMetrics()


#----------input hygiene---------------

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`([^`]*)`")
_ROLE_MARKER_LINE = re.compile(r"\n\s*(System|Assistant|Human|User|AI):\s*", re.I)
_ROLE_MARKER_HEAD = re.compile(r"^(System|Assistant|Human|User|AI):\s*", re.I)
_INST_BLOCK = re.compile(r"\[INST\][\s\S]*?\[/INST\]", re.I)
_INST_TAG = re.compile(r"\[/?INST\]", re.I)
_CONTROL_SEQ = re.compile(r"<\|.*?\|>")
_OVERRIDE_PHRASES = [
    re.compile(r"ignore\s+previous\s+instructions", re.I),
    re.compile(r"forget\s+everything", re.I),
    re.compile(r"new\s+instructions", re.I),
    re.compile(r"override\s+instructions", re.I),
]

_UNSAFE_INPUT = [
    re.compile(p, re.I) for p in (
        r"prompt\s*injection", r"jailbreak", r"ignore\s+instructions", r"system\s*override",
        r"developer\s*mode", r"unrestricted\s*mode", r"god\s*mode", r"admin\s*access", r"root\s*access",
    )
]

_UNSAFE_OUTPUT = [
    re.compile(p, re.I | re.M) for p in (
        r"ignore\s+previous\s+instructions", r"as\s+an\s+ai\s+language\s+model",
        r"\[INST\]", r"\[/INST\]", r"<\|.*?\|>", r"^\s*system\s*:", r"^\s*assistant\s*:", r"^\s*human\s*:",
        r"developer\s*mode", r"jailbreak",
    )
]

_TOPIC_KEYWORDS = re.compile(
    r"relationship|couple|partner|communicat|emotion|feeling|connect|bond|love|trust|together", re.I
)


def sanitize_prompt_input(text: Optional[str], max_chars: Optional[int] = None) -> str:
    """Strip role switches, instruction overrides and control sequences from user text
    before it is embedded in a generation prompt."""
    if not text:
        return ""
    limit = max_chars or settings.PROMPT_INPUT_MAX_CHARS
    s = str(text)
    s = _CODE_BLOCK.sub("[code block removed]", s)
    s = _INLINE_CODE.sub(r"\1", s)
    s = _ROLE_MARKER_LINE.sub("\n", s)
    s = _ROLE_MARKER_HEAD.sub("", s)
    s = _INST_BLOCK.sub("[instruction removed]", s)
    s = _INST_TAG.sub("", s)
    s = _CONTROL_SEQ.sub("[control sequence removed]", s)
    for rx in _OVERRIDE_PHRASES:
        s = rx.sub("[instruction attempt removed]", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    s = re.sub(r"[ \t]{3,}", " ", s)
    return s.strip()[:limit]


def is_input_safe(text: Optional[str]) -> bool:
    if not text:
        return True
    for rx in _UNSAFE_INPUT:
        if rx.search(text):
            logger.warning("SECURITY: suspicious prompt input matched %s", rx.pattern)
            return False
    return True


def validate_ai_response(text: Optional[str], min_length: int = 100) -> bool:
    """Reject output that leaked control tokens or looks like a refusal."""
    if not text or len(text.strip()) < min_length:
        logger.warning("SECURITY: model output too short, possible refusal")
        return False
    for rx in _UNSAFE_OUTPUT:
        if rx.search(text):
            logger.warning("SECURITY: model output matched %s", rx.pattern)
            return False
    return True


def validate_program_structure(data: Any, days: Optional[int] = None) -> bool:
    expected = days or settings.PROGRAM_DAYS
    if not isinstance(data, dict) or not isinstance(data.get("program"), dict):
        return False
    program = data["program"]
    if not isinstance(program.get("title"), str) or not program["title"].strip():
        return False
    items = program.get("days")
    if not isinstance(items, list) or len(items) != expected:
        return False
    for i, day in enumerate(items, start=1):
        if not isinstance(day, dict) or day.get("day") != i:
            return False
        theme = day.get("theme")
        starter = day.get("conversation_starter")
        science = day.get("science_behind_it")
        if not all(isinstance(v, str) for v in (theme, starter, science)):
            return False
        if not (5 <= len(theme) <= 200):
            return False
        if not (20 <= len(starter) <= 1000):
            return False
        if not (50 <= len(science) <= 2000):
            return False
        if not (_TOPIC_KEYWORDS.search(starter) or _TOPIC_KEYWORDS.search(science)):
            logger.warning("Program day %d lacks relationship content", i)
            return False
    return True


#----------text polish---------------

def _sanitize_llm_text(out: str) -> str:
    """Unwrap code fences and surrounding quotes from model output."""
    if not out:
        return ""
    s = out.strip()
    m = re.search(r"```(?:\w+)?\s*([\s\S]*?)```", s)
    if m and m.group(1).strip():
        s = m.group(1).strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("“") and s.endswith("”")):
        inner = s[1:-1].strip()
        if inner:
            s = inner
    return s


def _parse_json(raw: str) -> Any:
    s = _sanitize_llm_text(raw)
    try:
        return json.loads(s)
    except ValueError:
        # tolerate prose around a single JSON object
        m = re.search(r"\{.*\}", s, re.S)
        if not m:
            raise GenerationError("Model returned non-JSON output")
        try:
            return json.loads(m.group(0))
        except ValueError as e:
            raise GenerationError("Model returned non-JSON output") from e


#----------transport---------------

async def _chat(messages: Sequence[dict], *, temperature: float = 0.7, max_tokens: int = 2000,
                json_mode: bool = True, timeout: Optional[float] = None) -> str:
    """
    POST to an OpenAI-compatible /chat/completions endpoint and return the text of the
    first choice. Any transport, status or shape problem becomes ``GenerationError``.
    """
    if not is_configured():
        raise GenerationError("Generation service is not configured")

    payload: dict = {
        "model": settings.LLM_MODEL,
        "messages": list(messages),
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    headers = {"Authorization": f"Bearer {settings.OPENAI_API_KEY}"}
    url = f"{settings.LLM_BASE_URL.rstrip('/')}/chat/completions"

    started = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout or settings.GENERATION_TIMEOUT_SECONDS) as client:
            r = await client.post(url, json=payload, headers=headers)
            r.raise_for_status()
            data = r.json()
    except httpx.HTTPStatusError as e:
        code = e.response.status_code
        metrics.record_request(False, time.monotonic() - started, rate_limited=code == 429)
        if code == 401:
            logger.error("Generation API rejected key %s", _masked_key())
        elif code == 429:
            logger.error("Generation API rate limit or quota reached")
        else:
            logger.error("Generation API returned HTTP %s", code)
        raise GenerationError(f"Generation request failed with HTTP {code}") from e
    except (httpx.HTTPError, ValueError) as e:
        metrics.record_request(False, time.monotonic() - started)
        raise GenerationError(f"Generation request failed: {e.__class__.__name__}") from e

    try:
        out = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        metrics.record_request(False, time.monotonic() - started)
        raise GenerationError("Unexpected response shape from generation API") from e
    if not out.strip():
        metrics.record_request(False, time.monotonic() - started)
        raise GenerationError("Empty response from generation API")
    metrics.record_request(True, time.monotonic() - started)
    return out


#----------program generation---------------

PROGRAM_SYSTEM = (
    "You are a warm, research-informed relationship coach. You write short daily "
    "conversation starters that help two partners talk, listen to each other and feel "
    "like a team. Respond only with JSON."
)

PROGRAM_TEMPLATE = (
    "Two partners, {user_name} and {partner_name}, are starting a {days}-day program.\n"
    "{user_name} describes what they want to work on:\n"
    "---\n{user_input}\n---\n"
    "{previous}"
    "Write one conversation starter per day for {days} consecutive days. Each day builds on the "
    "previous one, has a short theme, gives both partners equal room to speak, and keeps a light, "
    "conversational tone. For each day also explain, directly to the couple and in plain words, "
    "the research behind it.\n"
    "Return JSON shaped exactly as:\n"
    '{{"program": {{"title": "...", "overview": "...", "days": ['
    '{{"day": 1, "theme": "...", "conversation_starter": "...", "science_behind_it": "..."}}]}}}}'
)


async def generate_program(user_name: str, partner_name: str, user_input: str,
                           previous_starters: Optional[Sequence[str]] = None) -> dict:
    """Returns the validated ``{"program": {...}}`` document."""
    user_name = sanitize_prompt_input(user_name, 50) or "Partner 1"
    partner_name = sanitize_prompt_input(partner_name, 50) or "Partner 2"
    user_input = sanitize_prompt_input(user_input)
    if not all(is_input_safe(x) for x in (user_name, partner_name, user_input)):
        raise GenerationError("Input contains potentially unsafe content")
    if len(user_input) < 10:
        raise GenerationError("User input must be at least 10 characters")

    previous = ""
    if previous_starters:
        lines = "\n".join(f"- {sanitize_prompt_input(s, 300)}" for s in previous_starters if s)
        if lines:
            previous = f"In their previous program these starters got them talking:\n{lines}\nBuild on them without repeating.\n"

    prompt = PROGRAM_TEMPLATE.format(
        user_name=user_name, partner_name=partner_name, user_input=user_input,
        days=settings.PROGRAM_DAYS, previous=previous,
    )
    raw = await _chat(
        [{"role": "system", "content": PROGRAM_SYSTEM}, {"role": "user", "content": prompt}],
        temperature=0.7, max_tokens=4000,
    )
    if not validate_ai_response(raw):
        raise GenerationError("Model output failed validation")
    data = _parse_json(raw)
    if not validate_program_structure(data):
        raise GenerationError("Model output does not match the expected program structure")
    return data


#----------step responses---------------

STEP_SYSTEM = (
    "You are a supportive relationship coach reading a short exchange between two partners "
    "about today's conversation starter. Reply with a few short, kind messages addressed to both "
    "of them: reflect what each said, name what they share, and suggest one small next step. "
    'Respond only with JSON: {"responses": ["...", "..."]}.'
)


def _step_prompt(context: dict) -> str:
    program = context.get("program") or {}
    step = context.get("step") or {}
    lines = [
        f"Program: {program.get('title') or 'Untitled'}",
        f"Day {step.get('day')}: {step.get('theme')}",
        f"Conversation starter: {step.get('conversation_starter')}",
        "",
        "What they wrote:",
    ]
    for m in context.get("messages") or []:
        lines.append(f"{m.get('sender_name')}: {m.get('content')}")
    return "\n".join(lines)


async def generate_step_responses(context: dict) -> list[str]:
    """
    Ordered coaching messages for one step crossover. ``context`` must already be
    sanitized by the caller. Blank entries are returned as-is; the caller drops them.
    """
    raw = await _chat(
        [{"role": "system", "content": STEP_SYSTEM}, {"role": "user", "content": _step_prompt(context)}],
        temperature=0.7, max_tokens=1200,
    )
    data = _parse_json(raw)
    items = data.get("responses") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise GenerationError("Model output does not contain a responses list")
    out: list[str] = []
    for item in items:
        text = item if isinstance(item, str) else ""
        if text.strip() and not validate_ai_response(text, min_length=1):
            raise GenerationError("Model output failed validation")
        out.append(text)
    return out
