"""Routing of incoming messages.

Each message ends up on exactly one :class:`Route`. The cheap checks run
first (short negation, repeated question); the rest are tried in a fixed
order and the first match wins: simple, business info, multiple, single.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import ModelServiceError

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel

logger = logging.getLogger(__name__)


class Route(str, enum.Enum):
    """Terminal routing decisions."""

    SHORT_NEGATION = "short_negation"
    REASK = "reask"
    SIMPLE = "simple"
    BUSINESS_INFO = "business_info"
    MULTIPLE = "multiple"
    SINGLE = "single"


@dataclass
class Classification:
    """Outcome of classifying one message."""

    route: Route
    question: str
    questions: list[str] = field(default_factory=list)
    reply: str | None = None


SHORT_NEGATION_MAX_LENGTH = 8
SHORT_NEGATION_PATTERN = re.compile(r"^(no+!?|нет+!?|не\s*то!?|nope!?|nah!?)$")

REASK_MIN_LENGTH = 5
REASK_OVERLAP = 0.7
_REASK_STRIP = re.compile(r"[!?.,;:()\[\]\-_'\"`]")
# "what's" and "what is" must count as the same words
_CONTRACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bcan't\b"), "can not"),
    (re.compile(r"\bwon't\b"), "will not"),
    (re.compile(r"n't\b"), " not"),
    (re.compile(r"'re\b"), " are"),
    (re.compile(r"'s\b"), " is"),
    (re.compile(r"'m\b"), " am"),
    (re.compile(r"'ll\b"), " will"),
    (re.compile(r"'ve\b"), " have"),
    (re.compile(r"'d\b"), " would"),
)

SIMPLE_QUERY_MAX_LENGTH = 50
SINGLE_QUESTION_MAX_LENGTH = 30
MIN_SPLIT_PART_LENGTH = 5
BUSINESS_INFO_MIN_WORDS = 5

QUESTION_KEYWORDS: frozenset[str] = frozenset(
    {
        # English
        "what", "how", "where", "when", "why", "who", "which", "whose", "whom",
        "need", "want", "should", "must", "required", "tell", "explain", "help",
        "interested", "provide",
        # Russian
        "что", "как", "где", "когда", "почему", "зачем", "кто", "какой", "какая",
        "какое", "какие", "чей", "который", "нужно", "надо", "необходимо",
        "требуется", "хочу", "интересует", "расскажи", "объясни", "помоги", "подскажи",
    }
)

BUSINESS_INFO_KEYWORDS: tuple[str, ...] = (
    # organization
    "company", "business", "enterprise", "firm", "organization", "shop", "store",
    "startup", "project", "we sell", "we provide", "we offer", "our company",
    "my business", "my company", "our business", "i own", "i run", "i am the owner",
    "компания", "бизнес", "предприятие", "фирма", "организация", "магазин", "стартап",
    "проект", "производство", "работаю", "индивидуальный предприниматель", "занимаемся",
    "предоставляем", "продаем", "оказываем услуги", "наша компания", "мой бизнес",
    "моя компания", "наш бизнес", "я владелец", "я руководитель", "я директор",
    # location
    "located in", "based in", "operate in", "from germany", "from france", "from italy",
    "in europe", "in the eu", "находится в", "расположен в", "базируется", "работает в",
    "из германии", "из франции", "из италии", "в европе", "в евросоюзе", "в ес",
    # size
    "employees", "staff", "small company", "medium company", "large company",
    "сотрудников", "работников", "человек в штате", "небольшая компания",
    "маленькая компания", "средняя компания", "крупная компания",
    # digital presence
    "website", "mobile app", "online store", "web shop", "platform", "web portal",
    "сайт", "приложение", "мобильное приложение", "веб-сайт", "интернет-магазин",
    "онлайн-платформа", "веб-портал",
)

SIMPLE_QUERY_PROMPT = """You are a witty, slightly sarcastic but helpful assistant of a chatbot
about the European Accessibility Act (EAA).
Identify simple, non-substantive inputs: greetings, pleasantries, thanks, keyboard mashing,
or very short vague inputs that cannot be answered ("what?", "help").
For those, set is_simple_query to true and write a short witty reply in response_text that
steers the conversation back to the EAA, in the user's language.
For any genuine question, even a short one such as "what is EAA?", set is_simple_query to false
and response_text to null."""

SIMPLE_QUERY_SCHEMA: dict[str, Any] = {"is_simple_query": True, "response_text": "string or null"}

SPLIT_PROMPT = """Break this text into unique, non-duplicating questions,
one array element per question.
If the text contains several questions, split them even when they are related in meaning.
Pay attention to question marks and semantic divisions."""

SPLIT_SCHEMA: dict[str, Any] = {"questions": ["string"]}


def preprocess(text: str) -> str:
    """Trim and collapse internal whitespace."""
    return re.sub(r"\s+", " ", text or "").strip()


def is_short_negation(text: str) -> bool:
    """Detect curt denials such as "no", "nope", "нет" or "не то"."""
    quick = (text or "").strip().lower()
    if len(quick) > SHORT_NEGATION_MAX_LENGTH:
        return False
    return SHORT_NEGATION_PATTERN.match(re.sub(r"\s+", "", quick)) is not None


def normalize_for_reask(text: str) -> str:
    """Lowercase, expand English contractions, drop punctuation."""
    lowered = re.sub(r"\s+", " ", text.lower().replace("’", "'"))
    for pattern, replacement in _CONTRACTIONS:
        lowered = pattern.sub(replacement, lowered)
    return re.sub(r"\s+", " ", _REASK_STRIP.sub("", lowered)).strip()


def is_simple_reask(previous: str | None, current: str) -> bool:
    """True when ``current`` repeats ``previous`` with at least 70% shared words."""
    if not previous:
        return False
    a = normalize_for_reask(previous)
    b = normalize_for_reask(current)
    if len(a) < REASK_MIN_LENGTH or len(b) < REASK_MIN_LENGTH:
        return False
    if a == b:
        return True
    words_a = set(a.split(" "))
    words_b = set(b.split(" "))
    common = len(words_a & words_b)
    return common / max(len(words_a), len(words_b)) >= REASK_OVERLAP


def contains_business_info(message: str) -> bool:
    """A statement (not a question) that describes the user's business."""
    if not message or "?" in message:
        return False
    if len(message.split()) < BUSINESS_INFO_MIN_WORDS:
        return False
    lowered = message.lower()
    return any(keyword in lowered for keyword in BUSINESS_INFO_KEYWORDS)


def is_short_or_single_question(text: str) -> bool:
    """Heuristic: can the text be answered as one question?"""
    if len(text) < SINGLE_QUESTION_MAX_LENGTH:
        return True
    if text.count("?") > 1:
        return False
    words = set(re.findall(r"\w+", text.lower()))
    if len(words & QUESTION_KEYWORDS) > 1:
        return False
    sentences = [s for s in re.split(r"[.!?]+\s+", text) if s.strip()]
    return len(sentences) <= 1


def _dedupe(parts: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for part in parts:
        key = part.lower()
        if part and key not in seen:
            seen.add(key)
            result.append(part)
    return result


def split_by_question_marks(text: str) -> list[str]:
    return [p.strip() for p in re.findall(r"[^?]+\?", text) if len(p.strip()) > 2]


def split_complex_query(query: str) -> list[str]:
    """Last-resort split on question marks, quoted lists and comma-separated clauses."""
    raw = re.split(r"(?<=\?)|(?<=\"),\s*(?=\")|(?<=\w),\s*(?=\w)", query)
    parts = [p.strip().strip('"') for p in raw if p and len(p.strip()) > MIN_SPLIT_PART_LENGTH]
    return _dedupe(parts)


def _questions_from_payload(payload: dict[str, Any]) -> list[str]:
    questions = payload.get("questions")
    if not isinstance(questions, list):
        questions = next((v for v in payload.values() if isinstance(v, list)), [])
    return [str(q).strip() for q in questions if str(q).strip()]


class RequestClassifier:
    """Decides how the orchestrator handles a message."""

    def __init__(self, llm: LanguageModel) -> None:
        self._llm = llm

    async def check_simple_query(self, text: str) -> str | None:
        """Witty reply for greetings and noise, None for real questions.

        Model failures count as "not simple" so the message still gets answered.
        """
        if len(text.strip()) > SIMPLE_QUERY_MAX_LENGTH:
            return None
        try:
            result = await self._llm.complete_structured(
                text,
                SIMPLE_QUERY_SCHEMA,
                system_prompt=SIMPLE_QUERY_PROMPT,
                temperature=0.5,
                max_tokens=150,
            )
        except ModelServiceError as e:
            logger.warning("Simple query check failed", extra={"error": str(e)})
            return None
        if result.get("is_simple_query") is not True:
            return None
        reply = result.get("response_text")
        return str(reply) if reply else None

    async def semantic_split(self, text: str) -> list[str]:
        """Model-assisted split; falls back to :func:`split_complex_query`."""
        try:
            payload = await self._llm.complete_structured(
                f"{SPLIT_PROMPT}\n\nText: {text}", SPLIT_SCHEMA, temperature=0.0
            )
            questions = _questions_from_payload(payload)
            if questions:
                return _dedupe(questions)
        except ModelServiceError as e:
            logger.warning("Semantic question split failed", extra={"error": str(e)})
        return split_complex_query(text)

    async def split_questions(self, text: str) -> list[str]:
        """Split into independent questions; a single question yields ``[text]``."""
        if is_short_or_single_question(text):
            return [text]
        parts = split_by_question_marks(text)
        if len(parts) > 1:
            return _dedupe(parts)
        return await self.semantic_split(text)

    async def classify(
        self, message: str, previous_user_message: str | None = None
    ) -> Classification:
        """Route one message.

        Args:
            message: Raw user text.
            previous_user_message: Last user message of the session, if any.
        """
        if is_short_negation(message):
            return Classification(Route.SHORT_NEGATION, message.strip())
        if is_simple_reask(previous_user_message, message):
            return Classification(Route.REASK, message.strip())

        question = preprocess(message)

        reply = await self.check_simple_query(question)
        if reply:
            return Classification(Route.SIMPLE, question, reply=reply)

        if contains_business_info(question):
            return Classification(Route.BUSINESS_INFO, question)

        questions = await self.split_questions(question)
        if len(questions) > 1:
            return Classification(Route.MULTIPLE, question, questions=questions)

        return Classification(Route.SINGLE, question, questions=[question])
