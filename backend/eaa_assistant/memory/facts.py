"""Fact store: durable, typed knowledge about a user.

Facts are the only memory that survives across sessions. They are merged
per ``(user_id, fact_type)``: a newer extraction of the same type replaces
the stored value instead of adding a second row.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import AssistantError, ValidationError
from eaa_assistant.db.storage import (
    FACTS_TABLE,
    SESSIONS_TABLE,
    Storage,
    now_iso,
    parse_timestamp,
)

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel

logger = logging.getLogger(__name__)

FACT_TYPES: tuple[str, ...] = (
    "business_type",
    "business_location",
    "business_size",
    "business_digital_presence",
    "business_sector",
    "customer_base",
    "service_types",
    "compliance_status",
)

# Cheap gate in front of the model: does the text plausibly talk about an organization?
BUSINESS_HINT_PATTERN = re.compile(
    r"компан|бизнес|организац|предприяти|фирм|работа|сайт|магазин|банк|финанс|транспорт"
    r"|отрасл|индустр|company|business|organization|enterprise|firm|work|website|shop|store"
    r"|bank|financ|transport|industry|startup|corporat|retail|ecommerce|e-commerce"
    r"|application|app|platform|service|customer|client|market|sale|revenue|product"
    r"|digital|technology|tech",
    re.IGNORECASE,
)

FACT_EXTRACTION_PROMPT = """You are a text analyst.
Extract facts about the user's business or organization from their message.

Fact types:
- business_type: type of business or organization (restaurant, bank, online store, school, ...)
- business_location: country, region or city where the business operates
- business_size: business size (small, medium, large, startup, ...)
- business_digital_presence: website, mobile app, e-commerce, social media, ...
- business_sector: B2B, B2C, government, nonprofit, ...
- customer_base: target customers (individuals, businesses, students, tourists, ...)
- service_types: services or products offered
- compliance_status: any mention of accessibility compliance, standards or regulations

Confidence: 0.9-1.0 explicitly stated, 0.7-0.8 strongly implied, 0.5-0.6 probable.
Leave out anything below 0.5. Messages may be in any language."""

FACT_SCHEMA: dict[str, Any] = {
    "facts": [{"fact_type": "business_type", "fact_value": "string", "confidence": 0.9}]
}


@dataclass
class UserFact:
    """A typed, confidence-scored statement about a user."""

    id: str
    user_id: str
    fact_type: str
    fact_value: str
    confidence: float
    source_message_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_business_fact(self) -> bool:
        return self.fact_type.startswith("business_")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "fact_type": self.fact_type,
            "fact_value": self.fact_value,
            "confidence": self.confidence,
            "source_message_id": self.source_message_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserFact:
        """Create a UserFact from a storage row."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            fact_type=data["fact_type"],
            fact_value=str(data.get("fact_value") or ""),
            confidence=float(data.get("confidence") or 0.0),
            source_message_id=data.get("source_message_id"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


def normalize_confidence(value: Any) -> float:
    """Out-of-range or non-numeric confidences default to 1.0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 1.0
    if confidence != confidence or not 0.0 <= confidence <= 1.0:
        return 1.0
    return confidence


def mentions_business(text: str) -> bool:
    return bool(text) and BUSINESS_HINT_PATTERN.search(text) is not None


class FactStore:
    """Owns rows of the ``user_facts`` table."""

    def __init__(self, storage: Storage, llm: LanguageModel, confidence_floor: float = 0.5) -> None:
        self._storage = storage
        self._llm = llm
        self._confidence_floor = confidence_floor

    async def upsert(
        self,
        user_id: str,
        fact_type: str,
        fact_value: str,
        confidence: float,
        source_message_id: str | None = None,
    ) -> str:
        """Insert or overwrite the fact for ``(user_id, fact_type)``.

        Returns:
            Id of the stored fact row.

        Raises:
            ValidationError: If user id, fact type or value is blank.
            StorageError: If the row cannot be read or written.
        """
        if not user_id:
            raise ValidationError("User ID is required", field="user_id")
        if not fact_type:
            raise ValidationError("Fact type is required", field="fact_type")
        if fact_value is None or not str(fact_value).strip():
            raise ValidationError("Fact value is required", field="fact_value")

        confidence = normalize_confidence(confidence)
        timestamp = now_iso()

        existing = await self._storage.select(
            FACTS_TABLE, {"user_id": user_id, "fact_type": fact_type}, limit=1
        )
        if existing:
            fact_id = existing[0]["id"]
            await self._storage.update(
                FACTS_TABLE,
                {
                    "fact_value": str(fact_value),
                    "confidence": confidence,
                    "source_message_id": source_message_id,
                    "updated_at": timestamp,
                },
                {"id": fact_id},
            )
            logger.debug(
                "User fact updated",
                extra={"user_id": user_id, "fact_type": fact_type, "confidence": confidence},
            )
            return str(fact_id)

        fact_id = str(uuid.uuid4())
        await self._storage.insert(
            FACTS_TABLE,
            {
                "id": fact_id,
                "user_id": user_id,
                "fact_type": fact_type,
                "fact_value": str(fact_value),
                "confidence": confidence,
                "source_message_id": source_message_id,
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )
        logger.debug(
            "User fact inserted",
            extra={"user_id": user_id, "fact_type": fact_type, "confidence": confidence},
        )
        return fact_id

    async def list_for_user(self, user_id: str) -> list[UserFact]:
        """Facts of a user, most recently updated first."""
        rows = await self._storage.select(
            FACTS_TABLE, {"user_id": user_id}, order_by="updated_at", desc=True
        )
        return [UserFact.from_dict(row) for row in rows]

    async def extract_candidates(self, content: str) -> list[dict[str, Any]]:
        """Ask the model for fact candidates and keep the credible ones.

        Malformed payloads yield no candidates; malformed entries are dropped.

        Raises:
            ModelServiceError: If the model call fails.
        """
        result = await self._llm.complete_structured(
            content, FACT_SCHEMA, system_prompt=FACT_EXTRACTION_PROMPT, temperature=0.1
        )
        candidates = result.get("facts") if isinstance(result, dict) else None
        if not isinstance(candidates, list):
            if candidates is not None:
                logger.warning(
                    "Ignoring malformed fact payload",
                    extra={"payload_type": type(candidates).__name__},
                )
            return []

        kept = []
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            fact_type = candidate.get("fact_type")
            value = candidate.get("fact_value")
            try:
                confidence = float(candidate.get("confidence", 0))
            except (TypeError, ValueError):
                continue
            if fact_type not in FACT_TYPES or value is None or not str(value).strip():
                continue
            if confidence < self._confidence_floor:
                continue
            kept.append(
                {"fact_type": fact_type, "fact_value": str(value).strip(), "confidence": confidence}
            )
        return kept

    async def extract_from_message(
        self, content: str, session_id: str, message_id: str | None
    ) -> int:
        """Extract facts from a user message and merge them into the store.

        Best effort: every failure is logged and swallowed. A candidate that
        cannot be stored does not keep the others from being written.

        Returns:
            Number of facts written.
        """
        try:
            sessions = await self._storage.select(SESSIONS_TABLE, {"id": session_id}, limit=1)
            if not sessions:
                logger.warning(
                    "Fact extraction skipped: unknown session", extra={"session_id": session_id}
                )
                return 0
            user_id = sessions[0]["user_id"]

            if not mentions_business(content):
                logger.debug("No business hints in message, skipping fact extraction")
                return 0

            candidates = await self.extract_candidates(content)
        except AssistantError as e:
            logger.warning(
                "Fact extraction failed",
                extra={"session_id": session_id, "error": str(e), "error_kind": e.kind.value},
            )
            return 0

        stored = 0
        for candidate in candidates:
            try:
                await self.upsert(
                    user_id,
                    candidate["fact_type"],
                    candidate["fact_value"],
                    candidate["confidence"],
                    message_id,
                )
            except AssistantError as e:
                logger.warning(
                    "Failed to store user fact",
                    extra={
                        "user_id": user_id,
                        "fact_type": candidate["fact_type"],
                        "error": str(e),
                        "error_kind": e.kind.value,
                    },
                )
                continue
            stored += 1

        if stored:
            logger.info("Extracted user facts", extra={"user_id": user_id, "count": stored})
        return stored
