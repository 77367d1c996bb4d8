"""
FAA Certification RAG - Query Classifier
LLM-based classification of aviation regulatory questions, used to route
fallback retrieval to the eCFR and DRS clients.
"""

import re
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from certrag.core.schemas import StoredConversation, TurnRole
from certrag.rag.document_cache import DocumentCache
from certrag.rag.llm import LLMService, parse_json_reply


class QueryIntent(str, Enum):
    """Closed set of question intents."""
    REGULATORY_LOOKUP = "regulatory_lookup"
    COMPLIANCE_GUIDANCE = "compliance_guidance"
    DOCUMENT_REQUEST = "document_request"
    GENERAL_QUESTION = "general_question"


DOCUMENT_TYPES = ("AC", "AD", "TSO", "Order")


@dataclass
class QueryClassification:
    """Routing information for one question."""
    intent: QueryIntent = QueryIntent.GENERAL_QUESTION
    topics: List[str] = field(default_factory=list)
    cfr_parts: List[int] = field(default_factory=list)
    cfr_sections: List[str] = field(default_factory=list)
    document_types: List[str] = field(default_factory=lambda: ["AC"])
    specific_document: Optional[str] = None
    confidence: float = 0.3
    reasoning: str = "Default classification - unable to determine specific routing"
    needs_clarification: bool = False
    suggested_question: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryClassification":
        values = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        values["intent"] = validate_intent(values.get("intent"))
        return cls(**values)


def default_classification() -> QueryClassification:
    """Low-confidence classification used whenever the LLM answer is unusable."""
    return QueryClassification()


@dataclass
class ParsedClassification:
    """Outcome of parsing an LLM reply: a validated classification or the default."""
    classification: QueryClassification
    is_fallback: bool = False


@dataclass
class DocumentRequest:
    """Result of the regex pre-filter."""
    is_doc_request: bool
    doc_type: Optional[str] = None
    doc_number: Optional[str] = None


CLASSIFIER_SYSTEM_PROMPT = """You are an FAA regulatory classification expert. Analyze aviation questions and identify:

1. The user's intent:
   - regulatory_lookup: Looking for specific regulation text
   - compliance_guidance: How to comply with requirements
   - document_request: Asking about a specific document (AC, AD, etc.)
   - general_question: General aviation question

2. Relevant 14 CFR Part numbers:
   - Part 21: Certification procedures (type certificates, production approvals)
   - Part 23: Normal category airplanes (23.2xxx = performance & flight characteristics)
   - Part 25: Transport category airplanes
   - Part 27: Normal category rotorcraft
   - Part 29: Transport category rotorcraft
   - Part 33: Aircraft engines
   - Part 35: Propellers
   - Part 39: Airworthiness directives
   - Part 43: Maintenance, preventive maintenance, alterations
   - Part 91: General operating rules
   - Part 121: Air carrier operations
   - Part 135: Commuter operations

3. Specific CFR section numbers if determinable (e.g., "23.2150" for stall speed)

4. Related document types:
   - AC: Advisory Circulars (compliance guidance)
   - AD: Airworthiness Directives (mandatory actions)
   - TSO: Technical Standard Orders
   - Order: FAA Orders

5. Whether the question is too vague to route (e.g., no aircraft category or topic).
   If so, set needsClarification to true and propose one short clarifying question.

Common section mappings:
- Stall speed → § 23.2150 or § 25.103
- Takeoff performance → § 23.2115 or § 25.105
- Landing performance → § 23.2125 or § 25.125
- Structural strength → § 23.2240 or § 25.301
- Flutter → § 23.2245 or § 25.629
- Fire protection → § 25.1181-1207
- Fuel system → § 23.2430 or § 25.951-1001
- Electrical → § 23.2500-2550 or § 25.1351-1365

Respond ONLY with valid JSON matching the exact schema. No markdown, no explanation outside JSON."""


CLASSIFIER_USER_TEMPLATE = """Classify this aviation regulatory question:

"{question}"

Respond with JSON only:
{{
  "intent": "regulatory_lookup|compliance_guidance|document_request|general_question",
  "topics": ["topic1", "topic2"],
  "cfrParts": [number],
  "cfrSections": ["part.section"],
  "documentTypes": ["AC"|"AD"|"TSO"|"Order"],
  "specificDocument": "if explicitly mentioned, e.g. AC 43.13-1B",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation",
  "needsClarification": true|false,
  "suggestedQuestion": "clarifying question to ask, only when needsClarification is true"
}}"""


# =============================================================================
# Parsing & Validation
# =============================================================================

def validate_intent(intent: Any) -> QueryIntent:
    try:
        return QueryIntent(intent)
    except ValueError:
        return QueryIntent.GENERAL_QUESTION


def validate_document_types(types: Any) -> List[str]:
    """Keep known tags only; a missing or non-list value means ["AC"]."""
    if not isinstance(types, list):
        return ["AC"]
    return [t for t in types if t in DOCUMENT_TYPES]


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return min(1.0, max(0.0, float(value)))


def _to_parts(values: Any) -> List[int]:
    if not isinstance(values, list):
        return []
    parts = []
    for value in values:
        try:
            parts.append(int(float(value)))
        except (TypeError, ValueError, OverflowError):
            continue
    return parts


def _optional_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def build_classification(parsed: Dict[str, Any]) -> QueryClassification:
    topics = parsed.get("topics")
    sections = parsed.get("cfrSections")
    return QueryClassification(
        intent=validate_intent(parsed.get("intent")),
        topics=[str(t) for t in topics] if isinstance(topics, list) else [],
        cfr_parts=_to_parts(parsed.get("cfrParts")),
        cfr_sections=[str(s) for s in sections] if isinstance(sections, list) else [],
        document_types=validate_document_types(parsed.get("documentTypes")),
        specific_document=_optional_text(parsed.get("specificDocument")),
        confidence=clamp_confidence(parsed.get("confidence")),
        reasoning=_optional_text(parsed.get("reasoning")) or "No reasoning provided",
        needs_clarification=bool(parsed.get("needsClarification", False)),
        suggested_question=_optional_text(parsed.get("suggestedQuestion")),
    )


def parse_classifier_response(text: str) -> ParsedClassification:
    """Validate an LLM JSON reply. Never raises: malformed output yields the default."""
    try:
        parsed = parse_json_reply(text)
        if not isinstance(parsed, dict):
            raise ValueError("classifier reply is not a JSON object")
        classification = build_classification(parsed)
    except Exception as e:
        logger.error(f"Failed to parse classifier response: {e}")
        logger.debug(f"Raw response: {str(text)[:200]}")
        return ParsedClassification(default_classification(), is_fallback=True)

    return ParsedClassification(classification)


# =============================================================================
# Regex Pre-filter
# =============================================================================

QUICK_PATTERNS = (
    ("AC", re.compile(r'\bAC\s+([\d/.-]+[A-Z]?)', re.IGNORECASE)),       # AC 43.13-1B
    ("AD", re.compile(r'\bAD\s+([\d-]+)', re.IGNORECASE)),               # AD 2023-01-05
    ("TSO", re.compile(r'\bTSO[-\s]?([A-Z]?\d+[A-Za-z]?)', re.IGNORECASE)),  # TSO-C129a
    ("Order", re.compile(r'\bOrder\s+(\d+\.\d+[A-Z]?)', re.IGNORECASE)),  # Order 8900.1
)


def quick_classify_document_request(query: str) -> DocumentRequest:
    """Detect an explicitly cited document without calling the LLM."""
    for doc_type, pattern in QUICK_PATTERNS:
        match = pattern.search(query)
        if match:
            return DocumentRequest(is_doc_request=True, doc_type=doc_type, doc_number=match.group(1))
    return DocumentRequest(is_doc_request=False)


def build_question_with_context(question: str, conversation: Optional[StoredConversation]) -> str:
    """Wrap a follow-up question with the original topic and the last few turns."""
    if conversation is None or not conversation.turns:
        return question

    text = "This is a follow-up question in an ongoing conversation.\n\n"

    first_user = next((t for t in conversation.turns if t.role == TurnRole.USER), None)
    if first_user:
        text += f"Original question: {first_user.content}\n\n"

    text += "Recent conversation:\n"
    for turn in conversation.turns[-6:]:
        role = "User" if turn.role == TurnRole.USER else "Assistant"
        content = turn.content if len(turn.content) <= 500 else turn.content[:500] + "..."
        text += f"{role}: {content}\n"

    return f"{text}\nCurrent question: {question}"


# =============================================================================
# Classifier
# =============================================================================

class QueryClassifier:
    """
    Classify questions for routing.

    Classification is advisory: any LLM or parse failure yields the default
    classification instead of an error. Successful results are cached.
    """

    def __init__(
        self,
        llm: LLMService,
        cache: Optional[DocumentCache] = None,
        cache_ttl_hours: float = 1,
        max_tokens: int = 500,
    ):
        self.llm = llm
        self.cache = cache
        self.cache_ttl_hours = cache_ttl_hours
        self.max_tokens = max_tokens

    async def classify(self, question: str) -> QueryClassification:
        logger.info(f"Classifying query: \"{question[:50]}...\"")

        cache_key = DocumentCache.classifier_key(question)
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info("Classifier cache hit")
                return QueryClassification.from_dict(cached.data)

        if not self.llm.is_available:
            logger.warning("LLM not available - using default classification")
            return default_classification()

        try:
            reply = await self.llm.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                [{"role": "user", "content": CLASSIFIER_USER_TEMPLATE.format(question=question)}],
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
        except Exception as e:
            logger.error(f"Classification error: {e}")
            return default_classification()

        parsed = parse_classifier_response(reply)
        classification = parsed.classification
        logger.info(
            f"Classification: intent={classification.intent.value}, parts={classification.cfr_parts}, "
            f"sections={classification.cfr_sections}, confidence={classification.confidence}"
        )

        if not parsed.is_fallback and self.cache is not None:
            await self.cache.set(cache_key, classification.to_dict(), self.cache_ttl_hours)

        return classification

    @staticmethod
    def from_document_request(request: DocumentRequest) -> QueryClassification:
        """High-confidence classification for an explicitly cited document."""
        return replace(
            default_classification(),
            intent=QueryIntent.DOCUMENT_REQUEST,
            document_types=[request.doc_type],
            specific_document=f"{request.doc_type} {request.doc_number}",
            confidence=0.9,
            reasoning=f"Explicit {request.doc_type} reference",
        )
