from abc import abstractmethod
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_text(value: Any) -> str:
    """Trim + casefold; the single normalization used for equality and grouping."""
    if value is None:
        return ""
    return str(value).strip().casefold()


# --- Basic Enums ---
class QuestionKind(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    NUMERIC = "numeric"
    SHORT_ANSWER = "short_answer"


class FixTier(str, Enum):
    HIGH_CONFIDENCE = "high_confidence"
    CLEAR_WINNER = "clear_winner"
    BEST_GUESS = "best_guess"


class RecordIssue(str, Enum):
    ANSWER_MISSING = "answer_missing"
    TOO_FEW_OPTIONS = "too_few_options"
    ANSWER_NOT_IN_OPTIONS = "answer_not_in_options"
    MODEL_ANSWER_MISSING = "model_answer_missing"
    CRITERIA_MISSING = "criteria_missing"


# Legacy upload format tags its records with `template_id`.
_TEMPLATE_KINDS = {
    "NUMERIC": QuestionKind.NUMERIC,
    "NUMERIC_AUTO": QuestionKind.NUMERIC,
    "SHORT_ANSWER": QuestionKind.SHORT_ANSWER,
}

_KIND_ALIASES = {
    "multiple_choice": QuestionKind.MULTIPLE_CHOICE,
    "multiplechoice": QuestionKind.MULTIPLE_CHOICE,
    "mcq": QuestionKind.MULTIPLE_CHOICE,
    "numeric": QuestionKind.NUMERIC,
    "numeric_auto": QuestionKind.NUMERIC,
    "short_answer": QuestionKind.SHORT_ANSWER,
    "shortanswer": QuestionKind.SHORT_ANSWER,
}


def _coerce_text(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _coerce_text_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return ["" if x is None else str(x) for x in v]
    return v


# --- Question records ---
class QuestionRecordBase(BaseModel):
    """Fields shared by every record kind. Unknown upload fields are preserved."""

    # `model_answer` is a domain field, not a pydantic namespace clash.
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    id: Optional[str] = Field(None, description="Unique within its bundle; assigned on ingest when absent")
    question: str = Field("", description="Prompt text (may contain LaTeX)")
    explanation: Optional[str] = None
    difficulty: Optional[str] = Field(None, description="easy | medium | hard")
    time_limit: Optional[int] = Field(None, description="Optional custom time limit in seconds")
    chapter_id: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("question", mode="before")
    @classmethod
    def _coerce_question(cls, v):
        return _coerce_text(v) or ""

    @abstractmethod
    def issues(self) -> List[RecordIssue]:
        """Structural problems of this record alone; empty means well-formed."""


class MultipleChoiceRecord(QuestionRecordBase):
    kind: Literal[QuestionKind.MULTIPLE_CHOICE] = QuestionKind.MULTIPLE_CHOICE
    options: List[str] = Field(default_factory=list)
    answer: Optional[str] = Field(None, description="Must equal exactly one option after normalization")

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, v):
        return _coerce_text_list(v)

    @field_validator("answer", mode="before")
    @classmethod
    def _coerce_answer(cls, v):
        return _coerce_text(v)

    def issues(self) -> List[RecordIssue]:
        if len(self.options) < 2:
            return [RecordIssue.TOO_FEW_OPTIONS]
        if self.answer is None:
            return [RecordIssue.ANSWER_MISSING]
        target = normalize_text(self.answer)
        if not any(normalize_text(opt) == target for opt in self.options):
            return [RecordIssue.ANSWER_NOT_IN_OPTIONS]
        return []


class NumericRecord(QuestionRecordBase):
    kind: Literal[QuestionKind.NUMERIC] = QuestionKind.NUMERIC
    answer: Optional[str] = None

    @field_validator("answer", mode="before")
    @classmethod
    def _coerce_answer(cls, v):
        return _coerce_text(v)

    def issues(self) -> List[RecordIssue]:
        if not (self.answer or "").strip():
            return [RecordIssue.ANSWER_MISSING]
        return []


class ShortAnswerRecord(QuestionRecordBase):
    kind: Literal[QuestionKind.SHORT_ANSWER] = QuestionKind.SHORT_ANSWER
    model_answer: Optional[str] = None
    evaluation_criteria: List[str] = Field(default_factory=list)

    @field_validator("evaluation_criteria", mode="before")
    @classmethod
    def _coerce_criteria(cls, v):
        return _coerce_text_list(v)

    @field_validator("model_answer", mode="before")
    @classmethod
    def _coerce_model_answer(cls, v):
        return _coerce_text(v)

    def issues(self) -> List[RecordIssue]:
        out: List[RecordIssue] = []
        if not (self.model_answer or "").strip():
            out.append(RecordIssue.MODEL_ANSWER_MISSING)
        if not self.evaluation_criteria:
            out.append(RecordIssue.CRITERIA_MISSING)
        return out


QuestionRecord = Union[MultipleChoiceRecord, NumericRecord, ShortAnswerRecord]

_MODEL_BY_KIND = {
    QuestionKind.MULTIPLE_CHOICE: MultipleChoiceRecord,
    QuestionKind.NUMERIC: NumericRecord,
    QuestionKind.SHORT_ANSWER: ShortAnswerRecord,
}


def resolve_kind(raw: Dict[str, Any]) -> QuestionKind:
    """`kind` wins; otherwise the legacy `template_id`; otherwise multiple choice."""
    kind = raw.get("kind")
    if isinstance(kind, QuestionKind):
        return kind
    if kind is not None:
        key = str(kind).strip().lower().replace("-", "_").replace(" ", "_")
        if key in _KIND_ALIASES:
            return _KIND_ALIASES[key]
    template = str(raw.get("template_id") or "").strip().upper()
    return _TEMPLATE_KINDS.get(template, QuestionKind.MULTIPLE_CHOICE)


def record_from_dict(raw: Dict[str, Any]) -> QuestionRecord:
    """Build the kind-specific record model. Raises pydantic.ValidationError on bad field types."""
    kind = resolve_kind(raw)
    data = dict(raw)
    data["kind"] = kind
    return _MODEL_BY_KIND[kind].model_validate(data)


def record_to_document(record: QuestionRecordBase) -> Dict[str, Any]:
    return record.model_dump(mode="json", exclude_none=True)


# --- Bundles ---
class Bundle(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    subject: str
    grade: int
    icon: Optional[str] = None
    question_count: int = Field(0, description="Best-effort aggregate; reconciled by recount")
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# --- Derived views ---
class FixCandidate(BaseModel):
    record_id: str
    question_text: str = ""
    original_answer: str
    suggested_answer: str
    confidence_percent: int = Field(..., ge=0, le=100)
    is_best_guess: bool
    tier: FixTier


class ValidationIndex(BaseModel):
    """Pure function of one record set. Stale as soon as the bundle is written."""

    record_count: int = 0
    invalid_ids: Set[str] = Field(default_factory=set)
    duplicate_ids: Set[str] = Field(default_factory=set)
    fix_candidates: List[FixCandidate] = Field(default_factory=list)
    issues: Dict[str, List[RecordIssue]] = Field(default_factory=dict)
