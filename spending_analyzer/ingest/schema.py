"""
Wire schemas for the ingestion pipeline.

TypedDicts describe what the pipeline hands back to the HTTP layer.
Pydantic models validate what comes back from the completion service,
which is never trusted until it has been checked here.
"""
from typing import TypedDict, Dict, Any, Optional, List
from pydantic import BaseModel, Field, field_validator


CATEGORY_VOCABULARY = [
    "Groceries", "Utilities", "Entertainment", "Transport", "Healthcare",
    "Shopping", "Dining", "Bills", "Income", "Transfer", "Subscriptions",
    "Insurance", "Education", "Travel", "Pet Services", "Other",
]


class FileMetadata(TypedDict):
    """Per-file extraction metadata"""
    filename: str
    containerType: Optional[str]
    bankName: str
    statementType: str
    extractionMethod: str         # 'learned_procedure' | 'pattern' | 'assisted' | ...
    transactionCount: int
    formatId: Optional[str]
    formatFingerprint: Optional[str]


class IngestionResult(TypedDict):
    """Output from IngestionPipeline.ingest"""
    analysisId: str
    transactionCount: int
    perFileMetadata: List[FileMetadata]
    transactions: List[Dict[str, Any]]


class ReenhanceResult(TypedDict):
    message: str
    enhanced: int
    total: int


# ─────────────────────────────────────────────────────────────
# Completion Response Models
# ─────────────────────────────────────────────────────────────

class MerchantMetadata(BaseModel):
    """One merchant classification returned by the completion service."""
    merchantType: Optional[str] = None
    merchantDescription: Optional[str] = None
    category: Optional[str] = None
    businessName: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @field_validator('category')
    @classmethod
    def normalize_category(cls, v):
        """Snap to the vocabulary's casing; anything unknown is kept as-is."""
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        for name in CATEGORY_VOCABULARY:
            if name.lower() == v.lower():
                return name
        return v

    @field_validator('latitude', 'longitude', mode='before')
    @classmethod
    def coerce_coordinate(cls, v):
        if v in (None, "", "null"):
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None


class FormatLesson(BaseModel):
    """Response of the format-learning call."""
    formatDescription: str = Field(..., min_length=1)
    procedure: Dict[str, Any]
    confidence: float = Field(0.8, ge=0.0, le=1.0)

    @field_validator('confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v):
        if v is None:
            return 0.8
        try:
            return min(max(float(v), 0.0), 1.0)
        except (TypeError, ValueError):
            return 0.8
