from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from datetime import datetime


@dataclass
class UploadedDocument:
    filename: str
    content: bytes


@dataclass
class DetectedFormat:
    container_type: Optional[str]
    bank_name: str = "Unknown"
    statement_type: str = "unknown"


@dataclass
class RawTransaction:
    date: str
    description: str
    amount: float
    merchant: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "description": self.description,
            "amount": self.amount,
            "merchant": self.merchant,
        }


@dataclass
class EnrichedTransaction(RawTransaction):
    business_name: Optional[str] = None
    merchant_type: Optional[str] = None
    location: Optional[str] = None
    merchant_description: Optional[str] = None
    category: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def passthrough(cls, txn: RawTransaction) -> "EnrichedTransaction":
        return cls(date=txn.date, description=txn.description, amount=txn.amount, merchant=txn.merchant)

    @property
    def is_enriched(self) -> bool:
        return self.merchant_type is not None or self.category is not None

    def original_data(self) -> Dict[str, Any]:
        """Enrichment payload stored alongside the transaction row."""
        data = {
            "merchantType": self.merchant_type,
            "merchantDescription": self.merchant_description,
            "rawDescription": self.description,
        }
        if self.business_name is not None:
            data["businessName"] = self.business_name
        if self.location is not None:
            data["location"] = self.location
        if self.latitude is not None or self.longitude is not None:
            data["latitude"] = self.latitude
            data["longitude"] = self.longitude
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "businessName": self.business_name,
            "merchantType": self.merchant_type,
            "location": self.location,
            "merchantDescription": self.merchant_description,
            "category": self.category,
            "latitude": self.latitude,
            "longitude": self.longitude,
        })
        return data


@dataclass
class MerchantCacheEntry:
    merchant_type: Optional[str]
    merchant_description: Optional[str]
    category: Optional[str]


@dataclass
class LearnedFormat:
    id: str
    fingerprint: str
    bank_name: str
    statement_type: str
    procedure: Dict[str, Any]
    description: str
    sample_first_page: str = ""
    sample_transactions: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.8
    learned_at: Optional[str] = None
    last_used_at: Optional[str] = None
    use_count: int = 0

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "LearnedFormat":
        return cls(
            id=row["id"],
            fingerprint=row["formatFingerprint"],
            bank_name=row.get("bankName") or "Unknown",
            statement_type=row.get("statementType") or "unknown",
            procedure=row.get("extractionProcedure") or {},
            description=row.get("formatDescription") or "",
            sample_first_page=row.get("sampleFirstPage") or "",
            sample_transactions=row.get("sampleTransactions") or [],
            confidence=float(row.get("confidence") or 0.8),
            learned_at=row.get("learnedAt"),
            last_used_at=row.get("lastUsedAt"),
            use_count=int(row.get("useCount") or 0),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "formatFingerprint": self.fingerprint,
            "bankName": self.bank_name,
            "statementType": self.statement_type,
            "extractionProcedure": self.procedure,
            "formatDescription": self.description,
            "sampleFirstPage": self.sample_first_page,
            "sampleTransactions": self.sample_transactions,
            "confidence": self.confidence,
            "learnedAt": self.learned_at or datetime.now().isoformat(),
            "lastUsedAt": self.last_used_at or datetime.now().isoformat(),
            "useCount": self.use_count,
        }


@dataclass
class ExtractionResult:
    filename: str
    transactions: List[RawTransaction]
    method: str
    detected: DetectedFormat
    fingerprint: Optional[str] = None
    format_id: Optional[str] = None

    def metadata(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "containerType": self.detected.container_type,
            "bankName": self.detected.bank_name,
            "statementType": self.detected.statement_type,
            "extractionMethod": self.method,
            "transactionCount": len(self.transactions),
            "formatId": self.format_id,
            "formatFingerprint": self.fingerprint,
        }
