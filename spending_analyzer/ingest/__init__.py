"""
Ingest Package - Bank statement ingestion and transaction extraction

Modules:
- detect: container type and issuing bank detection
- fingerprint: layout fingerprint of a statement's first page
- formats: learned per-fingerprint extraction procedures
- procedure: declarative procedure DSL and isolated replay
- patterns: regex/heuristic extraction and normalisation
- engine: per-document extraction with strategy fallback
- enrich: merchant classification with a read-through cache
- pipeline: main orchestrator
- schema: TypedDict and pydantic definitions
"""
from .pipeline import IngestionPipeline
from .engine import TransactionExtractionEngine
from .enrich import MerchantEnrichmentEngine
from .formats import FormatLearningStore
from .schema import IngestionResult, FileMetadata, ReenhanceResult

__all__ = [
    'IngestionPipeline', 'TransactionExtractionEngine', 'MerchantEnrichmentEngine',
    'FormatLearningStore', 'IngestionResult', 'FileMetadata', 'ReenhanceResult',
]
