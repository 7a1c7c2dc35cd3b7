"""
Debug script to show what the ingestion pipeline sees in a PDF statement:
extracted text, detected bank, fingerprint and pattern-extraction candidates.

Usage: python dump_pdf_text.py path/to/statement.pdf
"""
import sys

from spending_analyzer.ingest.detect import DocumentTypeDetector
from spending_analyzer.ingest.extract import PDFReader
from spending_analyzer.ingest.fingerprint import fingerprint, normalize_layout
from spending_analyzer.ingest.patterns import PatternExtractor


def dump(path):
    with open(path, 'rb') as f:
        text = PDFReader().read_text(f.read())

    detected = DocumentTypeDetector().detect(path, text)
    print(f"Characters extracted: {len(text)}")
    print(f"Bank: {detected.bank_name} ({detected.statement_type})")

    print(f"\n{'='*60}")
    print("FINGERPRINT")
    print(f"{'='*60}")
    print(fingerprint(text))
    print(f"\n--- Normalized layout (first 500 chars) ---")
    print(normalize_layout(text)[:500])

    print(f"\n--- Raw Text (first 40 lines) ---")
    for i, line in enumerate(text.split('\n')[:40]):
        print(f"[{i}] {line}")

    extractor = PatternExtractor()
    candidates = extractor.find_candidates(text)
    print(f"\n--- Pattern candidates: {len(candidates)} (accepted at >= {extractor.min_transactions}) ---")
    for row in candidates[:20]:
        print(row)


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python dump_pdf_text.py <statement.pdf>")
        sys.exit(1)
    dump(sys.argv[1])
