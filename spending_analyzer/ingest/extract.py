import io
import base64
import logging
from typing import List, Dict, Any

import pdfplumber
import pandas as pd


class PDFReader:
    def read_text(self, content: bytes) -> str:
        """
        Extract the full text of a PDF, pages joined by newlines.
        Some banks prepend bytes before the %PDF- marker; those are dropped.
        """
        start = content.find(b'%PDF-')
        if start > 0:
            logging.info(f"[PDF Parser] Stripping {start}-byte prefix before %PDF- marker")
            content = content[start:]

        pages = []
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for page in pdf.pages:
                text = page.extract_text()
                if text:
                    pages.append(text)

        text = "\n".join(pages)
        logging.info(f"[PDF Parser] Extracted {len(text)} characters of text from PDF")
        return text


class CSVReader:
    def read_rows(self, content: bytes) -> List[Dict[str, Any]]:
        df = pd.read_csv(
            io.BytesIO(content),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding_errors='ignore',
        )
        df.columns = [str(c).strip() for c in df.columns]
        rows = [
            {k: (v.strip() if isinstance(v, str) else v) for k, v in row.items()}
            for row in df.to_dict(orient='records')
        ]
        rows = [r for r in rows if any(str(v).strip() for v in r.values())]
        logging.info(f"[CSV Parser] Found {len(rows)} rows")
        return rows


class TextReader:
    def read_text(self, content: bytes) -> str:
        return content.decode('utf-8', errors='ignore')


class ImageReader:
    """Raw base64, as the Ollama images field expects; no data-URL prefix."""

    def encode(self, content: bytes) -> str:
        return base64.b64encode(content).decode('ascii')

