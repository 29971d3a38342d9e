"""
Local copies of the output document.

Writes the exact JSON document that is uploaded, and optionally a CSV view over
a chosen subset of row fields for people reviewing the export.
"""

import os
import csv
import logging
from typing import List, Sequence

from profile_import.shaping import NormalizedRow, OutputDocument

logger = logging.getLogger(__name__)


def write_document(document: OutputDocument, output_dir: str, file_name: str) -> str:
    """
    Write the serialized output document to disk.

    Args:
        document: Document to write
        output_dir: Directory receiving the file (created if missing)
        file_name: File name

    Returns:
        Path of the written file
    """
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, file_name)

    with open(path, 'wb') as f:
        f.write(document.to_bytes())

    logger.info(f"Wrote {len(document)} rows to {path}")
    return path


def write_csv_projection(rows: Sequence[NormalizedRow], fields: List[str], path: str) -> str:
    """
    Write a CSV with one column per chosen field.

    Raises:
        ValueError: If no fields are given or a field is not produced by shaping
    """
    if not fields:
        raise ValueError("At least one field is required for the CSV projection")

    if rows:
        known = set(rows[0].fields)
        unknown = [name for name in fields if name not in known]
        if unknown:
            raise ValueError(f"Unknown CSV fields: {', '.join(unknown)}")

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fields, extrasaction='ignore', restval='')
        writer.writeheader()
        for row in rows:
            writer.writerow(row.to_dict())

    logger.info(f"Wrote CSV projection of {len(rows)} rows ({len(fields)} columns) to {path}")
    return path
