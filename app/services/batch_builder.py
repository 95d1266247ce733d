"""Streaming CSV batch builder."""
import codecs
import csv
import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.exceptions import CorruptedFile, QuotaExceeded, ValidationFailed
from app.models.processing_batch import ProcessingBatch
from app.models.upload_job import UploadJob
from app.services.chunk_store import ChunkStore
from app.services.row_validator import CSVMappingConfig

logger = logging.getLogger(__name__)

ENCODING_ALIASES = {
    "utf8": "utf-8-sig",
    "utf-8": "utf-8-sig",
    "latin1": "latin-1",
    "utf16le": "utf-16-le",
}


def resolve_encoding(name: str) -> str:
    """Map a configured encoding name to a Python codec."""
    encoding = ENCODING_ALIASES.get(name.lower(), name)
    try:
        codecs.lookup(encoding)
    except LookupError as e:
        raise ValidationFailed(f"Unsupported encoding: {name}") from e
    return encoding


class BatchBuilder:
    """
    Slices a reassembled CSV file into ProcessingBatch rows.

    Rows are read through csv.reader straight off the chunk files, and every
    full batch is committed before parsing continues, so peak memory stays at
    one batch regardless of file size.
    """

    def __init__(self, db: Session, chunk_store: ChunkStore, settings: Optional[Settings] = None):
        self.db = db
        self.chunk_store = chunk_store
        self.settings = settings or get_settings()

    def build(self, job: UploadJob, batch_size: Optional[int] = None) -> List[UUID]:
        """
        Parse the job's file and persist its processing batches.

        Args:
            job: Upload job whose chunks are all uploaded
            batch_size: Rows per batch (defaults to settings.batch_size)

        Returns:
            Batch IDs in batch index order
        """
        batch_size = batch_size or self.settings.batch_size
        max_records = self.settings.max_records_per_file
        mapping = CSVMappingConfig.from_config(job.processing_config)
        encoding = resolve_encoding(mapping.encoding)

        logger.info(f"⚙️ Building batches for job {job.id}: batch_size={batch_size}")

        batch_ids: List[UUID] = []
        current: List[Dict[str, str]] = []
        total = 0

        try:
            with self.chunk_store.open_text(job.id, job.total_chunks, encoding) as stream:
                reader = csv.reader(stream, delimiter=mapping.delimiter)

                header = self._read_header(reader, mapping)
                if not mapping.columns:
                    mapping = CSVMappingConfig.from_header(
                        header,
                        required_fields=(job.validation_rules or {}).get("required_fields", ["email"]),
                        skip_header=mapping.skip_header,
                        delimiter=mapping.delimiter,
                        encoding=mapping.encoding,
                    )
                    job.processing_config = {**(job.processing_config or {}), **mapping.to_config()}

                for row in reader:
                    if not any(cell.strip() for cell in row):
                        continue

                    total += 1
                    if total > max_records:
                        raise QuotaExceeded(
                            f"File exceeds the maximum of {max_records} records"
                        )

                    current.append(self._row_to_record(header, row))

                    if len(current) >= batch_size:
                        batch_ids.append(self._save_batch(job, len(batch_ids), batch_size, current))
                        current = []

                if current:
                    batch_ids.append(self._save_batch(job, len(batch_ids), batch_size, current))
        except UnicodeDecodeError as e:
            raise CorruptedFile(f"File is not valid {mapping.encoding}: {e}") from e
        except csv.Error as e:
            raise CorruptedFile(f"Malformed CSV: {e}") from e

        job.total_records = total
        self.db.commit()

        logger.info(f"✅ Built {len(batch_ids)} batches for job {job.id}: total_records={total}")
        return batch_ids

    @staticmethod
    def _read_header(reader, mapping: CSVMappingConfig) -> List[str]:
        if mapping.skip_header:
            for row in reader:
                if any(cell.strip() for cell in row):
                    return [cell.strip() for cell in row]
            return []
        return [column.name for column in mapping.columns]

    @staticmethod
    def _row_to_record(header: List[str], row: List[str]) -> Dict[str, str]:
        record = {}
        for position, value in enumerate(row):
            name = header[position] if position < len(header) else f"column_{position}"
            record[name] = value
        for name in header[len(row):]:
            record[name] = ""
        return record

    def _save_batch(
        self, job: UploadJob, batch_index: int, batch_size: int, rows: List[Dict[str, str]]
    ) -> UUID:
        start_record = batch_index * batch_size
        batch = ProcessingBatch(
            upload_job_id=job.id,
            batch_index=batch_index,
            start_record=start_record,
            end_record=start_record + len(rows),
            batch_size=len(rows),
            status="pending",
            processing_progress=0,
            total_records=len(rows),
            valid_records=0,
            invalid_records=0,
            raw_rows=rows,
            validation_errors=[],
            import_summary={},
            retry_count=0,
        )
        self.db.add(batch)
        self.db.commit()
        logger.info(f"📦 Saved batch {batch_index} for job {job.id} ({len(rows)} rows)")
        return batch.id
