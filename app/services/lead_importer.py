"""Import validated staging rows into the leads table."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.lead import Lead
from app.models.validated_row import ValidatedRow

logger = logging.getLogger(__name__)

DUPLICATE_POLICIES = ("skip", "overwrite")


@dataclass(slots=True)
class LeadImportConfig:
    duplicate_handling: str = "skip"
    source: str = "csv_import"
    default_tags: list[str] = field(default_factory=list)
    tag_new_leads: bool = True

    @classmethod
    def from_job(cls, processing_config: dict | None, validation_rules: dict | None) -> "LeadImportConfig":
        options = dict((processing_config or {}).get("import") or {})
        rules = validation_rules or {}
        return cls(
            duplicate_handling=options.get("duplicate_handling")
            or rules.get("duplicate_handling")
            or "skip",
            source=options.get("source") or "csv_import",
            default_tags=list(options.get("default_tags") or []),
            tag_new_leads=options.get("tag_new_leads", True),
        )

    @property
    def policy(self) -> str:
        # Unknown policies behave like skip
        return self.duplicate_handling if self.duplicate_handling in DUPLICATE_POLICIES else "skip"


@dataclass(slots=True)
class ImportOutcome:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    duplicates: list[str] = field(default_factory=list)

    def record(self, action: str, email: str | None, duplicate: bool = False) -> None:
        setattr(self, action, getattr(self, action) + 1)
        if duplicate:
            self.duplicates.append(email)

    def merge(self, other: "ImportOutcome") -> "ImportOutcome":
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.duplicates.extend(other.duplicates)
        return self


@dataclass(slots=True)
class ImportResult:
    total_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    validation_errors: list[dict[str, Any]] = field(default_factory=list)
    duplicate_emails: list[str] = field(default_factory=list)
    invalid_emails: list[str] = field(default_factory=list)

    def merge(self, other: "ImportResult") -> "ImportResult":
        self.total_processed += other.total_processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.validation_errors.extend(other.validation_errors)
        self.duplicate_emails.extend(other.duplicate_emails)
        self.invalid_emails.extend(other.invalid_emails)
        return self

    def add_outcome(self, outcome: ImportOutcome) -> None:
        self.created += outcome.created
        self.updated += outcome.updated
        self.skipped += outcome.skipped
        self.duplicate_emails.extend(outcome.duplicates)

    def to_dict(self, max_errors: int | None = None) -> dict[str, Any]:
        errors = self.validation_errors if max_errors is None else self.validation_errors[:max_errors]
        return {
            "total_processed": self.total_processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "validation_errors": errors,
            "duplicate_emails": self.duplicate_emails,
            "invalid_emails": self.invalid_emails,
        }


class LeadImporter:
    """
    Commits validated rows of one batch into the leads table.

    Each row is looked up by (workspace, email) and inserted, updated or
    skipped in its own transaction. A row that fails is rolled back, logged
    and counted as skipped so it cannot fail the surrounding batch. The
    action taken is stored on the staging row.
    """

    def __init__(self, db: Session):
        self.db = db

    def import_validated_rows(
        self,
        job_id: UUID,
        batch_id: UUID,
        workspace_id: UUID,
        import_config: LeadImportConfig,
    ) -> ImportOutcome:
        """
        Import the valid, not yet processed staging rows of a batch.

        Args:
            job_id: Upload job ID
            batch_id: Processing batch ID
            workspace_id: Tenant the leads belong to
            import_config: Duplicate policy and lead defaults

        Returns:
            ImportOutcome with created/updated/skipped counts and duplicate emails
        """
        outcome = ImportOutcome()
        row_ids = [
            row_id
            for (row_id,) in self.db.query(ValidatedRow.id)
            .filter(
                ValidatedRow.batch_id == batch_id,
                ValidatedRow.is_valid.is_(True),
                ValidatedRow.status == "pending",
            )
            .order_by(ValidatedRow.record_index)
            .all()
        ]

        logger.debug(f"🔄 Importing {len(row_ids)} validated rows for batch {batch_id}")

        for row_id in row_ids:
            row = self.db.get(ValidatedRow, row_id)
            email = row.email
            if not email:
                logger.warning(f"⚠️ Row {row.record_index} of job {job_id} has no email, skipping")
                outcome.record("skipped", email)
                self._mark_processed(row_id, "skipped")
                continue
            try:
                action, duplicate = self._import_row(row, workspace_id, import_config)
                row.status = "processed"
                row.import_action = action
                row.is_duplicate = duplicate
                row.processed_at = utcnow()
                self.db.commit()
                outcome.record(action, email, duplicate)
            except IntegrityError:
                # Another batch inserted the same email between lookup and insert
                self.db.rollback()
                logger.warning(f"⚠️ Concurrent insert for {email} in job {job_id}, treating as duplicate")
                outcome.record("skipped", email, duplicate=True)
                self._mark_processed(row_id, "skipped", duplicate=True)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Error importing lead {email} for job {job_id}: {e}")
                outcome.record("skipped", email)

        logger.debug(
            f"✅ Batch {batch_id} imported: created={outcome.created}, "
            f"updated={outcome.updated}, skipped={outcome.skipped}"
        )
        return outcome

    def processed_outcome(self, batch_id: UUID) -> ImportOutcome:
        """Outcome of the rows of a batch already imported by earlier attempts."""
        outcome = ImportOutcome()
        rows = (
            self.db.query(ValidatedRow.import_action, ValidatedRow.email, ValidatedRow.is_duplicate)
            .filter(ValidatedRow.batch_id == batch_id, ValidatedRow.status == "processed")
            .order_by(ValidatedRow.record_index)
            .all()
        )
        for action, email, duplicate in rows:
            outcome.record(action or "skipped", email, duplicate)
        return outcome

    def _import_row(
        self,
        row: ValidatedRow,
        workspace_id: UUID,
        import_config: LeadImportConfig,
    ) -> tuple[str, bool]:
        """Insert, update or skip one row; returns (action, is_duplicate)."""
        tags = list(import_config.default_tags) if import_config.tag_new_leads else []
        existing = (
            self.db.query(Lead)
            .filter(Lead.workspace_id == workspace_id, Lead.email == row.email)
            .first()
        )

        if existing is None:
            self.db.add(
                Lead(
                    workspace_id=workspace_id,
                    email=row.email,
                    name=row.name,
                    phone=row.phone,
                    company=row.company,
                    position=row.position,
                    source=import_config.source,
                    tags=tags,
                    custom_fields=dict(row.custom_fields or {}),
                    status="active",
                )
            )
            self.db.flush()
            return "created", False

        if import_config.policy != "overwrite":
            return "skipped", True

        existing.name = row.name
        existing.phone = row.phone
        existing.company = row.company
        existing.position = row.position
        existing.source = import_config.source
        existing.tags = tags
        existing.custom_fields = {**(existing.custom_fields or {}), **(row.custom_fields or {})}
        return "updated", True

    def _mark_processed(self, row_id: UUID, action: str, duplicate: bool = False) -> None:
        try:
            row = self.db.get(ValidatedRow, row_id)
            row.status = "processed"
            row.import_action = action
            row.is_duplicate = duplicate
            row.processed_at = utcnow()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to mark staging row {row_id} processed: {e}")
