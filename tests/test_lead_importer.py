"""Tests for importing staged rows into leads."""
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from app.database import utcnow
from app.models.lead import Lead
from app.models.processing_batch import ProcessingBatch
from app.models.upload_job import UploadJob
from app.models.validated_row import ValidatedRow
from app.services.lead_importer import ImportResult, LeadImportConfig, LeadImporter


@pytest.fixture
def batch(db, workspace_id):
    job = UploadJob(
        workspace_id=workspace_id,
        user_id=uuid.uuid4(),
        filename="leads.csv",
        file_size=100,
        file_type="text/csv",
        chunk_size=100,
        total_chunks=1,
        status="processing",
        expires_at=utcnow(),
    )
    db.add(job)
    db.flush()
    batch = ProcessingBatch(
        upload_job_id=job.id, batch_index=0, start_record=0, end_record=0, batch_size=0
    )
    db.add(batch)
    db.commit()
    return batch


@pytest.fixture
def stage(db, batch):
    """Stage rows for the batch fixture."""

    def _stage(*rows):
        staged = []
        for index, row in enumerate(rows):
            values = {"is_valid": True, "custom_fields": {}, **row}
            staged_row = ValidatedRow(
                upload_job_id=batch.upload_job_id,
                batch_id=batch.id,
                record_index=index,
                raw_data={},
                validation_errors={},
                status="pending",
                **values,
            )
            db.add(staged_row)
            staged.append(staged_row)
        db.commit()
        return staged

    return _stage


def _import(db, batch, workspace_id, **config):
    return LeadImporter(db).import_validated_rows(
        batch.upload_job_id, batch.id, workspace_id, LeadImportConfig(**config)
    )


def _leads(db, workspace_id):
    return db.query(Lead).filter(Lead.workspace_id == workspace_id).order_by(Lead.email).all()


def test_new_leads_are_created(db, batch, stage, workspace_id):
    rows = stage(
        {"email": "ana@example.com", "name": "Ana", "company": "Acme", "custom_fields": {"city": "Lisbon"}},
        {"email": "bia@example.com", "name": "Bia"},
        {"email": "bad", "is_valid": False},
    )

    outcome = _import(db, batch, workspace_id, default_tags=["imported"])

    assert (outcome.created, outcome.updated, outcome.skipped) == (2, 0, 0)
    assert outcome.duplicates == []
    leads = _leads(db, workspace_id)
    assert [lead.email for lead in leads] == ["ana@example.com", "bia@example.com"]
    assert leads[0].source == "csv_import"
    assert leads[0].tags == ["imported"]
    assert leads[0].custom_fields == {"city": "Lisbon"}
    assert leads[0].status == "active"

    db.expire_all()
    assert [row.status for row in rows] == ["processed", "processed", "pending"]
    assert rows[0].processed_at is not None


def test_skip_policy_keeps_existing_lead(db, batch, stage, workspace_id):
    stage(
        {"email": "ana@example.com", "name": "Ana"},
        {"email": "ana@example.com", "name": "Ana Changed"},
    )

    outcome = _import(db, batch, workspace_id, duplicate_handling="skip")

    assert (outcome.created, outcome.updated, outcome.skipped) == (1, 0, 1)
    assert outcome.duplicates == ["ana@example.com"]
    assert _leads(db, workspace_id)[0].name == "Ana"


def test_overwrite_policy_updates_existing_lead(db, batch, stage, workspace_id):
    stage(
        {"email": "ana@example.com", "name": "Ana", "custom_fields": {"city": "Lisbon"}},
        {"email": "ana@example.com", "name": "Ana Changed", "custom_fields": {"tier": "gold"}},
    )

    outcome = _import(db, batch, workspace_id, duplicate_handling="overwrite")

    assert (outcome.created, outcome.updated, outcome.skipped) == (1, 1, 0)
    assert outcome.duplicates == ["ana@example.com"]
    lead = _leads(db, workspace_id)[0]
    assert lead.name == "Ana Changed"
    assert lead.custom_fields == {"city": "Lisbon", "tier": "gold"}


def test_unknown_policy_behaves_like_skip(db, batch, stage, workspace_id):
    stage({"email": "ana@example.com"}, {"email": "ana@example.com"})

    outcome = _import(db, batch, workspace_id, duplicate_handling="merge")

    assert (outcome.created, outcome.updated, outcome.skipped) == (1, 0, 1)


def test_leads_are_scoped_per_workspace(db, batch, stage, workspace_id):
    other_workspace = uuid.uuid4()
    db.add(Lead(workspace_id=other_workspace, email="ana@example.com", tags=[], custom_fields={}))
    db.commit()
    stage({"email": "ana@example.com"})

    outcome = _import(db, batch, workspace_id)

    assert outcome.created == 1
    assert db.query(Lead).filter(Lead.email == "ana@example.com").count() == 2


def test_processed_rows_are_not_imported_again(db, batch, stage, workspace_id):
    stage({"email": "ana@example.com"})
    _import(db, batch, workspace_id)

    outcome = _import(db, batch, workspace_id)

    assert (outcome.created, outcome.skipped) == (0, 0)


class RacingImporter(LeadImporter):
    """Inserts without looking up first, as a concurrent batch would."""

    def _import_row(self, row, workspace_id, import_config):
        self.db.add(Lead(workspace_id=workspace_id, email=row.email, tags=[], custom_fields={}))
        self.db.flush()
        return "created", False


def test_uniqueness_race_counts_as_duplicate(db, batch, stage, workspace_id):
    db.add(Lead(workspace_id=workspace_id, email="ana@example.com", tags=[], custom_fields={}))
    db.commit()
    rows = stage({"email": "ana@example.com"}, {"email": "bia@example.com"})

    outcome = RacingImporter(db).import_validated_rows(
        batch.upload_job_id, batch.id, workspace_id, LeadImportConfig()
    )

    assert (outcome.created, outcome.skipped) == (1, 1)
    assert outcome.duplicates == ["ana@example.com"]
    db.expire_all()
    assert [row.status for row in rows] == ["processed", "processed"]


class FlakyImporter(LeadImporter):
    """Fails with a store error for one email."""

    def _import_row(self, row, workspace_id, import_config):
        if row.email == "bad@example.com":
            raise OperationalError("INSERT INTO leads", {}, Exception("connection reset"))
        return super()._import_row(row, workspace_id, import_config)


def test_row_store_error_is_skipped_and_left_pending(db, batch, stage, workspace_id):
    rows = stage({"email": "bad@example.com"}, {"email": "ana@example.com"})

    outcome = FlakyImporter(db).import_validated_rows(
        batch.upload_job_id, batch.id, workspace_id, LeadImportConfig()
    )

    assert (outcome.created, outcome.skipped) == (1, 1)
    assert outcome.duplicates == []
    db.expire_all()
    assert [row.status for row in rows] == ["pending", "processed"]


def test_import_config_from_job():
    config = LeadImportConfig.from_job(
        {"import": {"source": "fair-2024", "default_tags": ["fair"]}},
        {"duplicate_handling": "overwrite"},
    )

    assert config.duplicate_handling == "overwrite"
    assert config.source == "fair-2024"
    assert config.default_tags == ["fair"]

    assert LeadImportConfig.from_job({}, {}).policy == "skip"
    assert LeadImportConfig(duplicate_handling="merge").policy == "skip"


def test_import_results_merge():
    first = ImportResult(total_processed=3, created=2, skipped=1, duplicate_emails=["a@x.io"])
    second = ImportResult(total_processed=2, updated=1, failed=1, invalid_emails=["bad"])

    merged = first.merge(second)

    assert merged.total_processed == 5
    assert (merged.created, merged.updated, merged.skipped, merged.failed) == (2, 1, 1, 1)
    assert merged.duplicate_emails == ["a@x.io"]
    assert merged.invalid_emails == ["bad"]


def test_row_outcomes_are_recorded_on_staging_rows(db, batch, stage, workspace_id):
    db.add(Lead(workspace_id=workspace_id, email="ana@example.com", tags=[], custom_fields={}))
    db.commit()
    rows = stage({"email": "ana@example.com"}, {"email": "bia@example.com"}, {"email": None})

    _import(db, batch, workspace_id)

    db.expire_all()
    assert [(row.import_action, row.is_duplicate) for row in rows] == [
        ("skipped", True),
        ("created", False),
        ("skipped", False),
    ]
    previous = LeadImporter(db).processed_outcome(batch.id)
    assert (previous.created, previous.updated, previous.skipped) == (1, 0, 2)
    assert previous.duplicates == ["ana@example.com"]


def test_overwrite_replaces_tags(db, batch, stage, workspace_id):
    db.add(Lead(workspace_id=workspace_id, email="ana@example.com", tags=["old"], custom_fields={}))
    db.commit()
    stage({"email": "ana@example.com", "name": "Ana"})

    _import(db, batch, workspace_id, duplicate_handling="overwrite", default_tags=["fair"])

    db.expire_all()
    assert _leads(db, workspace_id)[0].tags == ["fair"]
