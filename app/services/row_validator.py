"""Row validation and normalization for lead CSV imports."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")
PHONE_STRIP = re.compile(r"[\s\-().]")

LEAD_FIELDS = ("email", "name", "phone", "company", "position")

FIELD_MAX_LENGTHS = {
    "email": 255,
    "name": 255,
    "phone": 20,
    "company": 255,
    "position": 255,
    "source": 100,
    "tags": 1000,
}

TRUE_VALUES = {"true", "yes", "y", "1"}
FALSE_VALUES = {"false", "no", "n", "0"}

# Header aliases recognised when no explicit mapping is configured
DEFAULT_FIELD_MAPPINGS = {
    "email": "email",
    "e-mail": "email",
    "email_address": "email",
    "mail": "email",
    "correo": "email",
    "name": "name",
    "full_name": "name",
    "nome": "name",
    "nombre": "name",
    "first_name": "name",
    "last_name": "name",
    "phone": "phone",
    "telephone": "phone",
    "telefone": "phone",
    "cell": "phone",
    "mobile": "phone",
    "celular": "phone",
    "company": "company",
    "empresa": "company",
    "organization": "company",
    "org": "company",
    "position": "position",
    "cargo": "position",
    "job_title": "position",
    "title": "position",
    "role": "position",
    "source": "source",
    "origem": "source",
    "lead_source": "source",
    "referral": "source",
    "tags": "tags",
    "tag": "tags",
    "categories": "tags",
    "categoria": "tags",
    "labels": "tags",
}

COLUMN_TYPES = ("string", "email", "phone", "number", "date", "boolean")


@dataclass(slots=True)
class ColumnRule:
    name: str
    type: str = "string"
    required: bool = False
    max_length: int | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "max_length": self.max_length,
        }


@dataclass(slots=True)
class CSVMappingConfig:
    columns: list[ColumnRule] = field(default_factory=list)
    field_mapping: dict[str, str] = field(default_factory=dict)
    skip_header: bool = True
    delimiter: str = ","
    encoding: str = "utf8"

    @classmethod
    def from_config(cls, processing_config: dict | None) -> "CSVMappingConfig":
        config = processing_config or {}
        columns = [
            ColumnRule(
                name=column["name"],
                type=column.get("type", "string"),
                required=bool(column.get("required", False)),
                max_length=column.get("max_length"),
            )
            for column in config.get("columns") or []
        ]
        return cls(
            columns=columns,
            field_mapping=dict(config.get("field_mapping") or {}),
            skip_header=config.get("skip_header", True),
            delimiter=config.get("delimiter") or ",",
            encoding=config.get("encoding") or "utf8",
        )

    @classmethod
    def from_header(
        cls,
        header: Iterable[str],
        required_fields: Iterable[str] = ("email",),
        **options: Any,
    ) -> "CSVMappingConfig":
        """Derive column rules from a CSV header using the default aliases."""
        required = set(required_fields)
        columns = []
        field_mapping = {}
        for column_name in header:
            key = column_name.strip().lower().replace(" ", "_")
            target = DEFAULT_FIELD_MAPPINGS.get(key, key)
            column_type = target if target in ("email", "phone") else "string"
            columns.append(
                ColumnRule(name=column_name, type=column_type, required=target in required)
            )
            field_mapping[column_name] = target
        return cls(columns=columns, field_mapping=field_mapping, **options)

    def to_config(self) -> dict:
        return {
            "columns": [column.to_dict() for column in self.columns],
            "field_mapping": dict(self.field_mapping),
            "skip_header": self.skip_header,
            "delimiter": self.delimiter,
            "encoding": self.encoding,
        }


@dataclass(slots=True)
class LeadFields:
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RowValidation:
    record_index: int
    raw_data: dict[str, Any]
    fields: LeadFields
    errors: dict[str, str]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_list(self) -> list[dict[str, Any]]:
        return [
            {
                "row": self.record_index,
                "column": column,
                "value": self.raw_data.get(column),
                "error_type": "validation",
                "error_message": message,
            }
            for column, message in self.errors.items()
        ]


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def normalize_phone(value: str) -> str:
    return PHONE_STRIP.sub("", value)


def is_valid_phone(value: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(value)))


def _parse_number(value: str) -> int | float:
    cleaned = value.replace(",", "")
    try:
        return int(cleaned)
    except ValueError:
        number = float(cleaned)
    if not math.isfinite(number):
        raise ValueError(f"not a finite number: {value}")
    return number


def _assign_string(fields: LeadFields, target: str, value: str) -> None:
    if target == "name":
        fields.name = f"{fields.name} {value}" if fields.name else value
    elif target == "company":
        fields.company = value
    elif target == "position":
        fields.position = value
    else:
        fields.custom_fields[target] = value


def validate_row(
    raw_row: dict[str, Any], mapping: CSVMappingConfig, row_index: int
) -> RowValidation:
    """
    Validate and normalize one raw CSV row.

    Every configured column is checked; errors accumulate per column and
    never stop the remaining columns from being validated.

    Args:
        raw_row: Row keyed by CSV column name
        mapping: Column rules and CSV column -> lead field mapping
        row_index: Global 0-based record offset of the row

    Returns:
        RowValidation with normalized fields and a per-column error map
    """
    fields = LeadFields()
    errors: dict[str, str] = {}

    for column in mapping.columns:
        target = mapping.field_mapping.get(column.name, column.name)
        raw_value = raw_row.get(column.name)
        value = "" if raw_value is None else str(raw_value).strip()

        if not value:
            if column.required:
                errors[column.name] = f"{column.name} is required"
            continue

        max_length = column.max_length or FIELD_MAX_LENGTHS.get(target)
        if max_length and len(value) > max_length:
            errors[column.name] = f"{column.name} exceeds {max_length} characters"
            continue

        if column.type == "email":
            if not is_valid_email(value):
                errors[column.name] = f"Invalid email format: {value}"
            else:
                fields.email = value.lower()

        elif column.type == "phone":
            if not is_valid_phone(value):
                errors[column.name] = f"Invalid phone format: {value}"
            else:
                fields.phone = normalize_phone(value)

        elif column.type == "string":
            _assign_string(fields, target, value)

        elif column.type == "number":
            try:
                fields.custom_fields[target] = _parse_number(value)
            except ValueError:
                errors[column.name] = f"Invalid number format: {value}"

        elif column.type == "boolean":
            lowered = value.lower()
            if lowered in TRUE_VALUES:
                fields.custom_fields[target] = True
            elif lowered in FALSE_VALUES:
                fields.custom_fields[target] = False
            else:
                errors[column.name] = f"Invalid boolean value: {value}"

        elif column.type == "date":
            try:
                fields.custom_fields[target] = date.fromisoformat(value).isoformat()
            except ValueError:
                errors[column.name] = f"Invalid date format: {value}"

        else:
            fields.custom_fields[target] = value

    return RowValidation(
        record_index=row_index,
        raw_data=dict(raw_row),
        fields=fields,
        errors=errors,
    )
