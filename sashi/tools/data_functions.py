"""Generic data-processing functions available to every workflow."""

import csv
import dataclasses
import io
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from sashi.tools.base import FunctionDefinition, ai_function
from sashi.tools.registry import FunctionRegistry

DATA_PARSING_TOOL = "parse_csv"
REPORT_TOOL = "create_report"


class ParseCSVInput(BaseModel):
    """Input schema for parse_csv."""

    csv_text: str = Field(..., description="CSV text to parse, first line is the header")
    delimiter: str = Field(",", min_length=1, max_length=1, description="Column delimiter (default: comma)")


class ToCSVInput(BaseModel):
    """Input schema for to_csv."""

    data: list[dict[str, Any]] = Field(..., description="Array of objects to convert")
    columns: list[str] | None = Field(None, description="Specific columns to include (optional)")


class GroupByInput(BaseModel):
    """Input schema for group_by."""

    data: list[dict[str, Any]] = Field(..., description="Array of objects to group")
    field: str = Field(..., description="Field whose value decides the group")


class SummarizeDataInput(BaseModel):
    """Input schema for summarize_data."""

    data: list[dict[str, Any]] = Field(..., description="Array to summarize")


class CreateReportInput(BaseModel):
    """Input schema for create_report."""

    title: str = Field(..., min_length=1, description="Report title")
    data: Any = Field(..., description="Report body: text or any structured data")


@ai_function(DATA_PARSING_TOOL, "Parse CSV text into a structured array of objects", ParseCSVInput)
async def parse_csv(params: ParseCSVInput) -> list[dict[str, Any]]:
    text = params.csv_text.strip()
    if not text:
        return []

    reader = csv.reader(io.StringIO(text), delimiter=params.delimiter)
    header = [column.strip() for column in next(reader)]
    if len(header) < 2 and params.delimiter not in text.splitlines()[0]:
        raise ValueError(f"Invalid CSV format: no '{params.delimiter}' delimiter in header")

    rows = []
    for index, values in enumerate(reader):
        row: dict[str, Any] = {
            column: values[i].strip() if i < len(values) else "" for i, column in enumerate(header)
        }
        row["_index"] = index
        rows.append(row)
    return rows


@ai_function("to_csv", "Convert an array of objects to CSV text", ToCSVInput)
async def to_csv(params: ToCSVInput) -> str:
    if not params.data:
        return ""

    columns = params.columns or list(params.data[0].keys())
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    writer.writerows(params.data)
    return buffer.getvalue().rstrip("\n")


@ai_function("group_by", "Group array items by a specific field value", GroupByInput)
async def group_by(params: GroupByInput) -> dict[str, list[dict[str, Any]]]:
    if params.data and not any(params.field in item for item in params.data):
        raise ValueError(f"Field '{params.field}' not found in data")

    groups: dict[str, list[dict[str, Any]]] = {}
    for item in params.data:
        groups.setdefault(str(item.get(params.field)), []).append(item)
    return groups


@ai_function("summarize_data", "Create a summary overview of a dataset with key statistics", SummarizeDataInput)
async def summarize_data(params: SummarizeDataInput) -> dict[str, Any]:
    if not params.data:
        return {"totalRecords": 0, "fields": [], "summary": "No data provided"}

    fields = list(params.data[0].keys())
    field_types: dict[str, Any] = {}
    for field in fields:
        values = [item.get(field) for item in params.data if item.get(field) is not None]
        numeric = all(_is_number(value) for value in values) and bool(values)
        field_types[field] = {
            "type": "numeric" if numeric else "text",
            "uniqueValues": len({str(value) for value in values}),
            "nullCount": len(params.data) - len(values),
        }

    return {
        "totalRecords": len(params.data),
        "fields": fields,
        "fieldTypes": field_types,
        "summary": f"Dataset with {len(params.data)} records and {len(fields)} fields",
    }


@ai_function(REPORT_TOOL, "Create a titled report for the user from text or structured data", CreateReportInput)
async def create_report(params: CreateReportInput) -> dict[str, Any]:
    return {
        "title": params.title,
        "body": params.data,
        "generatedAt": datetime.now(UTC).isoformat(),
    }


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


DEFAULT_FUNCTIONS: list[FunctionDefinition] = [parse_csv, to_csv, group_by, summarize_data, create_report]


def register_default_functions(registry: FunctionRegistry) -> None:
    """Register fresh copies of the generic data functions into `registry`."""
    for function in DEFAULT_FUNCTIONS:
        registry.register(dataclasses.replace(function))
