"""Declarations of the BigQuery capabilities the model may call.

Only the interface lives here; the implementations are supplied by the host
application and registered on a :class:`~querypilot.ai.orchestration.tool_dispatcher.ToolCallDispatcher`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

__all__ = [
    "ToolSpec",
    "ToolCategory",
    "LIST_DATASETS",
    "LIST_TABLES",
    "GET_TABLE_SCHEMA",
    "RUN_QUERY",
    "FORECAST",
    "BIGQUERY_TOOLS",
    "openai_tools",
]


class ToolCategory:
    """Standard tool categories for organization."""

    DISCOVERY = "discovery"
    QUERY = "query"
    ANALYSIS = "analysis"


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Model-facing declaration of a tool.

    Attributes:
        name: Unique identifier for the tool.
        description: What the tool does and when the model should use it.
        parameters: JSON Schema for the tool arguments.
        category: Tool category for organization.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.DISCOVERY

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required") or ())


def _object_schema(properties: Mapping[str, Mapping[str, Any]], required: Iterable[str] = ()) -> dict[str, Any]:
    return {"type": "object", "properties": dict(properties), "required": list(required)}


LIST_DATASETS = ToolSpec(
    name="list_datasets",
    description="Lists all available BigQuery datasets in the project. Use this to discover what datasets are available.",
    parameters=_object_schema({}),
)

LIST_TABLES = ToolSpec(
    name="list_tables",
    description="Lists all tables in a specific BigQuery dataset. Use this to see what tables are available in a dataset.",
    parameters=_object_schema(
        {"datasetId": {"type": "string", "description": "The ID of the dataset to list tables from"}},
        required=("datasetId",),
    ),
)

GET_TABLE_SCHEMA = ToolSpec(
    name="get_table_schema",
    description=(
        "Gets the schema and metadata for a specific table. "
        "Use this to understand the structure of a table before querying it."
    ),
    parameters=_object_schema(
        {
            "datasetId": {"type": "string", "description": "The ID of the dataset containing the table"},
            "tableId": {"type": "string", "description": "The ID of the table to get schema for"},
        },
        required=("datasetId", "tableId"),
    ),
)

RUN_QUERY = ToolSpec(
    name="run_query",
    description="Executes a SQL query against BigQuery and returns the results. Use this to answer questions about the data.",
    parameters=_object_schema(
        {
            "sqlQuery": {"type": "string", "description": "The SQL query to execute"},
            "maxResults": {"type": "number", "description": "Maximum number of results to return (default: 100)"},
        },
        required=("sqlQuery",),
    ),
    category=ToolCategory.QUERY,
)

FORECAST = ToolSpec(
    name="forecast",
    description=(
        "Creates a time series forecast using a BigQuery ML ARIMA_PLUS model. Use this when asked to "
        "predict or forecast future trends based on historical time series data."
    ),
    parameters=_object_schema(
        {
            "datasetId": {"type": "string", "description": "The ID of the dataset containing the time series table"},
            "tableId": {"type": "string", "description": "The ID of the table with time series data"},
            "dateColumn": {"type": "string", "description": "The column containing timestamp/date values"},
            "valueColumn": {"type": "string", "description": "The column containing the values to forecast"},
            "horizonDays": {"type": "number", "description": "Number of days to forecast (default: 30)"},
        },
        required=("datasetId", "tableId", "dateColumn", "valueColumn"),
    ),
    category=ToolCategory.ANALYSIS,
)

BIGQUERY_TOOLS: tuple[ToolSpec, ...] = (LIST_DATASETS, LIST_TABLES, GET_TABLE_SCHEMA, RUN_QUERY, FORECAST)


def openai_tools(specs: Iterable[ToolSpec] = BIGQUERY_TOOLS) -> list[dict[str, Any]]:
    return [spec.to_openai_tool() for spec in specs]
