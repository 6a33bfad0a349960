from typing import Any, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from pagetrail.models import ExecutionRequest

DEFAULT_MAX_ITERATIONS = 10


class ExecutePaginatedRequest(BaseModel):
    """Request body for POST /execute/paginated (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    method:         str
    url:            str
    max_iterations: StrictInt      = Field(DEFAULT_MAX_ITERATIONS, alias="maxIterations", ge=1)
    query_params:   dict[str, str] = Field(default_factory=dict, alias="queryParams")
    headers:        dict[str, str] = Field(default_factory=dict)
    body:           Any            = None
    table_name:     Optional[str]  = Field(None, alias="tableName")
    save_data:      bool           = Field(False, alias="saveData")

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("method is required")
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"must be an absolute http(s) URL, got {v!r}")
        return v

    @field_validator("max_iterations", mode="before")
    @classmethod
    def default_max_iterations(cls, v: Any) -> Any:
        return DEFAULT_MAX_ITERATIONS if v is None else v

    @field_validator("query_params", "headers", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Any:
        # Scalars become strings; null means an empty value
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    def to_request(self) -> ExecutionRequest:
        return ExecutionRequest(
            method=self.method,
            url=self.url,
            query_params=self.query_params,
            headers=self.headers,
            body=self.body,
            max_iterations=self.max_iterations,
            table_name=self.table_name or None,
            save_data=self.save_data,
        )
