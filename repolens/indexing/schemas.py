"""Response models for the indexing operations."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StartIndexingResponse(BaseModel):
    """Result of a start request."""
    job_id: str = Field(..., description="Identifier of the new job")
    status: str = Field(..., description="Initial job status")


class CancelIndexingResponse(BaseModel):
    """Result of a cancel request."""
    job_id: str = Field(..., description="Cancelled job")
    status: str = Field(default="cancelled", description="Always cancelled")


class IndexingStatus(BaseModel):
    """Snapshot of a repository's indexing state, safe to poll."""
    status: str = Field(..., description="Job status; completed jobs read as indexed")
    is_indexed: bool = Field(..., description="Whether any job ever completed for the repository")
    job_id: Optional[str] = Field(default=None, description="Latest job id")
    progress: Optional[int] = Field(default=None, ge=0, le=100, description="Overall percent complete")
    files_total: Optional[int] = Field(default=None, description="Files selected for indexing")
    files_processed: Optional[int] = Field(default=None, description="Files chunked so far")
    chunks_created: Optional[int] = Field(default=None, description="Chunks produced so far")
    current_phase: Optional[str] = Field(default=None, description="Human readable phase")
    error: Optional[str] = Field(default=None, description="Failure cause, only for failed jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status in {"indexed", "failed", "cancelled"}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
