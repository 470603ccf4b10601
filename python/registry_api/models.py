"""
Pydantic request/response schemas for the GN Registry API
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


# ============================================
# LIST VIEWS
# ============================================

class PageLinks(BaseModel):
    """Navigation links that preserve the active filters."""
    first: Optional[str] = None
    last: Optional[str] = None
    previous: Optional[str] = None
    next: Optional[str] = None
    remove: Dict[str, str] = Field(
        default_factory=dict,
        description="Per active filter: link dropping that filter and returning to page 1"
    )


class ListResponse(BaseModel):
    """One page of a filtered list view."""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    total_count: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    sort: str
    direction: str
    has_previous: bool
    has_next: bool
    first_item: int = Field(..., ge=0)
    last_item: int = Field(..., ge=0)
    page_window: List[int] = Field(default_factory=list)
    filters: Dict[str, str] = Field(default_factory=dict)
    links: PageLinks = Field(default_factory=PageLinks)


# ============================================
# STATISTICS
# ============================================

class StatisticsResponse(BaseModel):
    """Rollup statistics for one jurisdiction."""
    jurisdiction_id: int
    level: str
    office_name: str = ""
    family_count: int = Field(..., ge=0)
    citizen_count: int = Field(..., ge=0)
    population: int = Field(..., ge=0)
    pending_transfer_count: int = Field(..., ge=0)
    gn_count: int = Field(..., ge=0)
    division_count: int = Field(..., ge=0)
    people_per_family: float = 0.0
    families_per_gn: float = 0.0
    gn_per_division: float = 0.0
    available: bool = Field(default=True, description="False when the figures could not be computed")


class Breadcrumb(BaseModel):
    id: int
    level: str
    office_name: str


class JurisdictionStatisticsResponse(BaseModel):
    statistics: StatisticsResponse
    breadcrumbs: List[Breadcrumb] = Field(default_factory=list)


class BreakdownResponse(BaseModel):
    """Statistics for each child of a jurisdiction."""
    jurisdiction_id: int
    children: List[StatisticsResponse] = Field(default_factory=list)


class AgeGroups(BaseModel):
    children: int = 0
    adults: int = 0
    seniors: int = 0
    unknown: int = 0


class DemographicsResponse(BaseModel):
    jurisdiction_id: int
    total: int = 0
    by_gender: Dict[str, int] = Field(default_factory=dict)
    age_groups: AgeGroups = Field(default_factory=AgeGroups)
    available: bool = True


# ============================================
# AUDIT
# ============================================

class ActionTypeCount(BaseModel):
    action_type: str
    count: int


class ActivitySummary(BaseModel):
    today: int = 0
    yesterday: int = 0
    week: int = 0
    month: int = 0
    recent: int = 0
    recent_days: int = 7
    by_action_type: List[ActionTypeCount] = Field(default_factory=list)


class RecentActor(BaseModel):
    user_id: int
    username: str
    role: str
    last_seen: Optional[str] = None

    @field_validator('last_seen', mode='before')
    @classmethod
    def format_last_seen(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return v.isoformat()


class AuditSummaryResponse(BaseModel):
    activity: ActivitySummary
    action_types: List[str] = Field(default_factory=list)
    recent_actors: List[RecentActor] = Field(default_factory=list)


class PurgeRequest(BaseModel):
    older_than_days: Optional[int] = Field(
        default=None,
        ge=1,
        description="Delete records older than this many days (defaults to audit.retention_days)"
    )


class PurgeResponse(BaseModel):
    deleted: int = Field(..., ge=0)


class DeletedAuditLogResponse(BaseModel):
    deleted: Dict[str, Any]


# ============================================
# ADMINISTRATION
# ============================================

class StatusResponse(BaseModel):
    id: int
    is_active: bool


class JurisdictionUpdate(BaseModel):
    office_name: str = Field(..., min_length=1, max_length=200)

    @field_validator('office_name')
    @classmethod
    def strip_office_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("office_name must not be blank")
        return v


class JurisdictionResponse(BaseModel):
    id: int
    level: str
    parent_id: Optional[int] = None
    office_code: str
    office_name: str
    is_active: bool


# ============================================
# HEALTH / ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: bool = Field(..., description="Database reachable")
    memory_usage_mb: Optional[float] = Field(default=None, description="Current memory usage in MB")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    slow_queries: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
