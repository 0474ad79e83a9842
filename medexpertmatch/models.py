"""Pydantic schemas for the MedExpertMatch matching core."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_MAX_RESULTS = 10
DEFAULT_ROUTING_RESULTS = 5


def normalize_id(value: Optional[str]) -> Optional[str]:
    """Case ids are hex strings compared case-insensitively."""
    if value is None:
        return None
    return value.strip().lower()


class UrgencyLevel(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class CaseType(str, Enum):
    INPATIENT = "INPATIENT"
    SECOND_OPINION = "SECOND_OPINION"
    CONSULT_REQUEST = "CONSULT_REQUEST"


# ========================================
# Stored entities
# ========================================

class MedicalCase(BaseModel):
    """Anonymized medical case awaiting a consultation match."""
    id: str = Field(..., description="24-character hex id")
    patient_age: Optional[int] = None
    chief_complaint: Optional[str] = None
    symptoms: Optional[str] = None
    current_diagnosis: Optional[str] = None
    icd10_codes: list[str] = Field(default_factory=list)
    snomed_codes: list[str] = Field(default_factory=list)
    urgency_level: Optional[UrgencyLevel] = None
    required_specialty: Optional[str] = None
    case_type: Optional[CaseType] = None
    additional_notes: Optional[str] = None
    abstract_text: Optional[str] = Field(None, description="LLM-generated summary used for the embedding")
    has_embedding: bool = False

    @field_validator("id")
    @classmethod
    def _lowercase_id(cls, value: str) -> str:
        return normalize_id(value)

    @field_validator("icd10_codes", "snomed_codes", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


class Doctor(BaseModel):
    """Doctor read from the directory; never mutated by matching."""
    id: str = Field(..., description="External id (UUID, 19-digit numeric or other)")
    name: Optional[str] = None
    email: Optional[str] = None
    specialties: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    facility_ids: list[str] = Field(default_factory=list)
    telehealth_enabled: bool = False
    availability_status: Optional[str] = None

    @field_validator("specialties", "certifications", "facility_ids", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


class Facility(BaseModel):
    """Care facility a case can be routed to."""
    id: str
    name: Optional[str] = None
    facility_type: Optional[str] = Field(None, description="ACADEMIC, COMMUNITY, SPECIALTY_CENTER, ...")
    location_city: Optional[str] = None
    location_state: Optional[str] = None
    location_country: Optional[str] = None
    location_latitude: Optional[Decimal] = None
    location_longitude: Optional[Decimal] = None
    capabilities: Optional[list[str]] = Field(None, description="e.g. PCI, ECMO, ICU, SURGERY")
    capacity: Optional[int] = None
    current_occupancy: Optional[int] = None


class ClinicalExperience(BaseModel):
    """Evidence that a doctor worked on a case, with its outcome."""
    id: Optional[str] = None
    doctor_id: str
    case_id: str
    procedures_performed: list[str] = Field(default_factory=list)
    complexity_level: Optional[str] = None
    outcome: Optional[str] = Field(None, description="SUCCESS, IMPROVED, STABLE, COMPLICATED, ...")
    complications: list[str] = Field(default_factory=list)
    time_to_resolution: Optional[int] = Field(None, description="Days")
    rating: Optional[int] = Field(None, ge=1, le=5)

    @field_validator("procedures_performed", "complications", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


class ConsultationMatch(BaseModel):
    """Persisted, ranked doctor match for a case."""
    id: str
    case_id: str
    doctor_id: str
    match_score: float
    match_rationale: str
    rank: int
    status: str = "PENDING"


# ========================================
# Request options
# ========================================

class MatchOptions(BaseModel):
    """Options for doctor-case matching."""
    max_results: int = DEFAULT_MAX_RESULTS
    min_score: Optional[float] = None
    preferred_specialties: list[str] = Field(default_factory=list)
    require_telehealth: Optional[bool] = None
    preferred_facility_ids: list[str] = Field(default_factory=list)

    @field_validator("max_results", mode="before")
    @classmethod
    def _default_max_results(cls, value):
        return value if value and value > 0 else DEFAULT_MAX_RESULTS

    @field_validator("preferred_specialties", "preferred_facility_ids", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []

    @classmethod
    def default(cls, max_results: int = DEFAULT_MAX_RESULTS) -> "MatchOptions":
        return cls(max_results=max_results)


class RoutingOptions(BaseModel):
    """Options for facility-case routing."""
    max_results: int = DEFAULT_ROUTING_RESULTS
    min_score: Optional[float] = None
    preferred_facility_types: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = Field(None, description="Accepted but not applied; needs coordinates")

    @field_validator("max_results", mode="before")
    @classmethod
    def _default_max_results(cls, value):
        return value if value and value > 0 else DEFAULT_ROUTING_RESULTS

    @field_validator("preferred_facility_types", "required_capabilities", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []

    @classmethod
    def default(cls, max_results: int = DEFAULT_ROUTING_RESULTS) -> "RoutingOptions":
        return cls(max_results=max_results)


# ========================================
# Computed results
# ========================================

@dataclass(frozen=True)
class ScoreResult:
    """Doctor-case match score. Components are 0-1, overall is 0-100."""
    overall_score: float
    vector_score: float
    graph_score: float
    historical_score: float
    rationale: str


@dataclass(frozen=True)
class RouteScoreResult:
    """Facility-case routing score. Components are 0-1, overall is 0-100."""
    overall_score: float
    complexity_score: float
    historical_outcomes_score: float
    capacity_score: float
    geographic_score: float
    rationale: str


@dataclass(frozen=True)
class PriorityScore:
    """Queue priority for a case on its own."""
    overall_score: float
    urgency_score: float
    complexity_score: float
    availability_score: float
    rationale: str


@dataclass(frozen=True)
class DoctorMatch:
    doctor: Doctor
    match_score: float
    rank: int
    rationale: str


@dataclass(frozen=True)
class FacilityMatch:
    facility: Facility
    route_score: float
    rank: int
    rationale: str
