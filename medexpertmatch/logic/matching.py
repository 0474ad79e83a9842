"""Matching orchestrator: candidates -> scores -> ranking -> persistence.

Doctor matching persists the ranked set for the case with replace semantics
(the previous set is deleted and the new one inserted in one transaction).
Facility routing and case prioritization are read-only.
"""

import logging
from typing import Optional

from ..config_loader import AppConfig, get_config
from ..database import DatabaseConnection, GraphRepository
from ..exceptions import NotFoundError, ValidationError
from ..ids import generate_id
from ..models import (
    DEFAULT_MAX_RESULTS,
    DEFAULT_ROUTING_RESULTS,
    ConsultationMatch,
    Doctor,
    DoctorMatch,
    Facility,
    FacilityMatch,
    MatchOptions,
    MedicalCase,
    PriorityScore,
    RoutingOptions,
    normalize_id,
)
from ..repositories import (
    ClinicalExperienceRepository,
    ConsultationMatchRepository,
    DoctorRepository,
    FacilityRepository,
    MedicalCaseRepository,
)
from .graph_queries import GraphQueryService
from .scoring import SemanticGraphRetrieval

logger = logging.getLogger("matching")

MIN_FACILITY_CANDIDATES = 10


class MatchingService:
    """Ranks doctors and facilities for a case."""

    def __init__(self, case_repository, doctor_repository, facility_repository,
                 retrieval: SemanticGraphRetrieval, match_repository, match_status: str = "PENDING",
                 default_max_results: int = DEFAULT_MAX_RESULTS,
                 default_routing_results: int = DEFAULT_ROUTING_RESULTS):
        self.cases = case_repository
        self.doctors = doctor_repository
        self.facilities = facility_repository
        self.retrieval = retrieval
        self.matches = match_repository
        self.match_status = match_status
        self.default_max_results = default_max_results
        self.default_routing_results = default_routing_results

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None, db: Optional[DatabaseConnection] = None):
        """Wire repositories, graph and scoring from configuration."""
        config = config or get_config()
        db = db or DatabaseConnection(config.database)
        graph = GraphRepository(db, config.graph.name, config.graph.search_path)
        cases = MedicalCaseRepository(db)
        doctors = DoctorRepository(db)
        retrieval = SemanticGraphRetrieval(
            case_repository=cases,
            experience_repository=ClinicalExperienceRepository(db),
            doctor_repository=doctors,
            graph_queries=GraphQueryService(graph),
            graph_repository=graph,
            facility_doctor_limit=config.matching.facility_doctor_limit,
        )
        return cls(
            case_repository=cases,
            doctor_repository=doctors,
            facility_repository=FacilityRepository(db),
            retrieval=retrieval,
            match_repository=ConsultationMatchRepository(db),
            match_status=config.matching.match_status,
            default_max_results=config.matching.default_max_results,
            default_routing_results=config.matching.default_routing_results,
        )

    def _load_case(self, case_id: Optional[str]) -> MedicalCase:
        if case_id is None or not case_id.strip():
            raise ValidationError("Case ID cannot be null or empty", field="case_id")
        normalized = normalize_id(case_id)
        case = self.cases.find_by_id(normalized)
        if case is None:
            raise NotFoundError(
                f"Medical case not found: {case_id} (normalized: {normalized})",
                entity="MedicalCase",
                entity_id=normalized,
            )
        return case

    # =========================================================================
    # DOCTORS
    # =========================================================================

    def _candidate_doctors(self, case: MedicalCase, options: MatchOptions) -> list[Doctor]:
        limit = options.max_results * 2
        candidates: list[Doctor] = []
        if options.preferred_specialties:
            for specialty in options.preferred_specialties:
                candidates.extend(self.doctors.find_by_specialty(specialty, limit))
        elif case.required_specialty:
            candidates.extend(self.doctors.find_by_specialty(case.required_specialty, limit))
        else:
            candidates.extend(self.doctors.find_by_ids(self.doctors.find_all_ids(limit)))

        preferred_specialties = {s.lower() for s in options.preferred_specialties}
        preferred_facilities = set(options.preferred_facility_ids)

        seen = set()
        filtered = []
        for doctor in candidates:
            if doctor.id in seen:
                continue
            seen.add(doctor.id)
            if options.require_telehealth and not doctor.telehealth_enabled:
                continue
            if preferred_facilities and not preferred_facilities.intersection(doctor.facility_ids):
                continue
            if preferred_specialties and not any(s.lower() in preferred_specialties for s in doctor.specialties):
                continue
            filtered.append(doctor)
        return filtered

    def match_doctors_to_case(self, case_id: str, options: Optional[MatchOptions] = None) -> list[DoctorMatch]:
        """Score, rank and persist the doctor matches for a case.

        Raises:
            ValidationError: blank case id
            NotFoundError: no such case
            PersistenceError: the match set could not be replaced
        """
        options = options or MatchOptions.default(self.default_max_results)
        case = self._load_case(case_id)

        candidates = self._candidate_doctors(case, options)
        logger.info(f"Scoring {len(candidates)} candidate doctors for case {case.id}")

        scored = []
        for doctor in candidates:
            result = self.retrieval.score(case, doctor)
            if options.min_score is not None and result.overall_score < options.min_score:
                continue
            scored.append((doctor, result))

        scored.sort(key=lambda item: item[1].overall_score, reverse=True)
        ranked = [
            DoctorMatch(doctor=doctor, match_score=result.overall_score, rank=rank, rationale=result.rationale)
            for rank, (doctor, result) in enumerate(scored[:options.max_results], start=1)
        ]

        self.matches.replace_for_case(case.id, [
            ConsultationMatch(
                id=generate_id(),
                case_id=case.id,
                doctor_id=m.doctor.id,
                match_score=m.match_score,
                match_rationale=m.rationale,
                rank=m.rank,
                status=self.match_status,
            )
            for m in ranked
        ])
        return ranked

    # =========================================================================
    # FACILITIES
    # =========================================================================

    @staticmethod
    def _candidate_facilities(facilities: list[Facility], options: RoutingOptions) -> list[Facility]:
        # max_distance_km is not applied: cases carry no coordinates
        preferred_types = {t.lower() for t in options.preferred_facility_types}
        required = set(options.required_capabilities)
        limit = max(options.max_results * 2, MIN_FACILITY_CANDIDATES)

        candidates = []
        for facility in facilities:
            if preferred_types and (facility.facility_type or "").lower() not in preferred_types:
                continue
            if required and not required.issubset(facility.capabilities or []):
                continue
            candidates.append(facility)
            if len(candidates) >= limit:
                break
        return candidates

    def match_facilities_for_case(self, case_id: str,
                                  options: Optional[RoutingOptions] = None) -> list[FacilityMatch]:
        """Rank facilities for routing a case. Nothing is persisted."""
        options = options or RoutingOptions.default(self.default_routing_results)
        case = self._load_case(case_id)

        candidates = self._candidate_facilities(self.facilities.find_all(), options)
        logger.info(f"Scoring {len(candidates)} candidate facilities for case {case.id}")

        scored = []
        for facility in candidates:
            result = self.retrieval.route_score(case, facility)
            if options.min_score is not None and result.overall_score < options.min_score:
                continue
            scored.append((facility, result))

        scored.sort(key=lambda item: item[1].overall_score, reverse=True)
        return [
            FacilityMatch(facility=facility, route_score=result.overall_score, rank=rank, rationale=result.rationale)
            for rank, (facility, result) in enumerate(scored[:options.max_results], start=1)
        ]

    # =========================================================================
    # QUEUE PRIORITY
    # =========================================================================

    def prioritize_cases(self, case_ids: list[str]) -> list[tuple[MedicalCase, PriorityScore]]:
        """Order cases by priority score, highest first. Unknown ids are skipped."""
        prioritized = []
        seen = set()
        for case_id in case_ids:
            if not case_id or not case_id.strip():
                continue
            normalized = normalize_id(case_id)
            if normalized in seen:
                continue
            seen.add(normalized)
            case = self.cases.find_by_id(normalized)
            if case is None:
                logger.warning(f"Skipping unknown case {normalized} in priority queue")
                continue
            prioritized.append((case, self.retrieval.priority_score(case)))

        prioritized.sort(key=lambda item: item[1].overall_score, reverse=True)
        return prioritized
