"""Semantic Graph Retrieval scoring.

Combines three independently fallible signals into a 0-100 score:

    doctor/case     = 100 * (0.4 vector + 0.3 graph + 0.3 historical)
    facility/case   = 100 * (0.3 complexity + 0.3 historical + 0.2 capacity + 0.2 geographic)
    case priority   = 100 * (0.5 urgency + 0.3 complexity + 0.2 availability)

A failing signal falls back to a constant and never aborts the score:
0.1 means "no data to judge", 0.0 means "lookup failed".
"""

import logging
import math
from typing import Optional

from ..models import (
    ClinicalExperience,
    Doctor,
    Facility,
    MedicalCase,
    PriorityScore,
    RouteScoreResult,
    ScoreResult,
    UrgencyLevel,
)
from .graph_queries import GraphQueryService

logger = logging.getLogger("scoring")

# Doctor/case weights
VECTOR_WEIGHT = 0.4
GRAPH_WEIGHT = 0.3
HISTORICAL_WEIGHT = 0.3

# Graph sub-signal weights
DIRECT_RELATIONSHIP_WEIGHT = 0.40
CONDITION_EXPERTISE_WEIGHT = 0.25
SPECIALIZATION_WEIGHT = 0.25
SIMILAR_CASES_WEIGHT = 0.10

# Facility routing weights
COMPLEXITY_WEIGHT = 0.3
OUTCOMES_WEIGHT = 0.3
CAPACITY_WEIGHT = 0.2
GEOGRAPHIC_WEIGHT = 0.2

# Case priority weights
URGENCY_WEIGHT = 0.5
PRIORITY_COMPLEXITY_WEIGHT = 0.3
AVAILABILITY_WEIGHT = 0.2

NO_DATA_SCORE = 0.1
NEUTRAL_SCORE = 0.5
DEFAULT_AVERAGE_RATING = 2.5
SUCCESSFUL_OUTCOMES = ("SUCCESS", "IMPROVED")

URGENCY_SCORES = {
    UrgencyLevel.CRITICAL: 1.0,
    UrgencyLevel.HIGH: 0.75,
    UrgencyLevel.MEDIUM: 0.5,
    UrgencyLevel.LOW: 0.25,
}


def clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def performance_from_experiences(experiences: list[ClinicalExperience]) -> float:
    """0.6 * normalized average rating + 0.4 * success rate.

    Ratings map 1..5 onto 0..1; with no ratings the average is taken as 2.5.
    SUCCESS and IMPROVED outcomes count as successful. Callers handle the
    empty list themselves.
    """
    ratings = [e.rating for e in experiences if e.rating is not None]
    average_rating = sum(ratings) / len(ratings) if ratings else DEFAULT_AVERAGE_RATING
    normalized_rating = (average_rating - 1.0) / 4.0

    successes = sum(
        1 for e in experiences
        if e.outcome and e.outcome.strip().upper() in SUCCESSFUL_OUTCOMES
    )
    success_rate = successes / len(experiences) if experiences else 0.0

    return clamp(0.6 * normalized_rating + 0.4 * success_rate)


class SemanticGraphRetrieval:
    """Scores doctors and facilities against a case, and cases against each other."""

    def __init__(self, case_repository, experience_repository, doctor_repository,
                 graph_queries: GraphQueryService, graph_repository, facility_doctor_limit: int = 500):
        self.cases = case_repository
        self.experiences = experience_repository
        self.doctors = doctor_repository
        self.graph_queries = graph_queries
        self.graph = graph_repository
        self.facility_doctor_limit = facility_doctor_limit

    # =========================================================================
    # DOCTOR / CASE
    # =========================================================================

    def vector_score(self, case: MedicalCase, doctor: Doctor) -> float:
        try:
            if not case.has_embedding:
                logger.debug(f"Case {case.id} has no embedding, vector score {NO_DATA_SCORE}")
                return NO_DATA_SCORE

            experiences = self.experiences.find_by_doctor_id(doctor.id)
            case_ids = list(dict.fromkeys(e.case_id for e in experiences if e.case_id))
            if not case_ids:
                return NO_DATA_SCORE

            similarity = self.cases.calculate_vector_similarity(case.id, case_ids)
            if similarity is None or math.isnan(similarity):
                return NO_DATA_SCORE
            return clamp(similarity)
        except Exception as e:
            logger.warning(f"Vector similarity failed for doctor {doctor.id}, case {case.id}: {e}")
            return 0.0

    def graph_score(self, case: MedicalCase, doctor: Doctor) -> float:
        try:
            if not self.graph.graph_exists():
                logger.debug("Graph does not exist, graph score 0.0")
                return 0.0
            b = self.graph_queries.relationship_breakdown(doctor.id, case)
            logger.debug(
                f"Graph signals doctor={doctor.id} case={case.id}: direct={b.direct:.2f} "
                f"condition={b.condition:.2f} specialization={b.specialization:.2f} similar={b.similar:.2f}"
            )
            return clamp(
                DIRECT_RELATIONSHIP_WEIGHT * b.direct
                + CONDITION_EXPERTISE_WEIGHT * b.condition
                + SPECIALIZATION_WEIGHT * b.specialization
                + SIMILAR_CASES_WEIGHT * b.similar
            )
        except Exception as e:
            logger.warning(f"Graph score failed for doctor {doctor.id}, case {case.id}: {e}")
            return 0.0

    def historical_score(self, doctor: Doctor) -> float:
        try:
            experiences = self.experiences.find_by_doctor_id(doctor.id)
            if not experiences:
                return NO_DATA_SCORE
            return performance_from_experiences(experiences)
        except Exception as e:
            logger.warning(f"Historical performance failed for doctor {doctor.id}: {e}")
            return 0.0

    def score(self, case: MedicalCase, doctor: Doctor) -> ScoreResult:
        vector = self.vector_score(case, doctor)
        graph = self.graph_score(case, doctor)
        historical = self.historical_score(doctor)

        overall = 100.0 * clamp(
            VECTOR_WEIGHT * vector + GRAPH_WEIGHT * graph + HISTORICAL_WEIGHT * historical
        )
        rationale = (
            f"Vector similarity: {vector:.2f}, Graph relationships: {graph:.2f}, "
            f"Historical performance: {historical:.2f}"
        )
        return ScoreResult(
            overall_score=overall,
            vector_score=vector,
            graph_score=graph,
            historical_score=historical,
            rationale=rationale,
        )

    # =========================================================================
    # FACILITY / CASE
    # =========================================================================

    @staticmethod
    def complexity_match(case: MedicalCase, facility: Facility) -> float:
        """1.0 when a capability and the required specialty overlap as substrings."""
        specialty = (case.required_specialty or "").strip().lower()
        if not specialty or not facility.capabilities:
            return NEUTRAL_SCORE
        for capability in facility.capabilities:
            cap = (capability or "").strip().lower()
            if cap and (cap in specialty or specialty in cap):
                return 1.0
        return NEUTRAL_SCORE

    def facility_outcomes(self, facility: Facility) -> float:
        try:
            doctor_ids = self.doctors.find_doctor_ids_by_facility_id(facility.id, self.facility_doctor_limit)
            if not doctor_ids:
                return NEUTRAL_SCORE
            grouped = self.experiences.find_by_doctor_ids(doctor_ids)
            experiences = [e for doctor_id in doctor_ids for e in grouped.get(doctor_id, [])]
            if not experiences:
                return NEUTRAL_SCORE
            return performance_from_experiences(experiences)
        except Exception as e:
            logger.warning(f"Historical outcomes failed for facility {facility.id}: {e}")
            return NEUTRAL_SCORE

    @staticmethod
    def capacity_score(facility: Facility) -> float:
        if not facility.capacity:
            return NEUTRAL_SCORE
        if facility.current_occupancy is None:
            return 1.0
        return clamp(1.0 - facility.current_occupancy / facility.capacity)

    def route_score(self, case: MedicalCase, facility: Facility) -> RouteScoreResult:
        complexity = self.complexity_match(case, facility)
        outcomes = self.facility_outcomes(facility)
        capacity = self.capacity_score(facility)
        # TODO: distance-based score once facilities and cases both carry coordinates
        geographic = NEUTRAL_SCORE

        overall = 100.0 * clamp(
            COMPLEXITY_WEIGHT * complexity
            + OUTCOMES_WEIGHT * outcomes
            + CAPACITY_WEIGHT * capacity
            + GEOGRAPHIC_WEIGHT * geographic
        )
        rationale = (
            f"Complexity match: {complexity:.2f}, Historical outcomes: {outcomes:.2f}, "
            f"Capacity: {capacity:.2f}, Geographic: {geographic:.2f}"
        )
        return RouteScoreResult(
            overall_score=overall,
            complexity_score=complexity,
            historical_outcomes_score=outcomes,
            capacity_score=capacity,
            geographic_score=geographic,
            rationale=rationale,
        )

    # =========================================================================
    # CASE PRIORITY
    # =========================================================================

    @staticmethod
    def urgency_score(urgency: Optional[UrgencyLevel]) -> float:
        return URGENCY_SCORES.get(urgency, NEUTRAL_SCORE)

    def priority_score(self, case: MedicalCase) -> PriorityScore:
        urgency = self.urgency_score(case.urgency_level)
        complexity = urgency
        availability = NEUTRAL_SCORE

        overall = 100.0 * clamp(
            URGENCY_WEIGHT * urgency
            + PRIORITY_COMPLEXITY_WEIGHT * complexity
            + AVAILABILITY_WEIGHT * availability
        )
        rationale = f"Urgency: {urgency:.2f}, Complexity: {complexity:.2f}, Availability: {availability:.2f}"
        return PriorityScore(
            overall_score=overall,
            urgency_score=urgency,
            complexity_score=complexity,
            availability_score=availability,
            rationale=rationale,
        )
