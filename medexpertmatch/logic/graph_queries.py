"""Graph-derived relationship signals between doctors and cases.

Graph layout:
    (Doctor)-[:TREATED|CONSULTED_ON]->(MedicalCase)-[:HAS_CONDITION]->(ICD10Code)
    (Doctor)-[:TREATS_CONDITION]->(ICD10Code)
    (Doctor)-[:SPECIALIZES_IN]->(MedicalSpecialty)

Every signal is in [0, 1]. Missing inputs give the neutral 0.5; a missing
graph or a failed query gives 0.0.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..db_result_helpers import extract_int_value, result_value
from ..models import MedicalCase

logger = logging.getLogger("graph_queries")

NEUTRAL_SCORE = 0.5

DIRECT_RELATIONSHIP_QUERIES = (
    "MATCH (d:Doctor {id: $doctorId})-[:TREATED]->(c:MedicalCase {id: $caseId}) RETURN count(*)",
    "MATCH (d:Doctor {id: $doctorId})-[:CONSULTED_ON]->(c:MedicalCase {id: $caseId}) RETURN count(*)",
)

CONDITION_EXPERTISE_QUERY = (
    "MATCH (d:Doctor {id: $doctorId})-[:TREATS_CONDITION]->(i:ICD10Code {code: $icd10Code}) "
    "RETURN count(*)"
)

SPECIALIZATION_QUERY = (
    "MATCH (d:Doctor {id: $doctorId})-[:SPECIALIZES_IN]->(s:MedicalSpecialty) "
    "WHERE toLower(s.name) = toLower($specialtyName) "
    "RETURN count(*)"
)

SIMILAR_CASES_QUERY = (
    "MATCH (d:Doctor {id: $doctorId})-[:TREATED]->(c:MedicalCase)-[:HAS_CONDITION]->"
    "(i:ICD10Code {code: $icd10Code}) "
    "RETURN count(*)"
)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def similar_cases_bucket(count: int) -> float:
    """Step scale so doctors with many cases don't dominate the signal."""
    if count <= 0:
        return 0.0
    if count == 1:
        return 0.5
    if count <= 5:
        return 0.75
    return 1.0


@dataclass
class RelationshipBreakdown:
    direct: float
    condition: float
    specialization: float
    similar: float


class GraphQueryService:
    """Doctor/case relationship scores from the AGE graph."""

    def __init__(self, graph):
        """Initialize with a GraphRepository (anything with execute_cypher/graph_exists)."""
        self.graph = graph

    def _count(self, cypher: str, params: dict) -> int:
        rows = self.graph.execute_cypher(cypher, params)
        return extract_int_value(result_value(rows, "c")) or 0

    # ------------------------------------------------------------------
    # Raw signals (assume the graph exists)
    # ------------------------------------------------------------------

    def _direct(self, doctor_id: str, case_id: str) -> float:
        params = {"doctorId": doctor_id, "caseId": case_id}
        total = sum(self._count(q, params) for q in DIRECT_RELATIONSHIP_QUERIES)
        return _clamp(float(total))

    def _condition(self, doctor_id: str, icd10_codes: list[str]) -> float:
        if not icd10_codes:
            return NEUTRAL_SCORE
        matched = sum(
            1 for code in icd10_codes
            if self._count(CONDITION_EXPERTISE_QUERY, {"doctorId": doctor_id, "icd10Code": code}) > 0
        )
        return _clamp(matched / len(icd10_codes))

    def _specialization(self, doctor_id: str, specialty: Optional[str]) -> float:
        if not specialty or not specialty.strip():
            return NEUTRAL_SCORE
        count = self._count(SPECIALIZATION_QUERY, {"doctorId": doctor_id, "specialtyName": specialty})
        return _clamp(float(count))

    def _similar(self, doctor_id: str, icd10_codes: list[str]) -> float:
        if not icd10_codes:
            return NEUTRAL_SCORE
        best = max(
            self._count(SIMILAR_CASES_QUERY, {"doctorId": doctor_id, "icd10Code": code})
            for code in icd10_codes
        )
        return similar_cases_bucket(best)

    def _guarded(self, name: str, func, *args) -> float:
        try:
            if not self.graph.graph_exists():
                logger.debug(f"Graph missing, {name} score is 0.0")
                return 0.0
            return func(*args)
        except Exception as e:
            logger.warning(f"{name} score failed for doctor {args[0]}: {e}")
            return 0.0

    # ------------------------------------------------------------------
    # Public signals
    # ------------------------------------------------------------------

    def direct_relationship_score(self, doctor_id: str, case_id: str) -> float:
        """1.0 if the doctor TREATED or CONSULTED_ON the case, else 0.0."""
        return self._guarded("direct relationship", self._direct, doctor_id, case_id)

    def condition_expertise_score(self, doctor_id: str, icd10_codes: list[str]) -> float:
        """Fraction of the case's ICD-10 codes the doctor TREATS_CONDITION."""
        return self._guarded("condition expertise", self._condition, doctor_id, icd10_codes or [])

    def specialization_match_score(self, doctor_id: str, required_specialty: Optional[str]) -> float:
        """1.0 if the doctor SPECIALIZES_IN the specialty (case-insensitive), else 0.0."""
        return self._guarded("specialization", self._specialization, doctor_id, required_specialty)

    def similar_cases_score(self, doctor_id: str, icd10_codes: list[str]) -> float:
        return self._guarded("similar cases", self._similar, doctor_id, icd10_codes or [])

    def relationship_breakdown(self, doctor_id: str, case: MedicalCase) -> RelationshipBreakdown:
        """All four signals with one existence check; zeros when the graph is missing."""
        if not self.graph.graph_exists():
            return RelationshipBreakdown(0.0, 0.0, 0.0, 0.0)
        codes = case.icd10_codes or []
        return RelationshipBreakdown(
            direct=self._direct(doctor_id, case.id),
            condition=self._condition(doctor_id, codes),
            specialization=self._specialization(doctor_id, case.required_specialty),
            similar=self._similar(doctor_id, codes),
        )
