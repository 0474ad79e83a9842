"""Shared fixtures for the matching-core test suite.

Repositories are replaced by small in-memory fakes that honour the same
method contracts as medexpertmatch.repositories; the graph is a MagicMock
with the GraphRepository surface (graph_exists / execute_cypher).
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure the package is importable when running from a source checkout
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from medexpertmatch.exceptions import PersistenceError
from medexpertmatch.logic.graph_queries import GraphQueryService
from medexpertmatch.logic.matching import MatchingService
from medexpertmatch.logic.scoring import SemanticGraphRetrieval
from medexpertmatch.models import ClinicalExperience, Doctor, Facility, MedicalCase, normalize_id


CASE_ID = "64b7f0c2a1b2c3d4e5f60718"


# =============================================================================
# IN-MEMORY REPOSITORIES
# =============================================================================

class FakeCaseRepository:
    def __init__(self, cases=None, similarity=None):
        self.cases = {c.id: c for c in (cases or [])}
        self.similarity = similarity
        self.similarity_calls = []

    def find_by_id(self, case_id):
        return self.cases.get(normalize_id(case_id))

    def has_embedding(self, case_id):
        case = self.find_by_id(case_id)
        return bool(case and case.has_embedding)

    def calculate_vector_similarity(self, query_case_id, doctor_case_ids):
        self.similarity_calls.append((query_case_id, list(doctor_case_ids)))
        if isinstance(self.similarity, Exception):
            raise self.similarity
        return self.similarity


class FakeDoctorRepository:
    def __init__(self, doctors=None):
        self.doctors = list(doctors or [])
        self.specialty_calls = []

    def find_by_specialty(self, specialty, limit):
        self.specialty_calls.append((specialty, limit))
        hits = [d for d in self.doctors if any(s.lower() == specialty.lower() for s in d.specialties)]
        return hits[:limit]

    def find_all_ids(self, limit):
        return [d.id for d in self.doctors][:limit]

    def find_by_ids(self, doctor_ids):
        by_id = {d.id: d for d in self.doctors}
        return [by_id[i] for i in doctor_ids if i in by_id]

    def find_doctor_ids_by_facility_id(self, facility_id, limit):
        return [d.id for d in self.doctors if facility_id in d.facility_ids][:limit]


class FakeFacilityRepository:
    def __init__(self, facilities=None):
        self.facilities = list(facilities or [])

    def find_all(self):
        return list(self.facilities)


class FakeExperienceRepository:
    def __init__(self, experiences=None, error=None):
        self.experiences = list(experiences or [])
        self.error = error

    def find_by_doctor_id(self, doctor_id):
        if self.error:
            raise self.error
        return [e for e in self.experiences if e.doctor_id == doctor_id]

    def find_by_doctor_ids(self, doctor_ids):
        if self.error:
            raise self.error
        grouped = {}
        for e in self.experiences:
            if e.doctor_id in doctor_ids:
                grouped.setdefault(e.doctor_id, []).append(e)
        return grouped


class FakeMatchRepository:
    """Keeps one match set per case, like the replace-for-case contract."""

    def __init__(self, fail=False):
        self.sets = {}
        self.fail = fail
        self.replace_calls = 0

    def replace_for_case(self, case_id, matches):
        self.replace_calls += 1
        if self.fail:
            raise PersistenceError(f"Failed to persist matches for case {case_id}", case_id=case_id)
        self.sets[case_id] = list(matches)

    def find_by_case_id(self, case_id):
        return list(self.sets.get(case_id, []))

    def count(self, case_id=None):
        if case_id is None:
            return sum(len(v) for v in self.sets.values())
        return len(self.sets.get(case_id, []))


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================

@pytest.fixture
def case():
    return MedicalCase(
        id=CASE_ID.upper(),
        chief_complaint="Chest pain",
        icd10_codes=["I21.9", "I10"],
        urgency_level="HIGH",
        required_specialty="Cardiology",
        has_embedding=True,
    )


@pytest.fixture
def doctors():
    return [
        Doctor(id="doc-1", name="Dr. A", specialties=["Cardiology"], facility_ids=["fac-1"],
               telehealth_enabled=True),
        Doctor(id="doc-2", name="Dr. B", specialties=["cardiology", "Internal Medicine"],
               facility_ids=["fac-2"]),
        Doctor(id="doc-3", name="Dr. C", specialties=["Neurology"], facility_ids=["fac-1"],
               telehealth_enabled=True),
    ]


@pytest.fixture
def experiences():
    return [
        ClinicalExperience(doctor_id="doc-1", case_id="aaaaaaaaaaaaaaaaaaaaaaaa", outcome="SUCCESS", rating=5),
        ClinicalExperience(doctor_id="doc-1", case_id="bbbbbbbbbbbbbbbbbbbbbbbb", outcome="improved", rating=4),
        ClinicalExperience(doctor_id="doc-2", case_id="cccccccccccccccccccccccc", outcome="COMPLICATED", rating=2),
    ]


@pytest.fixture
def facilities():
    return [
        Facility(id="fac-1", name="Academic Heart Center", facility_type="ACADEMIC",
                 capabilities=["CARDIOLOGY", "PCI", "ICU"], capacity=100, current_occupancy=80),
        Facility(id="fac-2", name="Community Hospital", facility_type="COMMUNITY",
                 capabilities=["ICU"], capacity=50, current_occupancy=10),
        Facility(id="fac-3", name="Unknown Capacity Clinic", facility_type="COMMUNITY",
                 capabilities=None, capacity=None),
    ]


# =============================================================================
# GRAPH + SERVICE FIXTURES
# =============================================================================

def _make_mock_graph(exists=True, rows=None):
    """GraphRepository stand-in: graph_exists + execute_cypher returning ``rows``."""
    graph = MagicMock()
    graph.graph_exists.return_value = exists
    graph.execute_cypher.return_value = rows if rows is not None else []
    return graph


@pytest.fixture
def mock_graph():
    return _make_mock_graph(exists=False)


def build_retrieval(cases=None, doctors=None, experiences=None, graph=None, similarity=None,
                    experience_error=None):
    graph = graph or _make_mock_graph(exists=False)
    return SemanticGraphRetrieval(
        case_repository=FakeCaseRepository(cases, similarity=similarity),
        experience_repository=FakeExperienceRepository(experiences, error=experience_error),
        doctor_repository=FakeDoctorRepository(doctors),
        graph_queries=GraphQueryService(graph),
        graph_repository=graph,
    )


@pytest.fixture
def graph_factory():
    return _make_mock_graph


@pytest.fixture
def retrieval_factory():
    return build_retrieval


@pytest.fixture
def match_repository():
    return FakeMatchRepository()


@pytest.fixture
def matching_service(case, doctors, experiences, facilities, match_repository):
    cases = FakeCaseRepository([case], similarity=0.8)
    doctor_repo = FakeDoctorRepository(doctors)
    graph = _make_mock_graph(exists=False)
    retrieval = SemanticGraphRetrieval(
        case_repository=cases,
        experience_repository=FakeExperienceRepository(experiences),
        doctor_repository=doctor_repo,
        graph_queries=GraphQueryService(graph),
        graph_repository=graph,
    )
    return MatchingService(
        case_repository=cases,
        doctor_repository=doctor_repo,
        facility_repository=FakeFacilityRepository(facilities),
        retrieval=retrieval,
        match_repository=match_repository,
    )
