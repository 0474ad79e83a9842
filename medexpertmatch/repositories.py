"""Relational repositories for cases, doctors, facilities, experiences and matches.

Plain SQLAlchemy Core ``text()`` statements against the ``medexpertmatch``
schema. Reads go through ``DatabaseConnection.execute_with_retry``; match
persistence runs in a single transaction.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .database import DatabaseConnection
from .exceptions import PersistenceError, ValidationError
from .models import ClinicalExperience, ConsultationMatch, Doctor, Facility, MedicalCase, normalize_id

logger = logging.getLogger("repositories")


class _Repository:
    table = ""

    def __init__(self, db: DatabaseConnection):
        self.db = db
        schema = db.schema
        if not schema.replace("_", "a").isalnum():
            raise ValidationError(f"Invalid schema name: {schema!r}", field="schema")
        self.qualified = f"{schema}.{self.table}"

    def _fetch_all(self, sql: str, params: Optional[dict] = None) -> list[dict]:
        def _query():
            with self.db.connection() as conn:
                result = conn.execute(text(sql), params or {})
                return [dict(row._mapping) for row in result]
        return self.db.execute_with_retry(_query)


# =============================================================================
# MEDICAL CASES
# =============================================================================

class MedicalCaseRepository(_Repository):
    table = "medical_cases"

    _COLUMNS = (
        "id, patient_age, chief_complaint, symptoms, current_diagnosis, icd10_codes, "
        "snomed_codes, urgency_level, required_specialty, case_type, additional_notes, "
        "abstract AS abstract_text, embedding IS NOT NULL AS has_embedding"
    )

    def find_by_id(self, case_id: str) -> Optional[MedicalCase]:
        rows = self._fetch_all(
            f"SELECT {self._COLUMNS} FROM {self.qualified} WHERE id = :id",
            {"id": normalize_id(case_id)},
        )
        return MedicalCase(**rows[0]) if rows else None

    def has_embedding(self, case_id: str) -> bool:
        rows = self._fetch_all(
            f"SELECT embedding IS NOT NULL AS has_embedding FROM {self.qualified} WHERE id = :id",
            {"id": normalize_id(case_id)},
        )
        return bool(rows and rows[0]["has_embedding"])

    def calculate_vector_similarity(self, query_case_id: str, doctor_case_ids: list[str]) -> Optional[float]:
        """Mean cosine similarity between a case and the doctor's past cases.

        None when nothing is comparable or the query fails.
        """
        if not doctor_case_ids:
            return None
        sql = f"""
            SELECT AVG(1 - (q.embedding <=> c.embedding)) AS similarity
            FROM {self.qualified} q
            JOIN {self.qualified} c ON c.id = ANY(:doctor_case_ids)
            WHERE q.id = :query_case_id
              AND q.embedding IS NOT NULL
              AND c.embedding IS NOT NULL
        """
        params = {
            "query_case_id": normalize_id(query_case_id),
            "doctor_case_ids": [normalize_id(cid) for cid in doctor_case_ids],
        }
        try:
            rows = self._fetch_all(sql, params)
        except SQLAlchemyError as e:
            logger.warning(f"Vector similarity query failed for case {query_case_id}: {e}")
            return None
        value = rows[0]["similarity"] if rows else None
        return float(value) if value is not None else None


# =============================================================================
# DOCTORS
# =============================================================================

class DoctorRepository(_Repository):
    table = "doctors"

    _COLUMNS = (
        "id, name, email, specialties, certifications, facility_ids, "
        "telehealth_enabled, availability_status"
    )

    def find_by_specialty(self, specialty: str, limit: int) -> list[Doctor]:
        rows = self._fetch_all(
            f"""
            SELECT {self._COLUMNS} FROM {self.qualified}
            WHERE EXISTS (SELECT 1 FROM unnest(specialties) s WHERE lower(s) = lower(:specialty))
            ORDER BY id
            LIMIT :limit
            """,
            {"specialty": specialty, "limit": limit},
        )
        return [Doctor(**row) for row in rows]

    def find_all_ids(self, limit: int) -> list[str]:
        rows = self._fetch_all(
            f"SELECT id FROM {self.qualified} ORDER BY id LIMIT :limit", {"limit": limit}
        )
        return [row["id"] for row in rows]

    def find_by_ids(self, doctor_ids: list[str]) -> list[Doctor]:
        """Doctors in the order of ``doctor_ids``; unknown ids are skipped."""
        if not doctor_ids:
            return []
        rows = self._fetch_all(
            f"SELECT {self._COLUMNS} FROM {self.qualified} WHERE id = ANY(:ids)",
            {"ids": list(doctor_ids)},
        )
        by_id = {row["id"]: Doctor(**row) for row in rows}
        return [by_id[doctor_id] for doctor_id in doctor_ids if doctor_id in by_id]

    def find_doctor_ids_by_facility_id(self, facility_id: str, limit: int) -> list[str]:
        rows = self._fetch_all(
            f"""
            SELECT id FROM {self.qualified}
            WHERE :facility_id = ANY(facility_ids)
            ORDER BY id
            LIMIT :limit
            """,
            {"facility_id": facility_id, "limit": limit},
        )
        return [row["id"] for row in rows]


# =============================================================================
# FACILITIES
# =============================================================================

class FacilityRepository(_Repository):
    table = "facilities"

    def find_all(self) -> list[Facility]:
        rows = self._fetch_all(
            f"""
            SELECT id, name, facility_type, location_city, location_state, location_country,
                   location_latitude, location_longitude, capabilities, capacity, current_occupancy
            FROM {self.qualified}
            ORDER BY id
            """
        )
        return [Facility(**row) for row in rows]


# =============================================================================
# CLINICAL EXPERIENCES
# =============================================================================

class ClinicalExperienceRepository(_Repository):
    table = "clinical_experiences"

    _COLUMNS = (
        "id, doctor_id, case_id, procedures_performed, complexity_level, outcome, "
        "complications, time_to_resolution, rating"
    )

    def find_by_doctor_id(self, doctor_id: str) -> list[ClinicalExperience]:
        rows = self._fetch_all(
            f"SELECT {self._COLUMNS} FROM {self.qualified} WHERE doctor_id = :doctor_id ORDER BY id",
            {"doctor_id": doctor_id},
        )
        return [ClinicalExperience(**row) for row in rows]

    def find_by_doctor_ids(self, doctor_ids: list[str]) -> dict[str, list[ClinicalExperience]]:
        """Experiences grouped by doctor id (doctors without any are absent)."""
        if not doctor_ids:
            return {}
        rows = self._fetch_all(
            f"SELECT {self._COLUMNS} FROM {self.qualified} WHERE doctor_id = ANY(:ids) ORDER BY id",
            {"ids": list(doctor_ids)},
        )
        grouped: dict[str, list[ClinicalExperience]] = {}
        for row in rows:
            grouped.setdefault(row["doctor_id"], []).append(ClinicalExperience(**row))
        return grouped


# =============================================================================
# CONSULTATION MATCHES
# =============================================================================

class ConsultationMatchRepository(_Repository):
    table = "consultation_matches"

    def _delete(self, conn, case_id: str) -> int:
        result = conn.execute(
            text(f"DELETE FROM {self.qualified} WHERE case_id = :case_id"),
            {"case_id": normalize_id(case_id)},
        )
        return result.rowcount

    def _insert(self, conn, matches: list[ConsultationMatch]) -> None:
        if not matches:
            return
        conn.execute(
            text(
                f"""
                INSERT INTO {self.qualified}
                    (id, case_id, doctor_id, match_score, match_rationale, rank, status)
                VALUES
                    (:id, :case_id, :doctor_id, :match_score, :match_rationale, :rank, :status)
                """
            ),
            [m.model_dump() for m in matches],
        )

    def delete_by_case_id(self, case_id: str) -> int:
        try:
            with self.db.transaction() as conn:
                return self._delete(conn, case_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete matches for case {case_id}: {e}", case_id=case_id) from e

    def insert_batch(self, matches: list[ConsultationMatch]) -> None:
        try:
            with self.db.transaction() as conn:
                self._insert(conn, matches)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert {len(matches)} matches: {e}") from e

    def replace_for_case(self, case_id: str, matches: list[ConsultationMatch]) -> None:
        """Swap the case's match set atomically.

        A transaction-scoped advisory lock keyed on the case id serializes
        concurrent replacements of the same case.
        """
        case_id = normalize_id(case_id)
        try:
            with self.db.transaction() as conn:
                conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:case_id))"), {"case_id": case_id})
                deleted = self._delete(conn, case_id)
                self._insert(conn, matches)
            logger.info(f"Replaced {deleted} matches with {len(matches)} for case {case_id}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist matches for case {case_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to persist matches for case {case_id}: {e}", case_id=case_id) from e

    def find_by_case_id(self, case_id: str) -> list[ConsultationMatch]:
        rows = self._fetch_all(
            f"""
            SELECT id, case_id, doctor_id, match_score, match_rationale, rank, status
            FROM {self.qualified}
            WHERE case_id = :case_id
            ORDER BY rank
            """,
            {"case_id": normalize_id(case_id)},
        )
        return [ConsultationMatch(**row) for row in rows]

    def count(self, case_id: Optional[str] = None) -> int:
        if case_id is None:
            rows = self._fetch_all(f"SELECT COUNT(*) AS n FROM {self.qualified}")
        else:
            rows = self._fetch_all(
                f"SELECT COUNT(*) AS n FROM {self.qualified} WHERE case_id = :case_id",
                {"case_id": normalize_id(case_id)},
            )
        return int(rows[0]["n"]) if rows else 0

    def delete_all(self) -> int:
        try:
            with self.db.transaction() as conn:
                return conn.execute(text(f"DELETE FROM {self.qualified}")).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete matches: {e}") from e
