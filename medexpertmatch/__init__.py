"""MedExpertMatch matching core: Apache AGE graph retrieval and case/doctor scoring."""

__version__ = "0.1.0"
