"""Scoring and matching logic on top of the graph and relational repositories."""

from .graph_queries import GraphQueryService, RelationshipBreakdown
from .matching import MatchingService
from .scoring import SemanticGraphRetrieval, performance_from_experiences

__all__ = [
    'GraphQueryService',
    'RelationshipBreakdown',
    'MatchingService',
    'SemanticGraphRetrieval',
    'performance_from_experiences',
]
