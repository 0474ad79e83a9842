"""Command line entry point.

Usage:
    python -m medexpertmatch match <case_id> [--max-results N] [--min-score S]
    python -m medexpertmatch route <case_id> [--max-results N]
    python -m medexpertmatch prioritize <case_id> [<case_id> ...]
    python -m medexpertmatch graph-stats
"""

import argparse
import json
import logging
import sys

from .config_loader import configure_logging, load_config
from .database import DatabaseConnection, GraphRepository
from .exceptions import MedExpertMatchError
from .logic.matching import MatchingService
from .models import MatchOptions, RoutingOptions

logger = logging.getLogger("medexpertmatch")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="medexpertmatch", description="MedExpertMatch matching core")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    match = sub.add_parser("match", help="Rank and persist doctor matches for a case")
    match.add_argument("case_id")
    match.add_argument("--max-results", type=int, default=None)
    match.add_argument("--min-score", type=float, default=None)
    match.add_argument("--specialty", action="append", default=[], help="Preferred specialty (repeatable)")

    route = sub.add_parser("route", help="Rank facilities for a case")
    route.add_argument("case_id")
    route.add_argument("--max-results", type=int, default=None)
    route.add_argument("--capability", action="append", default=[], help="Required capability (repeatable)")

    prioritize = sub.add_parser("prioritize", help="Order cases by urgency")
    prioritize.add_argument("case_ids", nargs="+")

    sub.add_parser("graph-stats", help="Vertex and edge counts per label")
    return parser


def _run(args, config, db: DatabaseConnection) -> list[dict] | dict:
    if args.command == "graph-stats":
        graph = GraphRepository(db, config.graph.name, config.graph.search_path)
        return {
            "graph": graph.graph_name,
            "exists": graph.graph_exists(),
            "vertices": {t: graph.count_vertices_by_type(t) for t in graph.get_distinct_vertex_types()},
            "edges": {t: graph.count_edges_by_type(t) for t in graph.get_distinct_edge_types()},
        }

    service = MatchingService.from_config(config, db=db)

    if args.command == "match":
        options = None
        if args.max_results is not None or args.min_score is not None or args.specialty:
            options = MatchOptions(
                max_results=args.max_results or config.matching.default_max_results,
                min_score=args.min_score,
                preferred_specialties=args.specialty,
            )
        return [
            {"rank": m.rank, "doctor_id": m.doctor.id, "name": m.doctor.name,
             "score": m.match_score, "rationale": m.rationale}
            for m in service.match_doctors_to_case(args.case_id, options)
        ]

    if args.command == "route":
        options = None
        if args.max_results is not None or args.capability:
            options = RoutingOptions(
                max_results=args.max_results or config.matching.default_routing_results,
                required_capabilities=args.capability,
            )
        return [
            {"rank": m.rank, "facility_id": m.facility.id, "name": m.facility.name,
             "score": m.route_score, "rationale": m.rationale}
            for m in service.match_facilities_for_case(args.case_id, options)
        ]

    return [
        {"case_id": case.id, "urgency": case.urgency_level, "score": priority.overall_score,
         "rationale": priority.rationale}
        for case, priority in service.prioritize_cases(args.case_ids)
    ]


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except MedExpertMatchError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 2
    configure_logging(config)

    db = DatabaseConnection(config.database)
    try:
        result = _run(args, config, db)
    except MedExpertMatchError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    finally:
        db.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
