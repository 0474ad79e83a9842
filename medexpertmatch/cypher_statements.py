"""Cypher → SQL statement construction for Apache AGE.

AGE runs Cypher through the ``ag_catalog.cypher()`` set-returning function,
which needs the query body as a dollar-quoted literal and an explicit column
definition list matching the RETURN clause:

    SELECT * FROM ag_catalog.cypher('graph'::name, $query$ ... $query$) AS t(c agtype)

AGE has no bind parameters for this bridge, so ``$name`` placeholders are
embedded as escaped literals before the statement is built.

PostgreSQL does no unescaping inside a dollar-quoted literal: the body
reaches the Cypher parser byte for byte. The only hazard is the body
containing the closing tag, so the tag is picked per statement.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal

DOLLAR_QUOTE_TAG = "$query$"

_PLACEHOLDER = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
_MUTATION = re.compile(r"(?<![\w.])(CREATE|MERGE)(?!\w)", re.IGNORECASE)
_RETURN = re.compile(r"(?<![\w.])RETURN(?!\w)", re.IGNORECASE)
_RETURN_CLAUSE_END = re.compile(r"(ORDER\s+BY|SKIP|LIMIT)\b", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class CypherStatement:
    """A ready-to-run SQL statement plus the shape of its result."""
    sql: str
    columns: list[str] = field(default_factory=list)
    is_mutation: bool = False


# =============================================================================
# PARAMETER EMBEDDING
# =============================================================================

def escape_cypher_string(value: str) -> str:
    """Escape a string for a single-quoted Cypher literal.

    Backslashes are doubled first so the escapes added afterwards are not
    escaped a second time.
    """
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def format_cypher_value(value) -> str:
    """Render a Python value as a Cypher literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return "'" + escape_cypher_string(str(value)) + "'"


def embed_parameters(cypher_query: str, parameters: dict | None) -> str:
    """Replace ``$name`` placeholders with literal values.

    A placeholder only matches when the whole identifier equals a parameter
    name, so ``$caseId`` never matches inside ``$caseIdList``. Substitution is
    a single pass: ``$`` inside an embedded value is never treated as a
    placeholder.
    """
    if not parameters:
        return cypher_query

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in parameters:
            return match.group(0)
        return format_cypher_value(parameters[name])

    return _PLACEHOLDER.sub(_replace, cypher_query)


def dollar_quote_tag(body: str) -> str:
    """First of ``$query$``, ``$query_1$``, ... that cannot end ``body`` early.

    The check runs on ``body + tag`` so a body ending in ``$query`` does not
    fuse with the closing tag.
    """
    tag = DOLLAR_QUOTE_TAG
    n = 0
    while (body + tag).find(tag) != len(body):
        n += 1
        tag = f"$query_{n}$"
    return tag


def prepare_cypher_query(cypher_query: str, parameters: dict | None) -> str:
    """Query text with parameters embedded, ready for ``build_cypher_sql``."""
    return embed_parameters(cypher_query, parameters)


# =============================================================================
# STATEMENT SHAPE
# =============================================================================

def mask_string_literals(cypher_query: str) -> str:
    """Blank out the contents of quoted literals, keeping positions.

    Keyword searches run on the masked text so a value such as
    'Emergency Medicine' or 'return visit' is never read as a clause.
    """
    out = list(cypher_query)
    quote = None
    escaped = False
    for i, ch in enumerate(cypher_query):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\" and quote != "`":
                escaped = True
            elif ch == quote:
                quote = None
                continue
            out[i] = " "
        elif ch in ("'", '"', "`"):
            quote = ch
    return "".join(out)


def is_mutation(cypher_query: str) -> bool:
    """A CREATE or MERGE clause outside any literal marks a write."""
    return bool(_MUTATION.search(mask_string_literals(cypher_query)))


def count_top_level_commas(return_clause: str) -> int:
    """Count commas separating RETURN items.

    Commas inside (), [], {} or quoted literals do not separate items.
    Counting stops at a top-level ORDER BY / SKIP / LIMIT.
    """
    commas = 0
    depth = 0
    quote = None
    escaped = False

    for i, ch in enumerate(return_clause):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue

        if ch in ("'", '"'):
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth = max(0, depth - 1)
        elif depth == 0:
            if ch == ",":
                commas += 1
            elif (i == 0 or not (return_clause[i - 1].isalnum() or return_clause[i - 1] == "_")) \
                    and _RETURN_CLAUSE_END.match(return_clause, i):
                break

    return commas


def return_columns(cypher_query: str) -> list[str]:
    """Column aliases for the AGE column definition list."""
    match = _RETURN.search(mask_string_literals(cypher_query))
    if not match:
        return ["c"]
    commas = count_top_level_commas(cypher_query[match.end():])
    if commas == 0:
        return ["c"]
    return [f"c{i}" for i in range(commas + 1)]


def build_cypher_sql(graph_name: str, cypher_query: str) -> CypherStatement:
    """Wrap a parameter-embedded Cypher query into an ``ag_catalog.cypher`` call."""
    if not _IDENTIFIER.match(graph_name):
        raise ValueError(f"Invalid graph name: {graph_name!r}")

    mutation = is_mutation(cypher_query)
    body = cypher_query.strip()
    if mutation and not _RETURN.search(mask_string_literals(body)):
        body = f"{body} RETURN 'success'"
        columns = ["c"]
    else:
        columns = return_columns(body)

    tag = dollar_quote_tag(body)
    column_defs = ", ".join(f"{c} agtype" for c in columns)
    sql = (
        f"SELECT * FROM ag_catalog.cypher('{graph_name}'::name, "
        f"{tag}{body}{tag}) AS t({column_defs})"
    )
    return CypherStatement(sql=sql, columns=columns, is_mutation=mutation)


def is_valid_label(label: str) -> bool:
    """Vertex/edge labels are interpolated into query text, so only plain identifiers pass."""
    return bool(label) and bool(_IDENTIFIER.match(label))
