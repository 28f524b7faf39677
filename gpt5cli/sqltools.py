"""SQL introspection, dry-run and formatting tools.

Each tool call opens one read-only connection (psycopg for PostgreSQL,
PyMySQL for MySQL), binds every caller-supplied name as a query
parameter, and closes the connection without committing. Only ``sqruff``
runs as an external program.
"""

import hashlib
import json
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlsplit

import psycopg
import pymysql
import pymysql.cursors
from psycopg.rows import dict_row

from .errors import AgentError, ConfigError
from .tools import (
    READ_FILE_TOOL,
    WRITE_FILE_TOOL,
    ToolContext,
    ToolRegistration,
    run_command,
)

ENGINES = ("postgresql", "mysql")

_PG_SYSTEM_SCHEMAS = ("pg_catalog", "information_schema")
_MYSQL_SYSTEM_SCHEMAS = ("information_schema", "mysql", "performance_schema", "sys")


class SqlToolError(AgentError):
    """Raised when the database client reports an error."""


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def infer_engine(dsn: str) -> str:
    try:
        scheme = urlsplit(dsn).scheme.lower()
    except ValueError as e:
        raise ConfigError(f"could not parse --dsn: {e}") from e
    if scheme in ("postgres", "postgresql"):
        return "postgresql"
    if scheme == "mysql":
        return "mysql"
    raise ConfigError(
        f"unsupported --dsn scheme {scheme or '(none)'!r} (postgresql/mysql only)"
    )


def hash_dsn(dsn: str) -> str:
    return "sha256:" + hashlib.sha256(dsn.encode("utf-8")).hexdigest()


@dataclass
class SqlConnection:
    dsn: str
    engine: str

    @classmethod
    def from_dsn(cls, dsn: str) -> "SqlConnection":
        dsn = dsn.strip()
        if not dsn:
            raise ConfigError("--dsn must not be empty")
        return cls(dsn=dsn, engine=infer_engine(dsn))

    @property
    def dsn_hash(self) -> str:
        return hash_dsn(self.dsn)

    def metadata(self) -> dict:
        """Host/port/database/user, without the password."""
        parts = urlsplit(self.dsn)
        meta: dict = {}
        if parts.hostname:
            meta["host"] = parts.hostname
        if parts.port:
            meta["port"] = parts.port
        database = unquote(parts.path.lstrip("/"))
        if database:
            meta["database"] = database
        if parts.username:
            meta["user"] = unquote(parts.username)
        return meta

    def describe(self) -> str:
        meta = self.metadata()
        host = meta.get("host", "localhost")
        port = f":{meta['port']}" if "port" in meta else ""
        return f"{self.engine}://{meta.get('user', '')}@{host}{port}/{meta.get('database', '')}"


def resolve_dsn(explicit: str | None, previous_context: dict | None) -> SqlConnection:
    """Pick the DSN from --dsn, falling back to the one stored with the conversation."""
    if explicit is not None:
        return SqlConnection.from_dsn(explicit)
    if isinstance(previous_context, dict) and isinstance(
        previous_context.get("dsn"), str
    ):
        return SqlConnection.from_dsn(previous_context["dsn"])
    raise ConfigError("--dsn is required (no DSN is stored in the history either)")


def sql_history_context(
    conn: SqlConnection, base: dict | None = None, previous: dict | None = None
) -> dict:
    context: dict = {}
    if isinstance(previous, dict):
        context.update(previous)
    if base:
        context.update(base)
    context["cli"] = "sql"
    context["engine"] = conn.engine
    context["dsn_hash"] = conn.dsn_hash
    context["dsn"] = conn.dsn
    meta = conn.metadata()
    if meta:
        context["connection"] = meta
    else:
        context.pop("connection", None)
    return context


# ---------------------------------------------------------------------------
# Statement guards
# ---------------------------------------------------------------------------

_DOLLAR_TAG_RE = re.compile(r"\$[A-Za-z0-9_]*\$")


def _skip_trailing_noise(sql: str, index: int) -> int:
    """Return the index of the first character after ``index`` that is not whitespace or a comment."""
    n = len(sql)
    while index < n:
        ch = sql[index]
        nxt = sql[index + 1] if index + 1 < n else ""
        if ch.isspace():
            index += 1
        elif ch == "-" and nxt == "-":
            index += 2
            while index < n and sql[index] not in "\r\n":
                index += 1
        elif ch == "/" and nxt == "*":
            end = sql.find("*/", index + 2)
            index = n if end == -1 else end + 2
        else:
            return index
    return n


def has_dangling_terminator(sql: str) -> bool:
    """True if a ``;`` outside quotes/comments is followed by more SQL."""
    in_single = in_double = False
    single_backslash = False
    dollar_tag = None
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if dollar_tag is not None:
            if sql.startswith(dollar_tag, i):
                i += len(dollar_tag)
                dollar_tag = None
            else:
                i += 1
            continue
        if in_single:
            if single_backslash and ch == "\\":
                i += 2
                continue
            if ch == "'" and nxt == "'":
                i += 2
                continue
            if ch == "'":
                in_single = False
            i += 1
            continue
        if in_double:
            if ch == '"' and nxt == '"':
                i += 2
                continue
            if ch == '"':
                in_double = False
            i += 1
            continue

        if ch == "-" and nxt == "-":
            while i < n and sql[i] not in "\r\n":
                i += 1
            continue
        if ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        if ch == "'":
            in_single = True
            single_backslash = i > 0 and sql[i - 1] in "Ee"
            i += 1
            continue
        if ch == '"':
            in_double = True
            i += 1
            continue
        if ch == "$":
            m = _DOLLAR_TAG_RE.match(sql, i)
            if m:
                dollar_tag = m.group(0)
                i = m.end()
                continue
        if ch == ";":
            return _skip_trailing_noise(sql, i + 1) < n
        i += 1
    return False


_LINE_COMMENT_RE = re.compile(r"--.*$", re.MULTILINE)
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_SELECT_RE = re.compile(r"^\s*(with\b.*?\bselect\b|select\b)", re.IGNORECASE | re.DOTALL)


def is_select_only(sql: str) -> bool:
    stripped = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", sql)).strip()
    return bool(_SELECT_RE.match(stripped))


def _strip_terminator(sql: str) -> str:
    sql = sql.strip()
    while sql.endswith(";"):
        sql = sql[:-1].rstrip()
    return sql


def check_select_query(raw) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("query must be a non-empty string")
    if has_dangling_terminator(raw):
        raise ValueError("only a single SELECT statement is supported")
    if not is_select_only(raw):
        raise ValueError("only SELECT statements are supported")
    return raw.strip()


# ---------------------------------------------------------------------------
# Database sessions
# ---------------------------------------------------------------------------

CONNECT_TIMEOUT = 10  # seconds
PG_READ_ONLY_OPTIONS = "-c default_transaction_read_only=on"
MYSQL_READ_ONLY_INIT = "SET SESSION TRANSACTION READ ONLY"

DRIVER_ERRORS = (psycopg.Error, pymysql.MySQLError)


def open_connection(conn: SqlConnection):
    """Open a read-only DB-API connection whose cursors yield dict rows."""
    if conn.engine == "postgresql":
        return psycopg.connect(
            conn.dsn,
            options=PG_READ_ONLY_OPTIONS,
            row_factory=dict_row,
            connect_timeout=CONNECT_TIMEOUT,
        )
    parts = urlsplit(conn.dsn)
    return pymysql.connect(
        host=parts.hostname or "localhost",
        port=parts.port or 3306,
        user=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else "",
        database=unquote(parts.path.lstrip("/")) or None,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        init_command=MYSQL_READ_ONLY_INIT,
        connect_timeout=CONNECT_TIMEOUT,
    )


def driver_message(error: Exception) -> str:
    """Render a driver error with the server's detail, hint and position when present."""
    if isinstance(error, psycopg.Error):
        diag = error.diag
        lines = [diag.message_primary or str(error).strip()]
        for label, value in (
            ("Detail", diag.message_detail),
            ("Hint", diag.message_hint),
            ("Position", diag.statement_position),
        ):
            if value:
                lines.append(f"{label}: {value}")
        return "\n".join(lines)
    if isinstance(error, pymysql.MySQLError) and len(error.args) >= 2:
        return f"{error.args[1]} (errno {error.args[0]})"
    return str(error)


@contextmanager
def session(conn: SqlConnection):
    """Yield an open connection; driver errors surface as SqlToolError.

    Nothing is ever committed: closing the connection discards the
    transaction the statements ran in.
    """
    try:
        db = open_connection(conn)
    except DRIVER_ERRORS as e:
        raise SqlToolError(driver_message(e)) from e
    try:
        yield db
    except DRIVER_ERRORS as e:
        raise SqlToolError(driver_message(e)) from e
    finally:
        db.close()


def run_query(conn: SqlConnection, sql: str, params: list | None = None) -> list[dict]:
    with session(conn) as db:
        with db.cursor() as cur:
            cur.execute(sql, params or None)
            return [dict(row) for row in cur.fetchall()]


def explain_query(conn: SqlConnection, query: str):
    """Return the JSON plan for ``query`` without running it.

    PostgreSQL first prepares the statement so parse and bind errors come
    back with their position.
    """
    body = _strip_terminator(query)
    with session(conn) as db:
        with db.cursor() as cur:
            if conn.engine == "postgresql":
                cur.execute(f"PREPARE gpt5cli_check AS {body}")
                cur.execute("DEALLOCATE gpt5cli_check")
                cur.execute(f"EXPLAIN (VERBOSE, COSTS OFF, FORMAT JSON) {body}")
                row = cur.fetchone()
                return row["QUERY PLAN"] if row else None
            cur.execute(f"EXPLAIN FORMAT=JSON {body}")
            row = cur.fetchone()
    if not row:
        return None
    value = row.get("EXPLAIN", row)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    try:
        return json.loads(value) if isinstance(value, str) else value
    except json.JSONDecodeError:
        return value


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _string_list(args: dict, key: str) -> list[str] | None:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"{key} must be an array of non-empty strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{key} must be an array of non-empty strings")
        if item.strip() not in out:
            out.append(item.strip())
    if not out:
        raise ValueError(f"{key} must not be an empty array")
    return out


def _table_pairs(args: dict, key: str) -> list[tuple[str, str]] | None:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not value:
        raise ValueError(
            f"{key} must be a non-empty array of {{schema_name, table_name}} objects"
        )
    pairs: list[tuple[str, str]] = []
    for item in value:
        if not isinstance(item, dict):
            raise ValueError(f"{key} must contain objects with schema_name and table_name")
        schema = item.get("schema_name")
        table = item.get("table_name")
        if not isinstance(schema, str) or not isinstance(table, str):
            raise ValueError(
                f"{key} entries require non-empty schema_name and table_name strings"
            )
        pair = (schema.strip(), table.strip())
        if not all(pair):
            raise ValueError(
                f"{key} entries require non-empty schema_name and table_name strings"
            )
        if pair not in pairs:
            pairs.append(pair)
    return pairs


class _Filters:
    """WHERE-clause builder that binds every caller-supplied value as a parameter.

    PostgreSQL matches lists with ``= ANY(%s::text[])``; PyMySQL expands a
    tuple parameter into ``('a', 'b')`` for ``IN %s``.
    """

    def __init__(self, engine: str, system_column: str):
        self.engine = engine
        schemas = (
            _PG_SYSTEM_SCHEMAS if engine == "postgresql" else _MYSQL_SYSTEM_SCHEMAS
        )
        listed = ", ".join(f"'{s}'" for s in schemas)
        self.clauses = [f"{system_column} NOT IN ({listed})"]
        self.params: list = []

    def add(self, clause: str, *params) -> None:
        self.clauses.append(clause)
        self.params.extend(params)

    def any_of(self, column: str, values: list[str] | None) -> None:
        if not values:
            return
        if self.engine == "postgresql":
            self.add(f"{column} = ANY(%s::text[])", list(values))
        else:
            self.add(f"{column} IN %s", tuple(values))

    def table_pairs(self, pairs: list[tuple[str, str]] | None) -> None:
        if not pairs:
            return
        clause = " OR ".join(
            "(table_schema = %s AND table_name = %s)" for _ in pairs
        )
        self.add(f"({clause})", *(value for pair in pairs for value in pair))

    def where(self) -> str:
        return "WHERE " + "\n  AND ".join(self.clauses)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def table_schema_sql(args: dict, engine: str) -> tuple[str, list]:
    filters = _Filters(engine, "table_schema")
    filters.any_of("table_schema", _string_list(args, "schema_names"))
    filters.any_of("table_name", _string_list(args, "table_names"))
    types = _string_list(args, "table_types")
    filters.any_of(
        "table_type" if engine == "postgresql" else "UPPER(table_type)",
        [t.upper() for t in types] if types else None,
    )
    columns = "table_schema, table_name, table_type"
    if engine == "postgresql":
        columns += ", is_insertable_into"
    sql = (
        f"SELECT {columns}\nFROM information_schema.tables\n{filters.where()}\n"
        "ORDER BY table_schema, table_name"
    )
    return sql, filters.params


def column_schema_sql(args: dict, engine: str) -> tuple[str, list]:
    filters = _Filters(engine, "table_schema")
    filters.any_of("table_schema", _string_list(args, "schema_names"))
    filters.any_of("table_name", _string_list(args, "table_names"))
    filters.any_of("column_name", _string_list(args, "column_names"))
    filters.table_pairs(_table_pairs(args, "tables"))
    sql = (
        "SELECT table_schema, table_name, column_name, data_type, is_nullable, column_default\n"
        f"FROM information_schema.columns\n{filters.where()}\n"
        "ORDER BY table_schema, table_name, ordinal_position"
    )
    return sql, filters.params


def enum_schema_sql(args: dict, engine: str) -> tuple[str, list]:
    schemas = _string_list(args, "schema_names")
    names = _string_list(args, "enum_names")
    if engine == "postgresql":
        filters = _Filters(engine, "n.nspname")
        filters.any_of("n.nspname", schemas)
        filters.any_of("t.typname", names)
        sql = (
            "SELECT n.nspname AS schema_name, t.typname AS enum_name, "
            "array_agg(e.enumlabel ORDER BY e.enumsortorder) AS enum_values\n"
            "FROM pg_type t\n"
            "JOIN pg_enum e ON e.enumtypid = t.oid\n"
            "JOIN pg_namespace n ON n.oid = t.typnamespace\n"
            f"{filters.where()}\n"
            "GROUP BY n.nspname, t.typname\n"
            "ORDER BY n.nspname, t.typname"
        )
        return sql, filters.params
    filters = _Filters(engine, "table_schema")
    filters.add("data_type = 'enum'")
    filters.any_of("table_schema", schemas)
    filters.any_of("CONCAT(table_name, '.', column_name)", names)
    sql = (
        "SELECT table_schema, table_name, column_name, column_type\n"
        f"FROM information_schema.columns\n{filters.where()}\n"
        "ORDER BY table_schema, table_name, column_name"
    )
    return sql, filters.params


_ENUM_VALUE_RE = re.compile(r"'((?:[^']|'')*)'")


def mysql_enum_rows(rows: list[dict]) -> list[dict]:
    """Turn MySQL ``enum('a','b')`` column types into enum rows."""
    out = []
    for row in rows:
        column_type = row.get("column_type") or row.get("COLUMN_TYPE") or ""
        values = [v.replace("''", "'") for v in _ENUM_VALUE_RE.findall(column_type)]
        schema = row.get("table_schema") or row.get("TABLE_SCHEMA")
        table = row.get("table_name") or row.get("TABLE_NAME")
        column = row.get("column_name") or row.get("COLUMN_NAME")
        out.append(
            {
                "schema_name": schema,
                "enum_name": f"{table}.{column}",
                "enum_values": values,
            }
        )
    return out


def index_schema_sql(args: dict, engine: str) -> tuple[str, list]:
    schemas = _string_list(args, "schema_names")
    tables = _string_list(args, "table_names")
    indexes = _string_list(args, "index_names")
    if engine == "postgresql":
        filters = _Filters(engine, "schemaname")
        filters.any_of("schemaname", schemas)
        filters.any_of("tablename", tables)
        filters.any_of("indexname", indexes)
        sql = (
            "SELECT schemaname AS schema_name, tablename AS table_name, "
            "indexname AS index_name, indexdef AS definition\n"
            f"FROM pg_indexes\n{filters.where()}\n"
            "ORDER BY schemaname, tablename, indexname"
        )
        return sql, filters.params
    filters = _Filters(engine, "table_schema")
    filters.any_of("table_schema", schemas)
    filters.any_of("table_name", tables)
    filters.any_of("index_name", indexes)
    sql = (
        "SELECT table_schema AS schema_name, table_name, index_name, "
        "non_unique, GROUP_CONCAT(column_name ORDER BY seq_in_index) AS columns\n"
        f"FROM information_schema.statistics\n{filters.where()}\n"
        "GROUP BY table_schema, table_name, index_name, non_unique\n"
        "ORDER BY table_schema, table_name, index_name"
    )
    return sql, filters.params


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_with_sqruff(query: str, cwd) -> str:
    with tempfile.TemporaryDirectory(prefix="gpt5cli-sql-fmt-") as tmp:
        input_file = Path(tmp) / "input.sql"
        input_file.write_text(query, encoding="utf-8")
        result = run_command("sqruff", ["fix", str(input_file)], cwd)
        if not result["success"]:
            detail = (
                result["stderr"].strip()
                or result["stdout"].strip()
                or result.get("message")
                or f"sqruff failed with exit code {result['exit_code']}"
            )
            raise SqlToolError(detail)
        return input_file.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------


def _array_of_strings(description: str) -> dict:
    return {"type": "array", "description": description, "items": {"type": "string"}}


def build_sql_tools(conn: SqlConnection) -> list[ToolRegistration]:
    """Tool registrations bound to one database connection."""
    engine = conn.engine
    label = "PostgreSQL" if engine == "postgresql" else "MySQL"

    def _rows(rows: list[dict]) -> dict:
        return {"success": True, "rows": rows, "row_count": len(rows)}

    def fetch_tables(args: dict, ctx: ToolContext) -> dict:
        return _rows(run_query(conn, *table_schema_sql(args, engine)))

    def fetch_columns(args: dict, ctx: ToolContext) -> dict:
        return _rows(run_query(conn, *column_schema_sql(args, engine)))

    def fetch_enums(args: dict, ctx: ToolContext) -> dict:
        rows = run_query(conn, *enum_schema_sql(args, engine))
        if engine == "mysql":
            rows = mysql_enum_rows(rows)
        return _rows(rows)

    def fetch_indexes(args: dict, ctx: ToolContext) -> dict:
        return _rows(run_query(conn, *index_schema_sql(args, engine)))

    def dry_run(args: dict, ctx: ToolContext) -> dict:
        try:
            query = check_select_query(args.get("query"))
        except ValueError as e:
            return {"success": False, "message": f"sql_dry_run: {e}"}
        plan = explain_query(conn, query)
        return {"success": True, "plan": plan}

    def format_sql(args: dict, ctx: ToolContext) -> dict:
        try:
            query = check_select_query(args.get("query"))
        except ValueError as e:
            return {"success": False, "message": f"sql_format: {e}"}
        return {"success": True, "formatted_sql": format_with_sqruff(query, ctx.cwd)}

    name_filters = {
        "schema_names": _array_of_strings("Filter by schema names (exact match)."),
        "table_names": _array_of_strings("Filter by table names (exact match)."),
    }
    query_param = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "SQL text. Only SELECT / WITH ... SELECT is supported.",
            }
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    return [
        ToolRegistration(
            name="sql_fetch_table_schema",
            description=f"Retrieve table metadata from {label} information_schema.tables.",
            parameters={
                "type": "object",
                "properties": {
                    **name_filters,
                    "table_types": _array_of_strings(
                        "Filter by table_type (BASE TABLE, VIEW, etc.)."
                    ),
                },
                "required": [],
                "additionalProperties": False,
            },
            handler=fetch_tables,
        ),
        ToolRegistration(
            name="sql_fetch_column_schema",
            description=f"Retrieve column metadata from {label} information_schema.columns.",
            parameters={
                "type": "object",
                "properties": {
                    **name_filters,
                    "column_names": _array_of_strings(
                        "Filter by column names (exact match)."
                    ),
                    "tables": {
                        "type": "array",
                        "description": "Filter by (schema_name, table_name) pairs.",
                        "items": {
                            "type": "object",
                            "properties": {
                                "schema_name": {"type": "string"},
                                "table_name": {"type": "string"},
                            },
                            "required": ["schema_name", "table_name"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": [],
                "additionalProperties": False,
            },
            handler=fetch_columns,
        ),
        ToolRegistration(
            name="sql_fetch_enum_schema",
            description=f"Retrieve enum labels defined in {label}.",
            parameters={
                "type": "object",
                "properties": {
                    "schema_names": name_filters["schema_names"],
                    "enum_names": _array_of_strings(
                        "Filter by enum type names (MySQL: table.column)."
                    ),
                },
                "required": [],
                "additionalProperties": False,
            },
            handler=fetch_enums,
        ),
        ToolRegistration(
            name="sql_fetch_index_schema",
            description=f"Retrieve index metadata from {label}.",
            parameters={
                "type": "object",
                "properties": {
                    **name_filters,
                    "index_names": _array_of_strings("Filter by index names."),
                },
                "required": [],
                "additionalProperties": False,
            },
            handler=fetch_indexes,
        ),
        ToolRegistration(
            name="sql_dry_run",
            description=f"Validate a single SELECT statement via {label} EXPLAIN (FORMAT JSON).",
            parameters=query_param,
            handler=dry_run,
        ),
        ToolRegistration(
            name="sql_format",
            description="Format a SELECT statement with sqruff and return the result.",
            parameters=query_param,
            handler=format_sql,
        ),
        READ_FILE_TOOL,
        WRITE_FILE_TOOL,
    ]

