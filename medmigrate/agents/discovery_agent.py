"""
Schema Discovery Agent

Builds working export queries against an unfamiliar GraphQL API. The model
drives five tools (introspection, redacted execution, cache read, artifact
store) inside a bounded tool loop; every response it sees passes through
redact_phi first.

Functional Requirements:
- DSC-001: Reuse verified cached queries without any AI call
- DSC-002: Introspect, test and repair queries through a bounded tool loop
- DSC-003: Persist discovered types, queries, errors and cross-vendor patterns
- DSC-004: Degrade to cached/seed state when no tool-capable AI is available
"""

from __future__ import annotations

import json
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.agents.llm_clients import LLMClientChain, ToolDefinition
from medmigrate.agents.prompts import SCHEMA_DISCOVERY_SYSTEM_PROMPT, build_discovery_user_prompt
from medmigrate.core.crypto import decrypt_credentials
from medmigrate.core.errors import CredentialError
from medmigrate.memory.discovery_memory import (
    CapturedDiscoveryError,
    DiscoveryMemory,
    parse_graphql_error,
)
from medmigrate.memory.repository import utc_now
from medmigrate.memory.schema_cache import (
    CachedField,
    CachedQueryPattern,
    CachedTypeInfo,
    SchemaCache,
)
from medmigrate.phi.redactor import redact_graphql_errors, redact_phi

logger = structlog.get_logger(__name__)

DISCOVERY_MAX_ITERATIONS = 20
DISCOVERY_MAX_TOKENS = 8192

INTROSPECT_TYPE_QUERY = """query IntrospectType($name: String!) {
  __type(name: $name) {
    name
    kind
    fields {
      name
      type {
        name
        kind
        ofType { name kind ofType { name kind ofType { name kind } } }
      }
    }
    enumValues { name }
    possibleTypes { name }
  }
}"""

INTROSPECT_SCHEMA_QUERY = """query IntrospectSchema {
  __schema {
    queryType {
      fields {
        name
        args {
          name
          type {
            name
            kind
            ofType { name kind ofType { name kind } }
          }
        }
        type {
          name
          kind
          ofType { name kind ofType { name kind ofType { name kind } } }
        }
      }
    }
  }
}"""


# -----------------------------------------------------------------------------
# GraphQL Execution
# -----------------------------------------------------------------------------


class GraphQLCredentials(BaseModel):
    """Connection details for a vendor GraphQL API."""

    model_config = ConfigDict(populate_by_name=True)

    endpoint: str
    api_key: str | None = Field(default=None, alias="apiKey")
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_stored(cls, stored: Any, key: str | None = None) -> "GraphQLCredentials":
        """
        Accept credentials as a model, a plain mapping, or the base64 envelope
        written by encrypt_credentials(). Envelopes are decrypted with
        MIGRATION_ENCRYPTION_KEY unless a key is given.
        """
        if isinstance(stored, cls):
            return stored
        if isinstance(stored, str):
            stored = decrypt_credentials(stored, key)
        if not isinstance(stored, dict):
            raise CredentialError(f"Unsupported credentials type: {type(stored).__name__}")
        return cls.model_validate(stored)


class GraphQLExecutor:
    """Base class for GraphQL executors."""

    def execute(
        self,
        credentials: GraphQLCredentials,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run a query and return the raw {data?, errors?} response."""
        raise NotImplementedError


class HttpGraphQLExecutor(GraphQLExecutor):
    """POSTs queries over HTTP with a bearer token, retrying transport errors."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_multiplier: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self.client = client or httpx.Client(timeout=timeout)
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier

    def execute(
        self,
        credentials: GraphQLCredentials,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not credentials.endpoint:
            raise CredentialError("GraphQL endpoint is required")

        headers = {"Content-Type": "application/json", **credentials.headers}
        if credentials.api_key:
            headers["Authorization"] = f"Bearer {credentials.api_key}"

        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        last_error: httpx.HTTPError | None = None
        for attempt in range(self.max_retries):
            try:
                response = self.client.post(credentials.endpoint, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                # Client errors will not improve on retry
                if e.response.status_code < 500:
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = e

            time.sleep((self.backoff_multiplier**attempt) * 0.4)

        logger.warning("graphql_request_failed", attempts=self.max_retries, error_type=type(last_error).__name__)
        raise last_error

    def close(self) -> None:
        self.client.close()


# -----------------------------------------------------------------------------
# Discovery Session and Tools
# -----------------------------------------------------------------------------


class DiscoverySession:
    """Mutable state of one discovery run, shared by the tool handlers."""

    def __init__(
        self,
        vendor: str,
        credentials: GraphQLCredentials,
        executor: GraphQLExecutor,
        discovered_types: dict[str, CachedTypeInfo] | None = None,
        discovered_queries: dict[str, CachedQueryPattern] | None = None,
    ):
        self.vendor = vendor
        self.credentials = credentials
        self.executor = executor
        self.discovered_types: dict[str, CachedTypeInfo] = dict(discovered_types or {})
        self.discovered_queries: dict[str, CachedQueryPattern] = dict(discovered_queries or {})
        self.errors: list[CapturedDiscoveryError] = []

    def capture_errors(self, messages: list[str], query: str) -> None:
        for message in messages:
            type_name, field_name = parse_graphql_error(message)
            self.errors.append(
                CapturedDiscoveryError(
                    errorMessage=message,
                    query=query,
                    typeName=type_name,
                    fieldName=field_name,
                )
            )


def resolve_type(type_obj: dict[str, Any] | None) -> tuple[str, str, bool, bool]:
    """Unwrap NON_NULL/LIST wrappers: (name, kind, is_list, is_non_null)."""
    is_list = False
    is_non_null = False
    current = type_obj

    while current:
        kind = current.get("kind")
        if kind == "NON_NULL":
            is_non_null = True
            current = current.get("ofType")
        elif kind == "LIST":
            is_list = True
            current = current.get("ofType")
        else:
            break

    current = current or {}
    return current.get("name") or "Unknown", current.get("kind") or "SCALAR", is_list, is_non_null


def format_type(type_obj: dict[str, Any] | None) -> str:
    name, _, is_list, is_non_null = resolve_type(type_obj)
    result = f"[{name}]" if is_list else name
    return f"{result}!" if is_non_null else result


def _error_messages(result: dict[str, Any]) -> list[str]:
    return [e.get("message", "") for e in result.get("errors") or []]


def build_discovery_tools(session: DiscoverySession, schema_cache: SchemaCache) -> list[ToolDefinition]:
    """Build the five discovery tools bound to a session."""

    def introspect_type(tool_input: dict[str, Any]) -> dict[str, Any]:
        type_name = tool_input.get("type_name", "")
        result = session.executor.execute(
            session.credentials, INTROSPECT_TYPE_QUERY, {"name": type_name}
        )
        messages = _error_messages(result)
        if messages:
            return {"error": "; ".join(messages)}

        type_info = (result.get("data") or {}).get("__type")
        if not type_info:
            return {"error": f'Type "{type_name}" not found in schema'}

        fields = None
        if type_info.get("fields") is not None:
            fields = []
            for f in type_info["fields"]:
                name, kind, is_list, is_non_null = resolve_type(f.get("type"))
                fields.append(
                    CachedField(name=f["name"], type=name, kind=kind, isList=is_list, isNonNull=is_non_null)
                )

        cached = CachedTypeInfo(
            name=type_name,
            kind=type_info.get("kind", ""),
            fields=fields,
            enumValues=[e["name"] for e in type_info["enumValues"]] if type_info.get("enumValues") else None,
            possibleTypes=(
                [t["name"] for t in type_info["possibleTypes"]] if type_info.get("possibleTypes") else None
            ),
            cachedAt=utc_now().isoformat(),
        )
        session.discovered_types[type_name] = cached
        return cached.model_dump(by_alias=True, exclude_none=True)

    def introspect_schema(tool_input: dict[str, Any]) -> dict[str, Any]:
        result = session.executor.execute(session.credentials, INTROSPECT_SCHEMA_QUERY)
        messages = _error_messages(result)
        if messages:
            return {"error": "; ".join(messages)}

        query_type = ((result.get("data") or {}).get("__schema") or {}).get("queryType") or {}
        if not query_type.get("fields"):
            return {"error": "Could not introspect schema root queries"}

        return {
            "queries": [
                {
                    "name": f["name"],
                    "args": [
                        {"name": a["name"], "type": format_type(a.get("type"))}
                        for a in f.get("args") or []
                    ],
                    "returnType": format_type(f.get("type")),
                }
                for f in query_type["fields"]
            ]
        }

    def execute_graphql(tool_input: dict[str, Any]) -> dict[str, Any]:
        query = tool_input.get("query", "")
        try:
            result = session.executor.execute(session.credentials, query, tool_input.get("variables"))
        except (httpx.HTTPError, CredentialError) as e:
            return {"error": str(e)}

        if result.get("errors"):
            session.capture_errors(_error_messages(result), query)
            data = result.get("data")
            return {
                "errors": redact_graphql_errors(result["errors"]),
                "data": redact_phi(data) if data else None,
            }
        return {"data": redact_phi(result.get("data"))}

    def read_cached_schema(tool_input: dict[str, Any]) -> str:
        return schema_cache.read_for_agent(session.vendor)

    def store_artifact(tool_input: dict[str, Any]) -> dict[str, Any]:
        artifact_type = tool_input.get("artifact_type", "")
        entity_type = tool_input.get("entity_type", "")

        if artifact_type == "query_pattern":
            query = tool_input.get("query")
            if not query:
                return {"error": "query is required for query_pattern"}
            session.discovered_queries[entity_type] = CachedQueryPattern(
                entityType=entity_type,
                query=query,
                variables=tool_input.get("variables"),
                verified=True,
                cachedAt=utc_now().isoformat(),
            )
            logger.info("query_pattern_stored", vendor=session.vendor, entity_type=entity_type)

        return {"stored": True, "entityType": entity_type, "type": artifact_type}

    return [
        ToolDefinition(
            name="introspect_type",
            description=(
                "Introspect a single GraphQL type by name using __type. Returns field names, types, "
                "enum values, and union possible types. Use this to discover the shape of types "
                "before building queries."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "type_name": {
                        "type": "string",
                        "description": "The GraphQL type name to introspect (e.g., 'Client', 'Query')",
                    }
                },
                "required": ["type_name"],
            },
            handler=introspect_type,
        ),
        ToolDefinition(
            name="introspect_schema",
            description=(
                "Introspect the root Query type to discover all available top-level queries. "
                "Returns query names with their argument and return types."
            ),
            input_schema={"type": "object", "properties": {}, "required": []},
            handler=introspect_schema,
        ),
        ToolDefinition(
            name="execute_graphql",
            description=(
                "Execute a GraphQL query and return the PHI-redacted response structure. "
                "All string values are replaced with [string len=N], numbers with 0, IDs with [id]. "
                "Use this to test queries and see response shapes without seeing actual patient data."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The GraphQL query string to execute"},
                    "variables": {"type": "object", "description": "Optional query variables"},
                },
                "required": ["query"],
            },
            handler=execute_graphql,
        ),
        ToolDefinition(
            name="read_cached_schema",
            description=(
                "Read previously cached schema types and query patterns for this vendor. "
                "Use this at the start of discovery to avoid re-introspecting known types."
            ),
            input_schema={"type": "object", "properties": {}, "required": []},
            handler=read_cached_schema,
        ),
        ToolDefinition(
            name="store_artifact",
            description=(
                "Store a verified working query pattern or type info in the cache. "
                "Call this after you've confirmed a query works correctly."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "artifact_type": {
                        "type": "string",
                        "enum": ["query_pattern", "type_info"],
                        "description": "Type of artifact to store",
                    },
                    "entity_type": {
                        "type": "string",
                        "description": "Entity type this artifact is for (e.g., 'patients')",
                    },
                    "query": {
                        "type": "string",
                        "description": "The working GraphQL query (for query_pattern type)",
                    },
                    "variables": {
                        "type": "object",
                        "description": "Default variables template (for query_pattern type)",
                    },
                },
                "required": ["artifact_type", "entity_type"],
            },
            handler=store_artifact,
        ),
    ]


# -----------------------------------------------------------------------------
# Agent
# -----------------------------------------------------------------------------


class SeedQuery(BaseModel):
    """A known, possibly outdated, query used as a hint."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(..., alias="entityType")
    query: str
    variables: dict[str, Any] | None = None


class DiscoveryResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    queries: dict[str, CachedQueryPattern] = Field(default_factory=dict)
    types: dict[str, CachedTypeInfo] = Field(default_factory=dict)
    tool_call_count: int = Field(default=0, alias="toolCallCount")
    from_cache: bool = Field(default=False, alias="fromCache")
    session: DiscoverySession | None = Field(default=None, exclude=True)

    def verified_queries(self) -> dict[str, CachedQueryPattern]:
        return {k: q for k, q in self.queries.items() if q.verified}


class SchemaDiscoveryAgent:
    """Discovers and caches GraphQL export queries per vendor."""

    def __init__(
        self,
        executor: GraphQLExecutor | None = None,
        chain: LLMClientChain | None = None,
        schema_cache: SchemaCache | None = None,
        discovery_memory: DiscoveryMemory | None = None,
    ):
        self.executor = executor or HttpGraphQLExecutor()
        self.chain = chain or LLMClientChain.default()
        self.schema_cache = schema_cache or SchemaCache()
        self.discovery_memory = discovery_memory or DiscoveryMemory()

    def discover_and_build_queries(
        self,
        vendor: str,
        credentials: GraphQLCredentials,
        entity_types: list[str],
        seed_queries: list[SeedQuery] | None = None,
    ) -> DiscoveryResult:
        seed_queries = seed_queries or []
        cached_types = self.schema_cache.read_schema(vendor) or {}
        cached_queries = self.schema_cache.read_query_patterns(vendor) or {}

        if cached_queries and all(
            et in cached_queries and cached_queries[et].verified for et in entity_types
        ):
            logger.info("discovery_cache_hit", vendor=vendor, entities=len(entity_types))
            return DiscoveryResult(queries=cached_queries, types=cached_types, fromCache=True)

        session = DiscoverySession(vendor, credentials, self.executor, cached_types, cached_queries)

        client = self.chain.tool_client()
        if client is None:
            for seed in seed_queries:
                session.discovered_queries.setdefault(
                    seed.entity_type,
                    CachedQueryPattern(
                        entityType=seed.entity_type,
                        query=seed.query,
                        variables=seed.variables,
                        verified=False,
                        cachedAt=utc_now().isoformat(),
                    ),
                )
            logger.warning("discovery_ai_unavailable", vendor=vendor, cached_queries=len(cached_queries))
            return DiscoveryResult(
                queries=session.discovered_queries,
                types=session.discovered_types,
                session=session,
            )

        memory = self.discovery_memory.read_for_agent(vendor)
        user_prompt = build_discovery_user_prompt(
            vendor,
            entity_types,
            [s.model_dump(by_alias=True) for s in seed_queries],
            memory,
        )

        logger.info("discovery_started", vendor=vendor, entity_types=entity_types, has_memory=memory is not None)
        start_time = time.time()
        loop = client.run_tool_loop(
            SCHEMA_DISCOVERY_SYSTEM_PROMPT,
            user_prompt,
            build_discovery_tools(session, self.schema_cache),
            max_iterations=DISCOVERY_MAX_ITERATIONS,
            max_tokens=DISCOVERY_MAX_TOKENS,
        )
        logger.info(
            "discovery_complete",
            vendor=vendor,
            elapsed_ms=int((time.time() - start_time) * 1000),
            tool_calls=loop.tool_call_count,
            input_tokens=loop.input_tokens,
            output_tokens=loop.output_tokens,
        )

        self.schema_cache.write_schema(vendor, session.discovered_types)
        self.schema_cache.write_query_patterns(vendor, session.discovered_queries)

        if session.errors:
            self.discovery_memory.add_errors(vendor, session.errors)

        self.discovery_memory.extract_cross_vendor_patterns(
            vendor, {k: q.query for k, q in session.discovered_queries.items() if q.verified}
        )

        return DiscoveryResult(
            queries=session.discovered_queries,
            types=session.discovered_types,
            toolCallCount=loop.tool_call_count,
            session=session,
        )


def main() -> None:
    """Command-line interface for schema discovery."""
    import argparse
    import os
    import sys

    parser = argparse.ArgumentParser(
        description="medmigrate Schema Discovery - build export queries for a GraphQL API"
    )
    parser.add_argument("vendor", help="Vendor key (cache namespace)")
    parser.add_argument("endpoint", nargs="?", help="GraphQL endpoint URL")
    parser.add_argument(
        "--entity",
        action="append",
        dest="entities",
        required=True,
        help="Entity type to discover (repeatable)",
    )
    parser.add_argument(
        "--api-key",
        help="Bearer token (default: MIGRATION_VENDOR_API_KEY environment variable)",
    )
    parser.add_argument(
        "--credentials",
        help="File holding an encrypted credentials envelope; replaces endpoint and --api-key",
    )
    parser.add_argument(
        "--seeds",
        help="JSON file with seed queries [{entityType, query, variables?}]",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path (default: stdout)",
    )

    args = parser.parse_args()

    try:
        seeds = []
        if args.seeds:
            with open(args.seeds, encoding="utf-8") as f:
                seeds = [SeedQuery.model_validate(s) for s in json.load(f)]

        if args.credentials:
            with open(args.credentials, encoding="utf-8") as f:
                credentials = GraphQLCredentials.from_stored(f.read().strip())
        elif args.endpoint:
            credentials = GraphQLCredentials(
                endpoint=args.endpoint,
                apiKey=args.api_key or os.environ.get("MIGRATION_VENDOR_API_KEY"),
            )
        else:
            raise CredentialError("An endpoint or --credentials file is required")
        agent = SchemaDiscoveryAgent()
        result = agent.discover_and_build_queries(args.vendor, credentials, args.entities, seeds)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    output_json = json.dumps(result.model_dump(by_alias=True, exclude_none=True), indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output_json)
        print(
            f"Discovered {len(result.verified_queries())}/{len(args.entities)} verified queries "
            f"({result.tool_call_count} tool calls, from_cache={result.from_cache}) -> {args.output}"
        )
    else:
        print(output_json)


if __name__ == "__main__":
    main()
