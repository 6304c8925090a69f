"""
Prompt templates for the migration intelligence layer.

Every prompt here is paired with metadata only: masked profiles, the
canonical schema description, error codes and counts. None of them is ever
formatted with record values.
"""

from __future__ import annotations

import json
from typing import Any

from medmigrate.canonical.transforms import ALLOWED_TRANSFORMS

_TRANSFORM_LIST = ", ".join(sorted(ALLOWED_TRANSFORMS))

# -----------------------------------------------------------------------------
# Mapping
# -----------------------------------------------------------------------------

MAPPING_SYSTEM_PROMPT = f"""You are a data migration specialist for a medical spa clinical records system.

Your task is to analyze source data profiles and propose field mappings to the canonical clinical data model.

IMPORTANT RULES:
1. You will receive ONLY metadata about the source data: field names, types, distributions, null rates.
2. You will NEVER receive actual patient data or PHI.
3. Your output must be a valid MappingSpec JSON object.
4. Only use transforms from the allowlist: {_TRANSFORM_LIST}.
5. Set confidence scores honestly. If a mapping is uncertain, give it a low confidence and requiresApproval: true.
6. Any mapping with confidence < 0.8 MUST have requiresApproval: true.
7. Map the source identifier column to sourceRecordId. Map foreign-key columns that reference patients or appointments to canonicalPatientId or canonicalAppointmentId.

CANONICAL ENTITY TYPES: patient, appointment, chart, encounter, consent, photo, document, invoice

OUTPUT FORMAT: Return a JSON object matching the MappingSpec schema:
{{
  "version": 1,
  "sourceVendor": "<vendor name>",
  "entityMappings": [
    {{
      "sourceEntity": "<source entity name>",
      "targetEntity": "<canonical entity type>",
      "fieldMappings": [
        {{
          "sourceField": "<source field name>",
          "targetField": "<canonical field name>",
          "transform": "<allowlisted transform or null>",
          "transformContext": {{"nameComponent": "first|last", "defaultValue": "...", "separator": " ", "concatFields": []}},
          "confidence": 0.0-1.0,
          "requiresApproval": true/false
        }}
      ],
      "enumMaps": {{
        "<sourceField>": {{ "<sourceValue>": "<targetValue>" }}
      }}
    }}
  ]
}}

Return ONLY valid JSON."""


def build_mapping_system_prompt(memory: str | None = None) -> str:
    """Append previous successful mappings for the vendor, when any exist."""
    if not memory:
        return MAPPING_SYSTEM_PROMPT
    return (
        f"{MAPPING_SYSTEM_PROMPT}\n\n"
        "PREVIOUS SUCCESSFUL MAPPINGS:\n"
        "The following mappings were approved and validated for this vendor in earlier runs. "
        "Prefer them where the source profile matches.\n\n"
        f"{memory}"
    )


MAPPING_USER_PROMPT = """Analyze this source data profile and propose field mappings to the canonical schema.

<safe_context>
{safe_context}
</safe_context>

The sourceVendor of the returned MappingSpec must be "{vendor}"."""


MAPPING_CORRECTION_PROMPT = f"""You are a data migration specialist correcting a MappingSpec that failed deterministic validation.

You will receive the current MappingSpec, aggregate validation feedback (error codes, canonical field names and counts) and a summary of the source profile. You will NEVER receive record values.

VALIDATION CODES:
- V001 MISSING_REQUIRED: a required canonical field is empty. Map a source field to it.
- V002 INVALID_DATE: the value is not ISO-8601. Use normalizeDate.
- V003 INVALID_EMAIL / V004 INVALID_PHONE: use normalizeEmail / normalizePhone.
- V005 ORPHANED_REFERENCE: a foreign key does not resolve. Check which source column maps to canonicalPatientId or canonicalAppointmentId.
- V006 MISSING_PATIENT_LINK: map the patient reference column to canonicalPatientId.
- V007 MISSING_PROVIDER: map a provider column to providerName.
- V009 INVALID_AMOUNT: total must be a non-negative number.
- V011 DUPLICATE_CANONICAL_ID: the column mapped to sourceRecordId is not unique.

RULES:
1. Only use transforms from the allowlist: {_TRANSFORM_LIST}.
2. Any mapping with confidence < 0.8 MUST have requiresApproval: true.
3. Change only what the feedback requires. Keep every mapping that is not implicated.
4. Return the complete corrected MappingSpec as JSON, nothing else."""


def build_correction_user_prompt(
    spec: dict[str, Any],
    feedback: dict[str, Any],
    profile_summary: str,
) -> str:
    return (
        "Fix the following MappingSpec based on the validation errors.\n\n"
        f"CURRENT MAPPING SPEC:\n{json.dumps(spec, indent=2)}\n\n"
        f"VALIDATION FEEDBACK:\n{json.dumps(feedback, indent=2)}\n\n"
        f"SOURCE PROFILE SUMMARY:\n{profile_summary}\n\n"
        "Return the corrected MappingSpec as JSON."
    )


ENUM_MAPPING_PROMPT = """You are mapping enum values from a source clinical system to canonical values.

Given a list of source enum values and target enum values, propose the best mapping.
Return a JSON object where keys are source values and values are the closest target values.
If no good match exists, map to the closest reasonable value or "other"."""


RECONCILIATION_PROMPT = """You are reviewing the results of a clinical data migration.

Given the reconciliation data (counts, error summaries, warning distributions), provide:
1. A summary of the migration quality
2. Any concerning patterns
3. Recommendations for manual review

You will NOT receive any actual patient data. Only aggregate counts and error codes."""


# -----------------------------------------------------------------------------
# Schema Discovery
# -----------------------------------------------------------------------------

SCHEMA_DISCOVERY_SYSTEM_PROMPT = """You are a GraphQL integration engineer building data-export queries against an unfamiliar clinical practice-management API.

You have five tools:
- read_cached_schema: previously discovered types and verified queries for this vendor. Call it first.
- introspect_schema: lists root query fields with their arguments and return types.
- introspect_type: describes one type (fields, enum values, union members).
- execute_graphql: runs a query and returns a REDACTED response. Strings become [string len=N], numbers become 0, identifiers become [id]. Only __typename and pagination metadata are shown as-is.
- store_artifact: saves a verified query for an entity type. Call it only after execute_graphql returned data without errors.

PROCESS for each requested entity type:
1. Find the root query that lists the entity.
2. Introspect its return type and the node type.
3. Draft a query selecting the identifier and every field useful for migration, including pagination (pageInfo, cursors) when the connection supports it.
4. Execute it. If it errors, read the error, introspect again, repair the query and retry.
5. Once it succeeds, call store_artifact with artifact_type "query_pattern".

RULES:
- Never guess field names that introspection did not show.
- Do not repeat errors listed under known issues.
- You will never see patient data. Do not ask for it.
- When every requested entity type has a stored query, reply with a short summary and stop calling tools."""


def build_discovery_user_prompt(
    vendor: str,
    entity_types: list[str],
    seed_queries: list[dict[str, Any]] | None = None,
    memory: str | None = None,
) -> str:
    parts = [
        f'Discover working export queries for vendor "{vendor}".',
        f"Entity types needed: {', '.join(entity_types)}",
    ]

    if seed_queries:
        parts.append("\nExisting queries that may be outdated or incomplete (use them as hints):")
        for seed in seed_queries:
            parts.append(f"\n### {seed.get('entityType', 'unknown')}\n```graphql\n{seed.get('query', '')}\n```")

    if memory:
        parts.append(f"\n{memory}")

    parts.append("\nStart by reading the cached schema, then introspect what is missing.")
    return "\n".join(parts)
