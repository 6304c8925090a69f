"""
LLM Clients

AI backends for mapping drafts, mapping corrections and schema discovery,
arranged as an ordered chain of capability-checked strategies:

    AnthropicClient -> OpenAIClient -> HeuristicMappingClient

Clients only ever receive SafeContext payloads, aggregate feedback or
redacted API shapes. Logs carry provider, token counts and latency, never
prompt content.

Functional Requirements:
- LLM-001: Single-shot JSON completion with tolerant JSON extraction
- LLM-002: Bounded tool-use loop; tool failures are returned to the model
- LLM-003: Explicit is_available() checks instead of error-string matching
- LLM-004: Deterministic heuristic client that always yields a valid spec
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.agents.prompts import (
    ENUM_MAPPING_PROMPT,
    MAPPING_CORRECTION_PROMPT,
    MAPPING_USER_PROMPT,
)
from medmigrate.canonical.mapping_spec import (
    APPROVAL_CONFIDENCE_THRESHOLD,
    MappingSpec,
    parse_mapping_spec,
)
from medmigrate.canonical.schema import EntityType
from medmigrate.core.config import get_settings
from medmigrate.core.errors import LLMUnavailableError
from medmigrate.core.metrics import track_llm_fallback, track_llm_request, track_tool_call
from medmigrate.phi.safe_context import SafeContext

logger = structlog.get_logger(__name__)


def extract_json(text: str) -> dict[str, Any]:
    """Extract a JSON object from model output."""
    # Try to parse directly
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Try to find JSON in code blocks
    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if json_match:
        try:
            return json.loads(json_match.group(1))
        except json.JSONDecodeError:
            pass

    # Try to find JSON object
    json_match = re.search(r"\{[\s\S]*\}", text)
    if json_match:
        try:
            return json.loads(json_match.group(0))
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Could not extract JSON from response ({len(text)} chars)")


# -----------------------------------------------------------------------------
# Tool Loop Types
# -----------------------------------------------------------------------------


class ToolDefinition(BaseModel):
    """A tool exposed to the model, with its local handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[[dict[str, Any]], Any]

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolLoopResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    final_text: str = Field(default="", alias="finalText")
    tool_call_count: int = Field(default=0, alias="toolCallCount")
    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    iterations: int = 0


def _safe_context_message(safe_context: SafeContext, vendor: str) -> str:
    return MAPPING_USER_PROMPT.format(
        safe_context=json.dumps(safe_context.to_prompt_json(), indent=2),
        vendor=vendor,
    )


# -----------------------------------------------------------------------------
# Clients
# -----------------------------------------------------------------------------


class BaseLLMClient:
    """Base class for LLM clients."""

    name = "base"
    supports_tools = False
    supports_correction = True

    def is_available(self) -> bool:
        raise NotImplementedError

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any]:
        """Single-shot request returning a parsed JSON object."""
        raise NotImplementedError

    def propose_mapping_spec(
        self, system: str, safe_context: SafeContext, vendor: str
    ) -> dict[str, Any]:
        return self.complete(system, _safe_context_message(safe_context, vendor), max_tokens=8192)

    def correct_mapping_spec(self, user: str) -> dict[str, Any]:
        return self.complete(MAPPING_CORRECTION_PROMPT, user, max_tokens=8192)

    def suggest_enum_mappings(
        self, source_values: list[str], target_values: list[str]
    ) -> dict[str, str]:
        return self.complete(
            ENUM_MAPPING_PROMPT,
            f"Source values: {json.dumps(source_values)}\nTarget values: {json.dumps(target_values)}",
        )

    def run_tool_loop(
        self,
        system: str,
        user: str,
        tools: list[ToolDefinition],
        max_iterations: int = 15,
        max_tokens: int = 4096,
    ) -> ToolLoopResult:
        raise LLMUnavailableError(f"{self.name} client does not support tool use")


class AnthropicClient(BaseLLMClient):
    """Anthropic Claude client: JSON completion and the tool-use loop."""

    name = "anthropic"
    supports_tools = True

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        client: Any = None,
    ):
        settings = get_settings()
        self.model = model or settings.migration_anthropic_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.unavailable_reason: str | None = None
        self.client = client

        if self.client is not None:
            return

        try:
            import anthropic
        except ImportError:
            self.unavailable_reason = (
                "anthropic package is required. Install with: pip install anthropic"
            )
            return

        api_key = api_key or settings.anthropic_api_key
        if not api_key:
            self.unavailable_reason = (
                "Anthropic API key required. Set ANTHROPIC_API_KEY environment variable."
            )
            return

        self.client = anthropic.Anthropic(api_key=api_key)

    def is_available(self) -> bool:
        return self.client is not None

    def _require_client(self) -> Any:
        if self.client is None:
            raise LLMUnavailableError(self.unavailable_reason or "Anthropic client unavailable")
        return self.client

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any]:
        client = self._require_client()
        start_time = time.time()
        message = client.messages.create(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        duration = time.time() - start_time

        usage = getattr(message, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        track_llm_request(duration, self.name, input_tokens, output_tokens)
        logger.info(
            "llm_completion",
            provider=self.name,
            model=self.model,
            latency_ms=int(duration * 1000),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise ValueError("No text response from Anthropic")
        return extract_json(text)

    def run_tool_loop(
        self,
        system: str,
        user: str,
        tools: list[ToolDefinition],
        max_iterations: int = 15,
        max_tokens: int = 4096,
    ) -> ToolLoopResult:
        """
        Run a bounded tool-use conversation.

        Each round sends the accumulated transcript, dispatches every
        tool_use block to its handler and appends the results as the next
        user turn. The loop ends when the model stops calling tools, when it
        signals end_turn, or after max_iterations rounds.
        """
        client = self._require_client()
        handlers = {tool.name: tool.handler for tool in tools}
        api_tools = [tool.to_api() for tool in tools]
        messages: list[dict[str, Any]] = [{"role": "user", "content": user}]
        result = ToolLoopResult()

        for _ in range(max_iterations):
            result.iterations += 1
            start_time = time.time()
            response = client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                tools=api_tools,
            )
            duration = time.time() - start_time

            usage = getattr(response, "usage", None)
            input_tokens = getattr(usage, "input_tokens", 0) or 0
            output_tokens = getattr(usage, "output_tokens", 0) or 0
            result.input_tokens += input_tokens
            result.output_tokens += output_tokens
            track_llm_request(duration, self.name, input_tokens, output_tokens)

            for block in response.content:
                if block.type == "text":
                    result.final_text += block.text

            tool_uses = [block for block in response.content if block.type == "tool_use"]
            if not tool_uses:
                break

            messages.append({"role": "assistant", "content": response.content})

            tool_results = []
            for block in tool_uses:
                result.tool_call_count += 1
                tool_results.append(self._dispatch(handlers, block))

            messages.append({"role": "user", "content": tool_results})

            if response.stop_reason == "end_turn":
                break

        logger.info(
            "tool_loop_complete",
            provider=self.name,
            iterations=result.iterations,
            tool_calls=result.tool_call_count,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result

    def _dispatch(self, handlers: dict[str, Callable[[dict[str, Any]], Any]], block: Any) -> dict[str, Any]:
        handler = handlers.get(block.name)
        if handler is None:
            track_tool_call(block.name, is_error=True)
            return {
                "type": "tool_result",
                "tool_use_id": block.id,
                "content": f'Error: Unknown tool "{block.name}"',
                "is_error": True,
            }

        try:
            output = handler(dict(block.input or {}))
        except Exception as e:
            # The model sees the message only, so it can repair its next call
            logger.warning("tool_handler_failed", tool=block.name, error_type=type(e).__name__)
            track_tool_call(block.name, is_error=True)
            return {
                "type": "tool_result",
                "tool_use_id": block.id,
                "content": f"Error: {e}",
                "is_error": True,
            }

        track_tool_call(block.name)
        return {
            "type": "tool_result",
            "tool_use_id": block.id,
            "content": output if isinstance(output, str) else json.dumps(output, default=str),
        }


class OpenAIClient(BaseLLMClient):
    """OpenAI chat-completions client in JSON mode; the secondary backend."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        client: Any = None,
    ):
        settings = get_settings()
        self.model = model or settings.migration_openai_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.unavailable_reason: str | None = None
        self.client = client

        if self.client is not None:
            return

        try:
            import openai
        except ImportError:
            self.unavailable_reason = "openai package is required. Install with: pip install openai"
            return

        api_key = api_key or settings.openai_api_key
        if not api_key:
            self.unavailable_reason = (
                "OpenAI API key required. Set OPENAI_API_KEY environment variable."
            )
            return

        self.client = openai.OpenAI(api_key=api_key)

    def is_available(self) -> bool:
        return self.client is not None

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any]:
        if self.client is None:
            raise LLMUnavailableError(self.unavailable_reason or "OpenAI client unavailable")

        start_time = time.time()
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
        )
        duration = time.time() - start_time

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        track_llm_request(duration, self.name, input_tokens, output_tokens)
        logger.info(
            "llm_completion",
            provider=self.name,
            model=self.model,
            latency_ms=int(duration * 1000),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        return extract_json(response.choices[0].message.content or "")


# -----------------------------------------------------------------------------
# Heuristic Client
# -----------------------------------------------------------------------------

FIELD_ALIASES: dict[str, str] = {
    "fname": "firstName",
    "first_name": "firstName",
    "firstname": "firstName",
    "lname": "lastName",
    "last_name": "lastName",
    "lastname": "lastName",
    "dob": "dateOfBirth",
    "date_of_birth": "dateOfBirth",
    "birthdate": "dateOfBirth",
    "birthday": "dateOfBirth",
    "phone_number": "phone",
    "mobile": "phone",
    "cell": "phone",
    "email_address": "email",
    "mail": "email",
    "provider": "providerName",
    "provider_name": "providerName",
    "doctor": "providerName",
    "service": "serviceName",
    "service_name": "serviceName",
    "start": "startTime",
    "start_time": "startTime",
    "start_date": "startTime",
    "end": "endTime",
    "end_time": "endTime",
    "end_date": "endTime",
    "id": "sourceRecordId",
    "source_id": "sourceRecordId",
    "patient_id": "canonicalPatientId",
    "client_id": "canonicalPatientId",
    "patientid": "canonicalPatientId",
    "clientid": "canonicalPatientId",
    "appointment_id": "canonicalAppointmentId",
    "appointmentid": "canonicalAppointmentId",
    "chief_complaint": "chiefComplaint",
    "template_name": "templateName",
    "signed_at": "signedAt",
    "invoice_number": "invoiceNumber",
    "paid_at": "paidAt",
    "tax_amount": "taxAmount",
    "file_name": "filename",
    "name": "filename",
    "mime_type": "mimeType",
    "content_type": "mimeType",
    "taken_at": "takenAt",
}

ENTITY_ALIASES: dict[str, EntityType] = {
    "patients": EntityType.PATIENT,
    "patient": EntityType.PATIENT,
    "clients": EntityType.PATIENT,
    "client": EntityType.PATIENT,
    "appointments": EntityType.APPOINTMENT,
    "appointment": EntityType.APPOINTMENT,
    "bookings": EntityType.APPOINTMENT,
    "charts": EntityType.CHART,
    "chart": EntityType.CHART,
    "encounters": EntityType.ENCOUNTER,
    "encounter": EntityType.ENCOUNTER,
    "consents": EntityType.CONSENT,
    "consent": EntityType.CONSENT,
    "photos": EntityType.PHOTO,
    "photo": EntityType.PHOTO,
    "documents": EntityType.DOCUMENT,
    "document": EntityType.DOCUMENT,
    "invoices": EntityType.INVOICE,
    "invoice": EntityType.INVOICE,
}

DATE_TARGETS = frozenset({"dateOfBirth", "startTime", "endTime", "signedAt", "paidAt", "takenAt"})
FULL_NAME_FIELDS = frozenset({"name", "full_name", "fullname"})


class HeuristicMappingClient(BaseLLMClient):
    """
    Deterministic mapping generator: alias table plus a confidence heuristic.

    Always available. Produces lower-confidence but structurally valid specs
    so the pipeline completes without any AI credentials.
    """

    name = "heuristic"
    supports_correction = False

    def is_available(self) -> bool:
        return True

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any]:
        raise LLMUnavailableError("heuristic client does not answer free-form prompts")

    def propose_mapping_spec(
        self, system: str, safe_context: SafeContext, vendor: str
    ) -> dict[str, Any]:
        target_fields = {
            entry["entityType"]: [f["name"] for f in entry["fields"]]
            for entry in safe_context.target_schema
        }

        entity_mappings = []
        for entity in safe_context.source_profile.entities:
            target_entity = self.match_canonical_entity(entity.type)
            canonical_fields = target_fields.get(target_entity.value, [])

            field_mappings: list[dict[str, Any]] = []
            mapped_targets: set[str] = set()
            for field in entity.fields:
                for target, context in self._targets_for(field.name, target_entity, canonical_fields):
                    if target in mapped_targets:
                        continue
                    mapped_targets.add(target)

                    confidence = self.estimate_confidence(field.name, target)
                    mapping: dict[str, Any] = {
                        "sourceField": field.name,
                        "targetField": target,
                        "transform": self.suggest_transform(field.name, target),
                        "confidence": confidence,
                        "requiresApproval": confidence < APPROVAL_CONFIDENCE_THRESHOLD,
                    }
                    if context:
                        mapping["transformContext"] = context
                    field_mappings.append(mapping)

            entity_mappings.append(
                {
                    "sourceEntity": entity.type,
                    "targetEntity": target_entity.value,
                    "fieldMappings": field_mappings,
                    "enumMaps": {},
                }
            )

        logger.info("heuristic_mapping_generated", vendor=vendor, entities=len(entity_mappings))
        return {
            "version": 1,
            "sourceVendor": vendor or "unknown",
            "entityMappings": entity_mappings,
        }

    def _targets_for(
        self,
        source_field: str,
        target_entity: EntityType,
        canonical_fields: list[str],
    ) -> list[tuple[str, dict[str, Any] | None]]:
        # A single full-name column feeds both patient name fields
        if target_entity == EntityType.PATIENT and source_field.lower() in FULL_NAME_FIELDS:
            return [
                ("firstName", {"nameComponent": "first"}),
                ("lastName", {"nameComponent": "last"}),
            ]

        target = self.match_canonical_field(source_field, canonical_fields)
        if target is None:
            return []
        context = None
        if self.suggest_transform(source_field, target) == "splitName":
            context = {"nameComponent": "last" if target == "lastName" else "first"}
        return [(target, context)]

    def match_canonical_entity(self, source_type: str) -> EntityType:
        return ENTITY_ALIASES.get(source_type.lower(), EntityType.PATIENT)

    def match_canonical_field(self, source_field: str, canonical_fields: list[str]) -> str | None:
        lower = source_field.lower()
        for name in canonical_fields:
            if name.lower() == lower:
                return name

        alias = FIELD_ALIASES.get(lower)
        if alias and alias in canonical_fields:
            return alias
        return None

    def suggest_transform(self, source_field: str, target_field: str) -> str | None:
        if target_field in DATE_TARGETS:
            return "normalizeDate"
        if target_field == "phone":
            return "normalizePhone"
        if target_field == "email":
            return "normalizeEmail"
        if target_field in ("firstName", "lastName"):
            lower = source_field.lower()
            if "full" in lower or lower == "name":
                return "splitName"
            return "trim"
        return None

    def estimate_confidence(self, source_field: str, target_field: str) -> float:
        lower = re.sub(r"[_-]", "", source_field.lower())
        target_lower = target_field.lower()
        if lower == target_lower:
            return 0.95
        if lower in target_lower or target_lower in lower:
            return 0.85
        return 0.6

    def suggest_enum_mappings(
        self, source_values: list[str], target_values: list[str]
    ) -> dict[str, str]:
        """Case-insensitive exact, then containment; else "other" or the first target."""
        fallback = "other" if "other" in target_values else (target_values[0] if target_values else "")
        result = {}
        for source in source_values:
            lower = source.lower().strip()
            match = next((t for t in target_values if t.lower() == lower), None)
            if match is None:
                match = next(
                    (t for t in target_values if t.lower() in lower or lower in t.lower()),
                    fallback,
                )
            result[source] = match
        return result


# -----------------------------------------------------------------------------
# Fallback Chain
# -----------------------------------------------------------------------------


class LLMClientChain:
    """Ordered, capability-checked AI strategies."""

    def __init__(self, clients: list[BaseLLMClient]):
        if not clients:
            raise ValueError("LLMClientChain needs at least one client")
        self.clients = clients

    @classmethod
    def default(cls) -> LLMClientChain:
        return cls([AnthropicClient(), OpenAIClient(), HeuristicMappingClient()])

    @classmethod
    def for_provider(cls, provider: str, model: str | None = None) -> LLMClientChain:
        """Chain for a CLI provider choice; the heuristic client always terminates it."""
        if provider == "anthropic":
            return cls([AnthropicClient(model=model), HeuristicMappingClient()])
        if provider == "openai":
            return cls([OpenAIClient(model=model), HeuristicMappingClient()])
        if provider in ("heuristic", "mock"):
            return cls([HeuristicMappingClient()])
        if provider == "auto":
            return cls.default()
        raise ValueError(f"Unknown LLM provider: {provider}")

    def available(self) -> list[BaseLLMClient]:
        return [c for c in self.clients if c.is_available()]

    def tool_client(self) -> BaseLLMClient | None:
        return next((c for c in self.available() if c.supports_tools), None)

    def propose_mapping_spec(
        self, system: str, safe_context: SafeContext, vendor: str
    ) -> tuple[MappingSpec, str]:
        """Return the first spec that parses and validates, with its provider name."""
        for client in self.clients:
            if not client.is_available():
                logger.info("llm_client_skipped", provider=client.name, reason="unavailable")
                track_llm_fallback(client.name, "unavailable")
                continue

            try:
                spec = parse_mapping_spec(client.propose_mapping_spec(system, safe_context, vendor))
            except Exception as e:
                logger.warning(
                    "llm_client_failed",
                    provider=client.name,
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                )
                track_llm_fallback(client.name, type(e).__name__)
                continue

            if vendor and spec.source_vendor != vendor:
                spec = spec.model_copy(update={"source_vendor": vendor})
            logger.info("mapping_spec_proposed", provider=client.name, entities=len(spec.entity_mappings))
            return spec, client.name

        raise LLMUnavailableError("No AI client produced a valid MappingSpec")

    def correct_mapping_spec(self, user: str) -> tuple[MappingSpec, str] | None:
        """Ask the first correction-capable client for a corrected spec."""
        for client in self.available():
            if not client.supports_correction:
                continue
            try:
                return parse_mapping_spec(client.correct_mapping_spec(user)), client.name
            except Exception as e:
                logger.warning(
                    "mapping_correction_failed",
                    provider=client.name,
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                )
                track_llm_fallback(client.name, type(e).__name__)
        return None

    def complete(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any] | None:
        """Free-form JSON completion from the first capable client, or None."""
        for client in self.available():
            if not client.supports_correction:
                continue
            try:
                return client.complete(system, user, max_tokens)
            except Exception as e:
                logger.warning("llm_completion_failed", provider=client.name, error_type=type(e).__name__)
                track_llm_fallback(client.name, type(e).__name__)
        return None
