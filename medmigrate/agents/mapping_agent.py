"""
Mapping Agent

Drafts and corrects MappingSpecs from source profiles. The agent sees the
profile only through SafeContext, and corrections only through aggregate
MappingFeedback (codes, canonical field names, counts).

Functional Requirements:
- MAP-001: Draft a validated MappingSpec from a SourceProfile
- MAP-002: Inject previous successful mappings for the vendor
- MAP-003: Produce corrected specs as new versions; never mutate
- MAP-004: Always yield a structurally valid spec, even without AI access
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import SourceProfile
from medmigrate.agents.llm_clients import LLMClientChain
from medmigrate.agents.prompts import build_correction_user_prompt, build_mapping_system_prompt
from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.memory.mapping_memory import MappingMemory
from medmigrate.phi.safe_context import SafeContext, SafeContextBuilder

logger = structlog.get_logger(__name__)


class MappingDraft(BaseModel):
    """A drafted spec and where it came from."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    spec: MappingSpec
    provider: str
    low_confidence_count: int = Field(default=0, alias="lowConfidenceCount")
    used_memory: bool = Field(default=False, alias="usedMemory")


def summarize_profile(safe_context: SafeContext) -> str:
    """One line per entity: field names and inferred types only."""
    lines = []
    for entity in safe_context.source_profile.entities:
        fields = ", ".join(f"{f.name} ({f.inferred_type.value})" for f in entity.fields)
        lines.append(f"{entity.type} ({entity.record_count} records): {fields}")
    return "\n".join(lines)


class MappingAgent:
    """
    AI-assisted mapping author.

    Runs the client chain over a SafeContext. The heuristic client ends the
    chain, so draft() always returns a spec.
    """

    def __init__(
        self,
        llm_provider: str = "auto",
        model: str | None = None,
        use_mock: bool = False,
        chain: LLMClientChain | None = None,
        mapping_memory: MappingMemory | None = None,
        context_builder: SafeContextBuilder | None = None,
    ):
        if chain is None:
            chain = LLMClientChain.for_provider("heuristic" if use_mock else llm_provider, model)
        self.chain = chain
        self.mapping_memory = mapping_memory
        self.context_builder = context_builder or SafeContextBuilder()

    def draft(
        self,
        profile: SourceProfile,
        vendor: str,
        existing_services: list[dict[str, str]] | None = None,
    ) -> MappingDraft:
        safe_context = self.context_builder.build_from_profile(profile, existing_services)

        memory = self.mapping_memory.read_for_agent(vendor) if self.mapping_memory else None
        system = build_mapping_system_prompt(memory)

        spec, provider = self.chain.propose_mapping_spec(system, safe_context, vendor)
        draft = MappingDraft(
            spec=spec,
            provider=provider,
            lowConfidenceCount=spec.low_confidence_count(),
            usedMemory=memory is not None,
        )

        logger.info(
            "mapping_drafted",
            vendor=vendor,
            provider=provider,
            entities=len(spec.entity_mappings),
            low_confidence=draft.low_confidence_count,
            used_memory=draft.used_memory,
        )
        return draft

    def correct(
        self,
        spec: MappingSpec,
        feedback: BaseModel | dict[str, Any],
        profile: SourceProfile,
    ) -> MappingSpec | None:
        """
        Ask the chain for a corrected spec.

        Returns a new spec with version + 1, or None when no AI client can
        produce a valid correction.
        """
        if isinstance(feedback, BaseModel):
            feedback = feedback.model_dump(by_alias=True, mode="json")

        safe_context = self.context_builder.build_from_profile(profile)
        user = build_correction_user_prompt(spec.to_json(), feedback, summarize_profile(safe_context))

        result = self.chain.correct_mapping_spec(user)
        if result is None:
            logger.info("mapping_correction_unavailable", vendor=spec.source_vendor, version=spec.version)
            return None

        corrected, provider = result
        corrected = corrected.model_copy(
            update={"version": spec.version + 1, "source_vendor": spec.source_vendor}
        )
        logger.info(
            "mapping_corrected",
            vendor=spec.source_vendor,
            provider=provider,
            version=corrected.version,
        )
        return corrected


def main() -> None:
    """Command-line interface for drafting a MappingSpec from CSV/JSON exports."""
    import argparse
    import sys
    from pathlib import Path

    from medmigrate.adapters.generic_csv import create_adapter
    from medmigrate.storage.artifact_store import InMemoryArtifactStore

    parser = argparse.ArgumentParser(
        description="medmigrate Mapping Agent - draft a MappingSpec from source exports"
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        help="CSV or JSON export files (one entity per file)",
    )
    parser.add_argument(
        "--vendor",
        required=True,
        help="Source vendor key",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path (default: stdout)",
    )
    parser.add_argument(
        "--provider",
        choices=["auto", "anthropic", "openai", "heuristic"],
        default="auto",
        help="AI provider (default: auto)",
    )
    parser.add_argument(
        "--model",
        help="Model identifier (uses provider default if not specified)",
    )

    args = parser.parse_args()

    try:
        store = InMemoryArtifactStore()
        refs = [
            store.put("cli", Path(path).name, Path(path).read_bytes())
            for path in args.inputs
        ]
        profile = create_adapter(args.vendor).profile(refs, store)

        agent = MappingAgent(llm_provider=args.provider, model=args.model)
        draft = agent.draft(profile, args.vendor)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    output_json = json.dumps(draft.spec.to_json(), indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output_json)
        print(
            f"Drafted {len(draft.spec.entity_mappings)} entity mappings via {draft.provider} "
            f"({draft.low_confidence_count} need approval) -> {args.output}"
        )
    else:
        print(output_json)


if __name__ == "__main__":
    main()
