"""
Flow Registry — Loads, validates, and serves flow definitions.

Flows are loaded from YAML config (settings.yaml `flows:`) or registered
directly, and are read-only once registered. Registration rejects a flow
that the engine could not walk:

  - at least one step, every step with at least one response
  - step ids unique within the flow
  - response labels unique per step (case-insensitive)
  - every next_step_id resolves to a step of the same flow

The parser accepts both our field names and the camelCase keys of exported
flow templates (yourMessage, followUpMessage, nextStepId, dripSequence, ...).
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.errors import FlowNotFound
from models.schemas import (
    BranchAction, DripMessage, FlowDefinition, RequiredQuestion,
    ResponseBranch, Step, StepTag,
)

logger = structlog.get_logger()


def _pick(raw: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


class FlowRegistry:
    """
    Central registry for flow definitions, indexed by id and owner.
    """

    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}
        self._owner_index: dict[str, list[str]] = {}     # owner_id → [flow_ids]

    # ── Registration ──────────────────────────────────

    def register(self, flow: FlowDefinition):
        """Register a single flow, replacing any earlier version with the same id."""
        errors = self._validate(flow)
        if errors:
            logger.error("invalid_flow", flow_id=flow.id, errors=errors)
            raise ValueError(f"Invalid flow '{flow.id}': {'; '.join(errors)}")

        previous = self._flows.get(flow.id)
        if previous and previous.owner_id in self._owner_index:
            self._owner_index[previous.owner_id].remove(flow.id)

        self._flows[flow.id] = flow
        self._owner_index.setdefault(flow.owner_id, []).append(flow.id)

        logger.info("flow_registered",
                     flow_id=flow.id,
                     name=flow.name,
                     version=flow.version,
                     steps=len(flow.steps))

    def register_from_config(self, config: list[dict[str, Any]]):
        """Load flows from YAML config."""
        for raw in config:
            self.register(self.parse_flow(raw))
        logger.info("flows_loaded", count=len(config))

    # ── Lookup ────────────────────────────────────────

    def get(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._flows.get(flow_id)

    def require(self, flow_id: str) -> FlowDefinition:
        flow = self._flows.get(flow_id)
        if flow is None:
            raise FlowNotFound(flow_id)
        return flow

    def list_all(self) -> list[FlowDefinition]:
        return list(self._flows.values())

    def list_by_owner(self, owner_id: str) -> list[FlowDefinition]:
        return [self._flows[fid] for fid in self._owner_index.get(owner_id, []) if fid in self._flows]

    # ── Validation ────────────────────────────────────

    @staticmethod
    def _validate(flow: FlowDefinition) -> list[str]:
        errors = []

        if not flow.id:
            errors.append("flow id is required")
        if not flow.steps:
            errors.append("flow must have at least one step")

        seen: set[str] = set()
        for step in flow.steps:
            if step.id in seen:
                errors.append(f"duplicate step id '{step.id}'")
            seen.add(step.id)

        for step in flow.steps:
            if not step.responses:
                errors.append(f"step '{step.id}' has no responses")

            labels: set[str] = set()
            for branch in step.responses:
                key = branch.label.casefold()
                if not key.strip():
                    errors.append(f"step '{step.id}' has a blank response label")
                elif key in labels:
                    errors.append(f"step '{step.id}' has duplicate response label '{branch.label}'")
                labels.add(key)

                if branch.next_step_id and branch.next_step_id not in seen:
                    errors.append(
                        f"response '{branch.label}' in '{step.id}' references unknown step '{branch.next_step_id}'"
                    )

        keys = [q.field_key for q in flow.required_questions]
        if len(keys) != len(set(keys)):
            errors.append("required question field keys must be unique")

        return errors

    # ── Parsing ───────────────────────────────────────

    def parse_flow(self, raw: dict[str, Any]) -> FlowDefinition:
        """Parse a raw dict (from YAML) into a FlowDefinition model."""
        steps = [self._parse_step(s) for s in raw.get("steps", [])]
        questions = [
            RequiredQuestion(
                question=q.get("question", ""),
                field_key=_pick(q, "field_key", "fieldName", "field_name", default=""),
            )
            for q in _pick(raw, "required_questions", "requiredQuestions", default=[])
        ]

        return FlowDefinition(
            id=str(raw["id"]),
            name=raw.get("name", str(raw["id"])),
            owner_id=str(_pick(raw, "owner_id", "ownerId", default="")),
            version=str(raw.get("version", "1")),
            steps=steps,
            required_questions=questions,
            requires_human_follow_up=bool(
                _pick(raw, "requires_human_follow_up", "requiresCall", "requires_call", default=False)
            ),
            metadata=raw.get("metadata", raw.get("context", {})) or {},
        )

    def _parse_step(self, raw: dict[str, Any]) -> Step:
        """Parse a raw dict into a Step."""
        responses = [
            ResponseBranch(
                label=r["label"],
                follow_up_message=_pick(r, "follow_up_message", "followUpMessage", default=""),
                next_step_id=_pick(r, "next_step_id", "nextStepId"),
                action=BranchAction(r.get("action", "continue")),
            )
            for r in raw.get("responses", [])
        ]
        drips = [
            DripMessage(
                message=d["message"],
                delay_hours=_pick(d, "delay_hours", "delayHours", default=0),
            )
            for d in _pick(raw, "drip_sequence", "dripSequence", default=[])
        ]
        tag = StepTag(**raw["tag"]) if raw.get("tag") else None

        fields: dict[str, Any] = {
            "outbound_message": _pick(raw, "outbound_message", "yourMessage", "message", default=""),
            "responses": responses,
            "drip_sequence": drips,
            "tag": tag,
        }
        if raw.get("id"):
            fields["id"] = str(raw["id"])
        return Step(**fields)
