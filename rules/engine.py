"""
Auto-Tagging Rule Engine — Evaluates tag rules against conversation events.

Rules are loaded from settings.yaml and/or the rule store. For one event the
engine walks the enabled rules in ascending priority, checks each rule's
trigger and tag condition against a working copy of the contact's tags, and
applies the action to that copy. Later rules see earlier rules' mutations;
nothing is written back here. The caller persists the returned mutations.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from models.schemas import (
    AutoTaggingRule, ContactTagView, ConversationEvent, EventTrigger,
    KeywordTrigger, NoResponseTrigger, TagActionType, TagMutation, TriggerType,
)
from utils.conditions import evaluate_tag_condition, trigger_matches

logger = structlog.get_logger()


# Trigger types that need a specific trigger config variant
_REQUIRED_TRIGGER = {
    TriggerType.KEYWORD_MATCH: KeywordTrigger,
    TriggerType.NO_RESPONSE_FOR_DAYS: NoResponseTrigger,
}


def _rule_order(rule: AutoTaggingRule) -> tuple:
    return (rule.priority, rule.name, rule.id)


def misconfiguration(rule: AutoTaggingRule) -> Optional[str]:
    """Return why a rule cannot be evaluated, or None if it is usable."""
    if not rule.target_tag.strip():
        return "empty target tag"
    expected = _REQUIRED_TRIGGER.get(rule.trigger_type, EventTrigger)
    if not isinstance(rule.trigger, expected):
        return f"{rule.trigger_type.value} needs a {expected.__name__} config"
    return None


# ──────────────────────────────────────────────────────────────
#  Tag actions
# ──────────────────────────────────────────────────────────────

class _WorkingTags:
    """Mutable per-pass copy of a contact's tags."""

    def __init__(self, contact: ContactTagView):
        self.tags: list[str] = list(dict.fromkeys(contact.tags))
        self.primary: Optional[str] = contact.primary_tag

    def add(self, tag: str) -> list[str]:
        if tag in self.tags:
            return []
        self.tags.append(tag)
        return [tag]

    def remove(self, tag: str) -> list[str]:
        if tag not in self.tags:
            return []
        self.tags.remove(tag)
        if self.primary == tag:
            self.primary = None
        return [tag]


def apply_action(rule: AutoTaggingRule, working: _WorkingTags) -> TagMutation:
    """Apply one rule's action to the working set and describe the diff."""
    target = rule.target_tag
    added: list[str] = []
    removed: list[str] = []

    if rule.action_type == TagActionType.ADD_TAG:
        added = working.add(target)

    elif rule.action_type == TagActionType.REMOVE_TAG:
        removed = working.remove(target)

    elif rule.action_type == TagActionType.SET_PRIMARY_TAG:
        added = working.add(target)
        working.primary = target

    elif rule.action_type == TagActionType.REPLACE_CONDITION_TAGS:
        for tag in rule.condition_tags:
            if tag != target:
                removed.extend(working.remove(tag))
        added = working.add(target)

    return TagMutation(
        rule_id=rule.id,
        action_type=rule.action_type,
        target_tag=target,
        added_tags=added,
        removed_tags=removed,
        primary_tag=working.primary,
    )


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class AutoTaggingEngine:
    """
    Holds the rule set and evaluates it against events.
    """

    def __init__(self, rules: Optional[Iterable[AutoTaggingRule]] = None):
        self._rules: dict[str, AutoTaggingRule] = {}
        for rule in rules or []:
            self.register_rule(rule)

    def load_rules(self, records: list[Any]) -> list[AutoTaggingRule]:
        """Decode stored rule records; invalid ones are logged and dropped."""
        loaded = []
        for raw in records:
            try:
                rule = raw if isinstance(raw, AutoTaggingRule) else AutoTaggingRule.from_record(raw)
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning("rule_record_invalid",
                               rule_id=raw.get("id", "") if isinstance(raw, dict) else "",
                               error=str(e))
                continue
            self.register_rule(rule)
            loaded.append(rule)
        logger.info("rules_loaded", count=len(loaded), dropped=len(records) - len(loaded))
        return loaded

    def register_rule(self, rule: AutoTaggingRule) -> None:
        self._rules[rule.id] = rule
        logger.debug("rule_registered", rule_id=rule.id, trigger=rule.trigger_type.value)

    def get_rule(self, rule_id: str) -> Optional[AutoTaggingRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutoTaggingRule]:
        return sorted(self._rules.values(), key=_rule_order)

    def evaluate(
        self,
        event: ConversationEvent,
        contact: ContactTagView,
        rules: Optional[Iterable[AutoTaggingRule]] = None,
    ) -> list[TagMutation]:
        """
        Evaluate `rules` (default: the registered set) for one event.
        Returns one TagMutation per fired rule, in firing order.
        """
        ordered = sorted(rules, key=_rule_order) if rules is not None else self.list_rules()
        working = _WorkingTags(contact)
        mutations: list[TagMutation] = []

        for rule in ordered:
            if not rule.enabled or rule.trigger_type != event.trigger_type:
                continue
            problem = misconfiguration(rule)
            if problem:
                logger.warning("rule_skipped_misconfigured", rule_id=rule.id, reason=problem)
                continue
            if not trigger_matches(rule, event):
                continue
            if not evaluate_tag_condition(rule.condition_mode, rule.condition_tags, working.tags):
                continue

            mutation = apply_action(rule, working)
            mutations.append(mutation)
            logger.info("rule_fired",
                        rule_id=rule.id,
                        contact_id=contact.contact_id,
                        trigger=event.trigger_type.value,
                        action=rule.action_type.value,
                        tag=rule.target_tag)

        return mutations
