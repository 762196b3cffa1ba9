"""
Shared condition evaluator — used by the auto-tagging rule engine.

Tag conditions compare a rule's condition_tags against the working tag set
under one of three modes. Trigger checks match an event against a rule's
typed trigger config (keyword hits, days of silence).
"""
from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from models.schemas import (
    AutoTaggingRule, ConditionMode, ConversationEvent, KeywordTrigger,
    NoResponseTrigger,
)


CONDITION_MODES: dict[ConditionMode, Callable[[set[str], list[str]], bool]] = {
    ConditionMode.ANY: lambda tags, wanted: any(t in tags for t in wanted),
    ConditionMode.ALL: lambda tags, wanted: all(t in tags for t in wanted),
    ConditionMode.NONE: lambda tags, wanted: not any(t in tags for t in wanted),
}


def evaluate_tag_condition(
    mode: ConditionMode, condition_tags: list[str], tags: Iterable[str],
) -> bool:
    """True if `tags` satisfy the condition. No condition tags always passes."""
    if not condition_tags:
        return True
    fn = CONDITION_MODES.get(mode)
    if fn is None:
        return False
    return fn(set(tags), condition_tags)


def keyword_hit(keywords: list[str], text: str) -> Optional[str]:
    """Return the first keyword found in `text` (case-insensitive substring), else None."""
    haystack = (text or "").casefold()
    for kw in keywords:
        needle = kw.strip().casefold()
        if needle and needle in haystack:
            return kw
    return None


def trigger_matches(rule: AutoTaggingRule, event: ConversationEvent) -> bool:
    """Event type must match; keyword and no-response rules add their own check."""
    if rule.trigger_type != event.trigger_type:
        return False
    trigger: Any = rule.trigger
    if isinstance(trigger, KeywordTrigger):
        return keyword_hit(trigger.keywords, event.text) is not None
    if isinstance(trigger, NoResponseTrigger):
        days = event.days_without_response
        return days is not None and days >= trigger.days
    return True
