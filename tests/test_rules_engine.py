"""Tests for the auto-tagging rule engine."""
import pytest

from models.schemas import (
    AutoTaggingRule, ConditionMode, ContactTagView, ConversationEvent,
    KeywordTrigger, NoResponseTrigger, TagActionType, TriggerType,
)
from rules.engine import AutoTaggingEngine, misconfiguration


def rule(rule_id, target, action=TagActionType.ADD_TAG, priority=100,
         trigger_type=TriggerType.MESSAGE_RECEIVED, **kwargs) -> AutoTaggingRule:
    return AutoTaggingRule(
        id=rule_id, name=rule_id, priority=priority, trigger_type=trigger_type,
        action_type=action, target_tag=target, **kwargs,
    )


def received(contact_id="c1", text="") -> ConversationEvent:
    return ConversationEvent(trigger_type=TriggerType.MESSAGE_RECEIVED, contact_id=contact_id, text=text)


def contact(*tags, primary=None) -> ContactTagView:
    return ContactTagView(contact_id="c1", tags=list(tags), primary_tag=primary)


class TestRuleOrdering:
    def test_later_rule_sees_earlier_mutation(self):
        r1 = rule("r1", "X", priority=1)
        r2 = rule("r2", "Y", priority=2, condition_tags=["X"], condition_mode=ConditionMode.ANY)
        mutations = AutoTaggingEngine([r1, r2]).evaluate(received(), contact())
        assert [m.rule_id for m in mutations] == ["r1", "r2"]
        assert [m.added_tags for m in mutations] == [["X"], ["Y"]]

    def test_condition_checked_before_earlier_tag_exists(self):
        r1 = rule("r1", "X", priority=2)
        r2 = rule("r2", "Y", priority=1, condition_tags=["X"], condition_mode=ConditionMode.ANY)
        mutations = AutoTaggingEngine([r1, r2]).evaluate(received(), contact())
        assert [m.rule_id for m in mutations] == ["r1"]

    def test_ties_broken_by_name(self):
        engine = AutoTaggingEngine([rule("b", "B"), rule("a", "A")])
        mutations = engine.evaluate(received(), contact())
        assert [m.rule_id for m in mutations] == ["a", "b"]

    def test_list_rules_sorted(self):
        engine = AutoTaggingEngine([rule("z", "Z", priority=5), rule("y", "Y", priority=1)])
        assert [r.id for r in engine.list_rules()] == ["y", "z"]

    def test_explicit_rule_set_overrides_registered(self):
        engine = AutoTaggingEngine([rule("r1", "X")])
        mutations = engine.evaluate(received(), contact(), rules=[rule("other", "O")])
        assert [m.rule_id for m in mutations] == ["other"]


class TestActions:
    def test_add_existing_tag_is_noop_diff(self):
        mutations = AutoTaggingEngine([rule("r1", "X")]).evaluate(received(), contact("X"))
        assert len(mutations) == 1
        assert mutations[0].added_tags == []

    def test_remove_tag(self):
        r = rule("r1", "Cold", action=TagActionType.REMOVE_TAG)
        [m] = AutoTaggingEngine([r]).evaluate(received(), contact("Cold", "Lead"))
        assert m.removed_tags == ["Cold"]

    def test_set_primary_adds_tag(self):
        r = rule("r1", "Hot", action=TagActionType.SET_PRIMARY_TAG)
        [m] = AutoTaggingEngine([r]).evaluate(received(), contact("Lead", primary="Lead"))
        assert m.added_tags == ["Hot"]
        assert m.primary_tag == "Hot"

    def test_removing_primary_clears_it(self):
        r = rule("r1", "Lead", action=TagActionType.REMOVE_TAG)
        [m] = AutoTaggingEngine([r]).evaluate(received(), contact("Lead", primary="Lead"))
        assert m.primary_tag is None

    def test_replace_condition_tags(self):
        r = rule(
            "r1", "Qualified", action=TagActionType.REPLACE_CONDITION_TAGS,
            condition_tags=["New Lead", "Contacted", "Qualified"], condition_mode=ConditionMode.ANY,
        )
        [m] = AutoTaggingEngine([r]).evaluate(received(), contact("New Lead", "VIP"))
        assert m.removed_tags == ["New Lead"]
        assert m.added_tags == ["Qualified"]

    def test_primary_survives_unrelated_mutation(self):
        r = rule("r1", "X")
        [m] = AutoTaggingEngine([r]).evaluate(received(), contact("Lead", primary="Lead"))
        assert m.primary_tag == "Lead"


class TestNoResponseRule:
    def test_fires_once_then_condition_blocks(self):
        r = rule(
            "unresp", "Unresponsive",
            trigger_type=TriggerType.NO_RESPONSE_FOR_DAYS,
            trigger=NoResponseTrigger(days=3),
            condition_tags=["Unresponsive"], condition_mode=ConditionMode.NONE,
        )
        engine = AutoTaggingEngine([r])
        event = ConversationEvent(
            trigger_type=TriggerType.NO_RESPONSE_FOR_DAYS, contact_id="c1", days_without_response=4,
        )

        first = engine.evaluate(event, contact())
        assert [m.added_tags for m in first] == [["Unresponsive"]]

        second = engine.evaluate(event, contact("Unresponsive"))
        assert second == []

    def test_too_early(self):
        r = rule("unresp", "Unresponsive", trigger_type=TriggerType.NO_RESPONSE_FOR_DAYS,
                 trigger=NoResponseTrigger(days=3))
        event = ConversationEvent(
            trigger_type=TriggerType.NO_RESPONSE_FOR_DAYS, contact_id="c1", days_without_response=1,
        )
        assert AutoTaggingEngine([r]).evaluate(event, contact()) == []


class TestSkippedRules:
    def test_disabled_rule(self):
        assert AutoTaggingEngine([rule("r1", "X", enabled=False)]).evaluate(received(), contact()) == []

    def test_other_trigger_type(self):
        r = rule("r1", "X", trigger_type=TriggerType.LEAD_CREATED)
        assert AutoTaggingEngine([r]).evaluate(received(), contact()) == []

    def test_keyword_rule_without_keywords_is_misconfigured(self):
        r = rule("r1", "X", trigger_type=TriggerType.KEYWORD_MATCH)
        assert misconfiguration(r) is not None
        event = ConversationEvent(trigger_type=TriggerType.KEYWORD_MATCH, contact_id="c1", text="x")
        assert AutoTaggingEngine([r]).evaluate(event, contact()) == []

    def test_blank_target_is_misconfigured(self):
        r = rule("r1", "  ")
        assert misconfiguration(r) == "empty target tag"
        assert AutoTaggingEngine([r]).evaluate(received(), contact()) == []

    def test_keyword_case_insensitive(self):
        r = rule("r1", "Pricing", trigger_type=TriggerType.KEYWORD_MATCH,
                 trigger=KeywordTrigger(keywords=["Price"]))
        event = ConversationEvent(trigger_type=TriggerType.KEYWORD_MATCH, contact_id="c1",
                                  text="what's the PRICE?")
        assert misconfiguration(r) is None
        [m] = AutoTaggingEngine([r]).evaluate(event, contact())
        assert m.added_tags == ["Pricing"]


class TestLoadRules:
    def test_storage_records_decoded(self):
        engine = AutoTaggingEngine()
        loaded = engine.load_rules([
            {
                "id": "kw",
                "trigger_type": "keyword_match",
                "trigger_config": {"keywords": "price, cost"},
                "action_type": "add_tag",
                "tag_name": "Pricing",
                "condition_tags_mode": "none",
                "condition_tags": ["Pricing"],
            },
            {
                "id": "idle",
                "trigger_type": "no_response_for_days",
                "trigger_config": {"days": 3},
                "action_type": "add_tag",
                "target_tag": "Unresponsive",
            },
        ])
        assert [r.id for r in loaded] == ["kw", "idle"]
        kw = engine.get_rule("kw")
        assert isinstance(kw.trigger, KeywordTrigger)
        assert kw.trigger.keywords == ["price", "cost"]
        assert kw.target_tag == "Pricing"
        assert kw.condition_mode == ConditionMode.NONE
        assert engine.get_rule("idle").trigger.days == 3

    def test_invalid_records_dropped(self):
        engine = AutoTaggingEngine()
        loaded = engine.load_rules([
            {"id": "bad_type", "trigger_type": "telepathy", "action_type": "add_tag", "target_tag": "X"},
            {"id": "no_days", "trigger_type": "no_response_for_days", "action_type": "add_tag", "target_tag": "X"},
            {"id": "no_kw", "trigger_type": "keyword_match", "trigger_config": {"keywords": " , "},
             "action_type": "add_tag", "target_tag": "X"},
            {"id": "ok", "trigger_type": "lead_created", "action_type": "add_tag", "target_tag": "New Lead"},
        ])
        assert [r.id for r in loaded] == ["ok"]
        assert [r.id for r in engine.list_rules()] == ["ok"]

    def test_missing_action_dropped(self):
        engine = AutoTaggingEngine()
        assert engine.load_rules([{"trigger_type": "lead_created", "target_tag": "X"}]) == []

    @pytest.mark.parametrize("days", [0, -1])
    def test_non_positive_days_rejected(self, days):
        engine = AutoTaggingEngine()
        assert engine.load_rules([{
            "trigger_type": "no_response_for_days", "trigger_config": {"days": days},
            "action_type": "add_tag", "target_tag": "X",
        }]) == []
