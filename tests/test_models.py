"""Tests for the pydantic schemas: session helpers and rule decoding."""
import pytest

from pydantic import ValidationError

from models.schemas import (
    AutoTaggingRule, ConditionMode, ConversationSession, EventTrigger, KeywordTrigger,
    NoResponseTrigger, SessionStatus, TagActionType, TagMutation, TriggerType,
    decode_trigger_config,
)


class TestConversationSession:
    @pytest.mark.parametrize("answered,total,expected", [
        (0, 0, 100),
        (0, 3, 0),
        (1, 3, 33),
        (2, 3, 67),
        (3, 3, 100),
        (5, 3, 100),
    ])
    def test_completion_percentage(self, answered, total, expected):
        session = ConversationSession(
            contact_id="c1", flow_id="f1", questions_total=total,
            answered_questions={f"q{i}": "x" for i in range(answered)},
        )
        assert session.completion_percentage == expected

    def test_open_key_only_while_open(self):
        session = ConversationSession(contact_id="c1", flow_id="f1")
        assert session.open_key == "c1:f1"
        assert session.model_copy(update={"status": SessionStatus.RECOVERED}).open_key == "c1:f1"
        for status in (SessionStatus.COMPLETED, SessionStatus.ABANDONED):
            assert session.model_copy(update={"status": status}).open_key is None

    def test_snapshot_is_independent(self):
        session = ConversationSession(contact_id="c1", flow_id="f1")
        copy = session.snapshot()
        copy.answered_questions["coverage"] = "auto"
        assert session.answered_questions == {}


class TestTriggerConfig:
    def test_keyword_string_is_split(self):
        trigger = decode_trigger_config(TriggerType.KEYWORD_MATCH, {"keywords": "price, quote ,,"})
        assert isinstance(trigger, KeywordTrigger)
        assert trigger.keywords == ["price", "quote"]

    def test_blank_keywords_rejected(self):
        with pytest.raises(ValidationError):
            decode_trigger_config(TriggerType.KEYWORD_MATCH, {"keywords": [" ", ""]})

    def test_no_response_needs_positive_days(self):
        assert decode_trigger_config(TriggerType.NO_RESPONSE_FOR_DAYS, {"days": 3}).days == 3
        with pytest.raises(ValidationError):
            decode_trigger_config(TriggerType.NO_RESPONSE_FOR_DAYS, {"days": 0})
        with pytest.raises(ValidationError):
            decode_trigger_config(TriggerType.NO_RESPONSE_FOR_DAYS, None)

    def test_plain_events_ignore_config(self):
        trigger = decode_trigger_config(TriggerType.MESSAGE_RECEIVED, {"days": 4})
        assert isinstance(trigger, EventTrigger)


class TestAutoTaggingRuleRecord:
    def test_storage_field_names(self):
        rule = AutoTaggingRule.from_record({
            "id": 7,
            "name": "Quiet leads",
            "trigger_type": "no_response_for_days",
            "trigger_config": {"days": 5},
            "action_type": "add_tag",
            "tag_name": "Cold",
            "condition_tags": ["Contacted"],
            "condition_tags_mode": "all",
        })
        assert rule.id == "7"
        assert rule.target_tag == "Cold"
        assert rule.condition_mode == ConditionMode.ALL
        assert isinstance(rule.trigger, NoResponseTrigger)
        assert rule.trigger.days == 5
        assert rule.priority == 100
        assert rule.enabled

    def test_defaults(self):
        rule = AutoTaggingRule.from_record({
            "trigger_type": "lead_created", "action_type": "set_primary_tag", "target_tag": "New",
        })
        assert rule.id
        assert rule.condition_tags == []
        assert rule.condition_mode == ConditionMode.ANY
        assert isinstance(rule.trigger, EventTrigger)

    def test_unknown_trigger_type(self):
        with pytest.raises(ValueError):
            AutoTaggingRule.from_record({
                "trigger_type": "moon_phase", "action_type": "add_tag", "target_tag": "X",
            })


class TestTagMutation:
    def test_changed(self):
        noop = TagMutation(rule_id="r", action_type=TagActionType.ADD_TAG, target_tag="A")
        assert not noop.changed
        assert TagMutation(rule_id="r", action_type=TagActionType.ADD_TAG, target_tag="A",
                           added_tags=["A"]).changed
        assert TagMutation(rule_id="r", action_type=TagActionType.SET_PRIMARY_TAG,
                           target_tag="A", primary_tag="A").changed
