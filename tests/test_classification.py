import json

import pytest

from kobber_crm import classification
from kobber_crm.classification import (
    DEFAULT_RULES,
    IN_STORE,
    ONLINE,
    UNCLASSIFIED,
    ClassificationRule,
    ClassificationRuleError,
)
from kobber_crm.models import Opportunity


def lead(source="", channel=""):
    return Opportunity(customer_name="Cliente", sale_made=False, loss_reason="Just browsing", source=source, sales_channel=channel)


def test_default_rules_split_sources_and_channels():
    assert classification.classify(lead(source="Google Maps (Business Profile)"), DEFAULT_RULES) == {ONLINE}
    assert classification.classify(lead(source="Walk-in (storefront)"), DEFAULT_RULES) == {IN_STORE}
    assert classification.classify(lead(channel="Phone"), DEFAULT_RULES) == {IN_STORE}
    assert classification.classify(lead(source="Referral"), DEFAULT_RULES) == frozenset()


def test_record_can_land_in_both_buckets():
    record = lead(source="WhatsApp", channel="In-store counter")

    buckets = classification.classify(record, DEFAULT_RULES)

    assert buckets == {ONLINE, IN_STORE}
    assert classification.bucket_label(buckets) == "Online + Manual / in-store"
    assert classification.bucket_label(frozenset()) == "Unclassified"


def test_filter_and_count_by_bucket():
    records = [
        lead(source="Google Search"),
        lead(source="Walk-in (storefront)"),
        lead(source="WhatsApp", channel="In-store counter"),
        lead(source="Referral"),
    ]

    online = classification.filter_by_bucket(records, ONLINE, DEFAULT_RULES)
    unclassified = classification.filter_by_bucket(records, UNCLASSIFIED, DEFAULT_RULES)
    counts = classification.bucket_counts(records, DEFAULT_RULES)

    assert [record.source for record in online] == ["Google Search", "WhatsApp"]
    assert [record.source for record in unclassified] == ["Referral"]
    assert classification.filter_by_bucket(records, None, DEFAULT_RULES) == records
    assert counts == {ONLINE: 2, IN_STORE: 2, UNCLASSIFIED: 1, "overlap": 1}
    with pytest.raises(ClassificationRuleError):
        classification.filter_by_bucket(records, "phone", DEFAULT_RULES)


def test_custom_rules_are_case_insensitive():
    rules = [ClassificationRule("source", "referral", IN_STORE)]

    assert classification.classify(lead(source="Referral"), rules) == {IN_STORE}
    assert classification.classify(lead(source="Google Search"), rules) == frozenset()


@pytest.mark.parametrize(
    "field, pattern, bucket",
    [
        ("customer_city", "Porto", ONLINE),
        ("source", "Google", "phone"),
        ("source", "  ", ONLINE),
    ],
)
def test_invalid_rules_are_rejected(field, pattern, bucket):
    with pytest.raises(ClassificationRuleError):
        ClassificationRule(field, pattern, bucket)


def test_rules_from_dicts_requires_all_keys():
    with pytest.raises(ClassificationRuleError, match="bucket"):
        classification.rules_from_dicts([{"field": "source", "pattern": "Google"}])


def test_save_and_load_rules(tmp_path):
    path = tmp_path / "rules" / "classification_rules.json"
    rules = [ClassificationRule("sales_channel", "Balcão", IN_STORE)]

    assert classification.load_rules(path) == list(DEFAULT_RULES)
    classification.save_rules(path, rules)

    assert classification.load_rules(path) == rules
    assert json.loads(path.read_text(encoding="utf-8"))[0]["pattern"] == "Balcão"


def test_corrupt_rules_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "classification_rules.json"
    path.write_text("{not json", encoding="utf-8")

    assert classification.load_rules(path) == list(DEFAULT_RULES)


def test_rules_file_with_non_object_entries_is_a_rule_error(tmp_path):
    path = tmp_path / "classification_rules.json"
    path.write_text('["online"]', encoding="utf-8")

    with pytest.raises(ClassificationRuleError, match="object"):
        classification.load_rules(path)
