import gc
from dataclasses import replace

import pytest

from kobber_crm import models
from kobber_crm.models import Opportunity, OpportunityNotFoundError
from kobber_crm.repositories import LiveQuery, to_dataframe


def make_record(name="Carlos", created_at="2024-05-01T09:00:00", phone="", **extra):
    data = dict(
        customer_name=name,
        sale_made=True,
        sale_amount="150,00",
        customer_phone=phone,
        salesperson_email="ana@kobber.com.br",
        salesperson_id=1,
        created_at=created_at,
    )
    data.update(extra)
    return Opportunity(**data)


def test_submitted_sale_appears_once_without_loss_reason(opportunities):
    form = models.empty_form()
    form.update(customer_name="Joana", sale_made=True, sale_amount="99,90", loss_reason="Just browsing")
    doc_id = opportunities.create(models.build_opportunity(form, "ana@kobber.com.br", 1))

    records = opportunities.query()

    assert [record.id for record in records] == [doc_id]
    assert records[0].sale_amount == "99,90"
    assert records[0].loss_reason == ""
    assert records[0].sale_made is True


def test_query_orders_newest_first_and_caps(opportunities):
    for day in range(1, 8):
        opportunities.create(make_record(name=f"C{day}", created_at=f"2024-05-0{day}T10:00:00"))

    recent = opportunities.query(limit=5)

    assert [record.customer_name for record in recent] == ["C7", "C6", "C5", "C4", "C3"]
    assert len(opportunities.query()) == 7


def test_update_overwrites_same_document(opportunities):
    doc_id = opportunities.create(make_record())
    original = opportunities.get(doc_id)

    opportunities.update(doc_id, replace(original, sale_amount="200,00", updated_at="2024-05-02T08:00:00"))

    records = opportunities.query()
    assert len(records) == 1
    assert records[0].id == doc_id
    assert records[0].sale_amount == "200,00"
    assert records[0].created_at == original.created_at


def test_update_and_delete_unknown_ids_raise(opportunities):
    with pytest.raises(OpportunityNotFoundError):
        opportunities.update("missing", make_record())
    with pytest.raises(OpportunityNotFoundError):
        opportunities.delete("missing")
    with pytest.raises(OpportunityNotFoundError):
        opportunities.get("missing")


def test_delete_removes_record(opportunities):
    keep = opportunities.create(make_record(name="Keep"))
    drop = opportunities.create(make_record(name="Drop", created_at="2024-05-02T09:00:00"))

    opportunities.delete(drop)

    assert [record.id for record in opportunities.query()] == [keep]


def test_phone_filter_matches_exact_digits(opportunities):
    opportunities.create(make_record(name="Old", phone="(51) 99999-1234", created_at="2024-04-01T09:00:00"))
    opportunities.create(make_record(name="New", phone="51 99999 1234", created_at="2024-05-01T09:00:00"))
    opportunities.create(make_record(name="Other", phone="(51) 99999-12345", created_at="2024-06-01T09:00:00"))

    matches = opportunities.query(phone="51999991234")
    latest = opportunities.latest_by_phone("(51) 99999-1234")

    assert [record.customer_name for record in matches] == ["New", "Old"]
    assert latest.customer_name == "New"
    assert opportunities.latest_by_phone("") is None


def test_subscribers_receive_snapshots_until_unsubscribed(opportunities):
    snapshots = []
    unsubscribe = opportunities.subscribe(snapshots.append, limit=2)

    opportunities.create(make_record(name="A", created_at="2024-05-01T09:00:00"))
    opportunities.create(make_record(name="B", created_at="2024-05-02T09:00:00"))
    opportunities.create(make_record(name="C", created_at="2024-05-03T09:00:00"))
    unsubscribe()
    opportunities.create(make_record(name="D", created_at="2024-05-04T09:00:00"))

    assert [len(snapshot) for snapshot in snapshots] == [0, 1, 2, 2]
    assert [record.customer_name for record in snapshots[-1]] == ["C", "B"]


def test_failing_subscriber_does_not_break_writes(opportunities):
    def broken(_records):
        if _records:
            raise RuntimeError("boom")

    opportunities.subscribe(broken)
    doc_id = opportunities.create(make_record())

    assert opportunities.get(doc_id).customer_name == "Carlos"


def test_to_dataframe_uses_display_labels(opportunities):
    opportunities.create(make_record())
    df = to_dataframe(opportunities.query())

    assert "Customer" in df.columns and "Outcome" in df.columns
    assert df.iloc[0]["Outcome"] == "SALE"
    assert to_dataframe([]).empty


def test_live_query_tracks_writes_until_closed(opportunities):
    feed = LiveQuery(opportunities, limit=2)
    assert feed.records == []

    opportunities.create(make_record(name="A", created_at="2024-05-01T09:00:00"))
    opportunities.create(make_record(name="B", created_at="2024-05-02T09:00:00"))
    opportunities.create(make_record(name="C", created_at="2024-05-03T09:00:00"))
    assert [record.customer_name for record in feed.records] == ["C", "B"]

    feed.close()
    opportunities.create(make_record(name="D", created_at="2024-05-04T09:00:00"))

    assert not feed.active
    assert [record.customer_name for record in feed.records] == ["C", "B"]


def test_discarded_live_query_unsubscribes(opportunities):
    feed = LiveQuery(opportunities)
    assert len(opportunities._subscriptions) == 1

    del feed
    gc.collect()

    assert opportunities._subscriptions == []


def test_latest_by_phone_can_skip_the_record_being_edited(opportunities):
    older = opportunities.create(make_record(name="Older", phone="(51) 99999-1234", created_at="2024-04-01T09:00:00"))
    newer = opportunities.create(make_record(name="Newer", phone="(51) 99999-1234", created_at="2024-05-01T09:00:00"))

    assert opportunities.latest_by_phone("51999991234", exclude_id=newer).id == older
    assert opportunities.latest_by_phone("51999991234", exclude_id=older).id == newer
    assert opportunities.latest_by_phone("51999991234", exclude_id=None).id == newer
