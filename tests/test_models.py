from datetime import datetime
from decimal import Decimal

import pytest

from kobber_crm import models


def sale_form(**overrides):
    form = models.empty_form()
    form.update(
        customer_name=" Maria Silva ",
        customer_phone="(51) 99999-1234",
        part_sought="Amortecedor dianteiro",
        vehicle_model="Gol 2015",
        source="Google Search",
        sale_made=True,
        sale_amount="1.234,56",
        payment_method="Pix",
        loss_reason="Price (competition)",
        missing_part="should vanish",
    )
    form.update(overrides)
    return form


def test_build_opportunity_keeps_only_sale_path():
    record = models.build_opportunity(sale_form(), "ana@kobber.com.br", 7, now=datetime(2024, 5, 3, 10, 0))

    assert record.customer_name == "Maria Silva"
    assert record.sale_made is True
    assert record.sale_amount == "1.234,56"
    assert record.payment_method == "Pix"
    assert record.loss_reason == ""
    assert record.missing_part == ""
    assert record.salesperson_email == "ana@kobber.com.br"
    assert record.salesperson_id == 7
    assert record.created_at == "2024-05-03T10:00:00"
    assert record.amount == Decimal("1234.56")


def test_build_opportunity_keeps_only_loss_path():
    form = sale_form(sale_made=False, loss_reason=models.LOSS_OUT_OF_STOCK, missing_part="Pivô")
    record = models.build_opportunity(form, None, None)

    assert record.sale_amount == ""
    assert record.payment_method == ""
    assert record.loss_reason == models.LOSS_OUT_OF_STOCK
    assert record.missing_part == "Pivô"
    assert record.amount == Decimal("0")
    assert record.salesperson_email == models.ANONYMOUS_SALESPERSON


def test_missing_part_dropped_for_other_loss_reasons():
    form = sale_form(sale_made=False, loss_reason="Just browsing", missing_part="Pivô")
    record = models.build_opportunity(form, "ana@kobber.com.br", 1)

    assert record.missing_part == ""


def test_shop_fields_only_kept_for_repair_shops():
    consumer = models.build_opportunity(sale_form(shop_name="Oficina X", shop_focus="Freios"), "a@b.c", 1)
    shop = models.build_opportunity(
        sale_form(customer_type=models.CUSTOMER_REPAIR_SHOP, shop_name="Oficina X", shop_focus="Freios"),
        "a@b.c",
        1,
    )

    assert (consumer.shop_name, consumer.shop_focus) == ("", "")
    assert (shop.shop_name, shop.shop_focus) == ("Oficina X", "Freios")


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"customer_name": "  "}, "customer name"),
        ({"sale_made": None}, "outcome"),
        ({"sale_amount": ""}, "amount"),
        ({"sale_made": False, "loss_reason": ""}, "reason"),
        ({"source": "Carrier pigeon"}, "source"),
    ],
)
def test_build_opportunity_rejects_incomplete_forms(overrides, message):
    with pytest.raises(models.OpportunityValidationError, match=message):
        models.build_opportunity(sale_form(**overrides), "a@b.c", 1)


def test_apply_edit_preserves_identity_and_authorship():
    original = models.build_opportunity(sale_form(), "ana@kobber.com.br", 7, now=datetime(2024, 5, 3, 10, 0))
    original = models.Opportunity(**{**original.to_dict(), "id": "abc123"})
    edited = models.build_opportunity(sale_form(sale_amount="10,00"), "boss@kobber.com.br", 1)

    merged = models.apply_edit(original, edited, now=datetime(2024, 5, 4, 9, 30))

    assert merged.id == "abc123"
    assert merged.created_at == "2024-05-03T10:00:00"
    assert merged.salesperson_email == "ana@kobber.com.br"
    assert merged.updated_at == "2024-05-04T09:30:00"
    assert merged.sale_amount == "10,00"


def test_currency_helpers_follow_brazilian_format():
    assert models.format_brl_input("123456") == "1.234,56"
    assert models.format_brl_input("R$ 5") == "0,05"
    assert models.format_brl_input("") == ""
    assert models.format_brl(Decimal("1234567.8"), symbol=True) == "R$ 1.234.567,80"
    assert models.parse_brl("R$ 1.234,56") == Decimal("1234.56")
    assert models.parse_brl("1.500") == Decimal("1500")
    assert models.parse_brl("") == Decimal("0")
    with pytest.raises(ValueError):
        models.parse_brl("abc")


@pytest.mark.parametrize("amount", ["Infinity", "NaN", "-50,00", "1e400", "1.000.000.000,00"])
def test_build_opportunity_rejects_unusable_amounts(amount):
    with pytest.raises(models.OpportunityValidationError):
        models.build_opportunity(sale_form(sale_amount=amount), "a@b.c", 1)


def test_amount_input_is_capped_and_always_formattable():
    formatted = models.format_brl_input("1" * 31)

    assert formatted == "111.111.111,11"
    assert models.parse_brl(formatted) == Decimal("111111111.11")
    assert models.format_brl_input("0001234") == "12,34"
    assert models.format_brl_input("000") == "0,00"
