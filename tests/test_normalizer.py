from app.normalizer import (
    SideTables,
    decode_localized,
    decode_scalar,
    is_displayable,
    normalize_catalog,
    normalize_product,
    normalize_vector_match,
    price_with_tax,
    strip_html,
    truncate,
)


def raw_product(**overrides):
    raw = {
        "id": 7,
        "reference": "CIP-001",
        "price": "10.000000",
        "id_tax_rules_group": "1",
        "id_default_image": "44",
        "active": "1",
        "name": [{"id": "2", "value": "Common Cypress"}, {"id": "1", "value": "Ciprés Común"}],
        "description_short": [{"id": "1", "value": "<p>Árbol <b>resistente</b> &amp; elegante</p>"}],
        "description": [{"id": "1", "value": "<p>Descripción larga</p>"}],
        "link_rewrite": [{"id": "1", "value": "cipres-comun"}],
    }
    raw.update(overrides)
    return raw


def test_localized_prefers_designated_language():
    assert decode_localized([{"id": "2", "value": "Tomato"}, {"id": "1", "value": "Tomate"}], "1").value == "Tomate"


def test_localized_falls_back_to_first_entry_then_empty():
    assert decode_localized([{"id": "3", "value": "Pomodoro"}], "1").value == "Pomodoro"
    assert decode_localized(None).value == ""
    assert decode_localized([], "1").value == ""


def test_localized_accepts_plain_string_and_wrappers():
    assert decode_localized("Rosal").value == "Rosal"
    wrapped = {"language": [{"@id": "1", "#": "Lavanda"}, {"@id": "2", "#": "Lavender"}]}
    assert decode_localized(wrapped, "1").value == "Lavanda"
    assert decode_localized({"language": {"@id": "1", "#": "Menta"}}, "1").value == "Menta"
    assert decode_localized({"#": "Albahaca"}).value == "Albahaca"


def test_localized_flags_unknown_shapes():
    decoded = decode_localized(42)
    assert decoded.value == ""
    assert decoded.unparsed is True


def test_scalar_shapes():
    assert decode_scalar(3).value == 3.0
    assert decode_scalar("12.50").value == 12.5
    assert decode_scalar("12,50").value == 12.5
    assert decode_scalar({"#": "7"}).value == 7.0
    assert decode_scalar({"value": 2}).value == 2.0
    assert decode_scalar(None).value is None
    bad = decode_scalar("n/a")
    assert bad.value is None and bad.unparsed


def test_price_with_tax_exact():
    assert price_with_tax(10.00, 21) == 12.10


def test_normalize_product_merges_side_tables():
    tables = SideTables(stock={"7": 3}, images={"7": "99"}, tax_rates={"1": 21.0})
    p = normalize_product(raw_product(), tables, language_id="1", shop_base_url="https://shop.test")
    assert p.id == "7"
    assert p.name == "Ciprés Común"
    assert p.reference == "CIP-001"
    assert p.price == 10.0
    assert p.price_tax_incl == 12.10
    assert p.stock == 3
    assert p.image_id == "99"
    assert p.image_url == "/api/articulos/image/7/99"
    assert p.product_url == "https://shop.test/7-cipres-comun.html"
    assert p.description == "Árbol resistente & elegante"
    assert p.active is True


def test_tax_inclusive_side_table_wins_over_computed():
    tables = SideTables(prices_tax_incl={"7": 11.999}, tax_rates={"1": 21.0})
    assert normalize_product(raw_product(), tables).price_tax_incl == 12.0


def test_unknown_tax_group_uses_default_rate_and_group_zero_is_untaxed():
    assert normalize_product(raw_product(id_tax_rules_group="9"), SideTables(), default_tax_rate=10).price_tax_incl == 11.0
    assert normalize_product(raw_product(id_tax_rules_group="0"), SideTables()).price_tax_incl == 10.0


def test_missing_side_data_is_tolerated():
    p = normalize_product(raw_product(id_default_image=None), SideTables())
    assert p.stock is None
    assert p.image_id is None
    assert p.image_url is None


def test_description_falls_back_to_long_and_is_truncated():
    long_text = "<div>" + ("hoja " * 200) + "</div>"
    p = normalize_product(raw_product(description_short="", description=long_text), SideTables())
    assert p.description.startswith("hoja hoja")
    assert len(p.description) <= 300


def test_batch_skips_malformed_records():
    raws = [raw_product(), {"name": "sin id"}, "not a record", raw_product(id=8)]
    products = normalize_catalog(raws, SideTables())
    assert [p.id for p in products] == ["7", "8"]


def test_stock_eligibility_depends_on_batch_stock_data():
    tables = SideTables(stock={"7": 5})
    with_stock, without_entry = normalize_catalog([raw_product(), raw_product(id=8)], tables)
    assert without_entry.stock is None
    assert is_displayable(with_stock, tables.has_stock_data)
    assert not is_displayable(without_entry, tables.has_stock_data)

    no_stock_batch = normalize_catalog([raw_product(id=8)], SideTables())[0]
    assert is_displayable(no_stock_batch, has_stock_data=False)


def test_inactive_or_zero_stock_never_displayable():
    inactive = normalize_product(raw_product(active="0"), SideTables(stock={"7": 10}))
    empty = normalize_product(raw_product(), SideTables(stock={"7": 0}))
    assert not is_displayable(inactive, True)
    assert not is_displayable(empty, True)


def test_vector_match_metadata():
    meta = {
        "codigo_referencia": "000123",
        "id_articulo": 321,
        "denominacion_web": "Ciprés Común",
        "descripcion_de_cada_articulo": "Maceta 17 cm",
        "pvp": 10.0,
        "iva": 21,
        "stock_web": 3,
        "stock_fisico": 2,
        "id_imagen": "55",
        "url": "https://shop.test/321-cipres.html",
    }
    p = normalize_vector_match("000123", meta)
    assert p.id == "321"
    assert p.reference == "000123"
    assert p.name == "Ciprés Común"
    assert p.price_tax_incl == 12.10
    assert p.stock == 5
    assert p.image_url == "/api/articulos/image/321/55"
    assert p.product_url == "https://shop.test/321-cipres.html"


def test_vector_match_without_name_uses_reference():
    p = normalize_vector_match("ABC", {"codigo_referencia": "ABC"})
    assert p.id == "ABC"
    assert p.name == "Producto ABC"
    assert p.stock is None


def test_strip_html_and_truncate():
    assert strip_html("<p>Hola&nbsp;<i>mundo</i></p>") == "Hola mundo"
    assert truncate("abcdef", 4) == "abc…"
    assert truncate("abc", 4) == "abc"


def test_vector_match_float_ids_from_index():
    meta = {"codigo_referencia": "000123", "id_articulo": 321.0, "id_imagen": 55.0, "stock_web": 2.0}
    p = normalize_vector_match("000123", meta)
    assert p.id == "321"
    assert p.image_id == "55"
    assert p.image_url == "/api/articulos/image/321/55"
    assert p.stock == 2
