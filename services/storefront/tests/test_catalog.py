from app.application.catalog import ProductService
from app.application.schemas import ProductCreate


def test_list_products_hides_inactive_unless_asked(db, make_product):
    active = make_product()
    draft = make_product(product_status="draft")
    service = ProductService(db)

    assert [p.id for p in service.list_products()] == [active]
    assert {p.id for p in service.list_products(include_inactive=True)} == {active, draft}


def test_create_assigns_next_sku(db, make_product):
    make_product()

    product = ProductService(db).create(ProductCreate(name="Polki Ring", category="rings", price=2499.0, stock=2))

    assert product.sku == "SKU0002"
    assert product.product_status == "active"


def test_validate_cart_deduplicates_ids(db, make_product):
    pid = make_product()

    result = ProductService(db).validate_cart([pid, pid])

    assert result.valid is True
    assert [p.id for p in result.available_products] == [pid]
