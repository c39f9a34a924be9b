from decimal import Decimal

from plateyard.models.product import Product


def test_storefront_lists_only_available_products(anon_client, make_product):
    make_product(weight=45)
    make_product(weight=10, available=False)
    make_product(weight=25)

    resp = anon_client.get("/products")

    assert [p["weight"] for p in resp.json()] == [25, 45]


def test_admin_product_crud(client, db):
    resp = client.post(
        "/admin/products",
        json={
            "title": "35lb Bumper Plate Pair",
            "weight": 35,
            "selling_price": "44.00",
            "regular_price": "55.00",
        },
    )
    assert resp.status_code == 201, resp.text
    product_id = resp.json()["id"]

    resp = client.put(
        f"/admin/products/{product_id}",
        json={
            "title": "35lb Pair",
            "weight": 35,
            "selling_price": "42.00",
            "regular_price": "55.00",
            "available": False,
        },
    )
    assert resp.json()["title"] == "35lb Pair"
    assert resp.json()["available"] is False

    assert client.delete(f"/admin/products/{product_id}").status_code == 200
    assert db.query(Product).count() == 0
    assert client.delete(f"/admin/products/{product_id}").status_code == 404


def test_missing_fields_are_named(client):
    resp = client.post("/admin/products", json={"title": "Plate"})
    assert resp.status_code == 400
    assert resp.json()["error"] == (
        "Missing required fields: weight, selling_price, regular_price"
    )


def test_image_upload(client, make_product):
    product = make_product()

    resp = client.post(
        f"/admin/products/{product.id}/image",
        files={"file": ("plate.png", b"\x89PNG fake", "image/png")},
    )

    assert resp.status_code == 200, resp.text
    url = resp.json()["image_url"]
    assert url.startswith("/media/products/product-")
    assert url.endswith(".png")


def test_image_upload_rejects_other_types(client, make_product):
    product = make_product()
    resp = client.post(
        f"/admin/products/{product.id}/image",
        files={"file": ("plate.gif", b"GIF89a", "image/gif")},
    )
    assert resp.status_code == 400
    assert "Only JPEG, PNG, and WebP" in resp.json()["error"]


def test_stripe_sync_creates_then_reprices(client, db, make_product, payments):
    product = make_product(weight=45, price="50.00")
    make_product(weight=5, available=False)

    body = client.post("/admin/products/sync-stripe").json()

    assert body["success"] is True
    assert (body["processed"], body["created"]) == (1, 1)
    db.refresh(product)
    first_price = product.stripe_price_id
    assert product.stripe_price_amount == 5000
    assert payments.products[product.stripe_product_id]["metadata"]["weight"] == "45"

    # unchanged price reuses the active Stripe price
    body = client.post("/admin/products/sync-stripe", json={}).json()
    assert (body["updated"], body["reused"]) == (1, 1)
    db.refresh(product)
    assert product.stripe_price_id == first_price

    product.selling_price = Decimal("47.50")
    db.commit()
    client.post("/admin/products/sync-stripe", json={"product_ids": [product.id]})
    db.refresh(product)
    assert product.stripe_price_id != first_price
    assert product.stripe_price_amount == 4750
    assert payments.archived == [first_price]

    status = client.get("/admin/products/sync-stripe").json()
    assert status["total"] == 2
    assert status["in_sync"] == 1
