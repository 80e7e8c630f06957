from urllib.parse import unquote

from checkout_service.models import Product


def _cart_line_ids(client):
    return [line["id"] for line in client.get("/cart").json()["items"]]


class TestCatalogAPI:
    def test_lists_only_visible_products(self, client, make_product):
        make_product(name="Kemeja Flanel")
        make_product(name="Jaket Denim", visible=False)

        response = client.get("/products")

        assert response.status_code == 200
        assert [p["name"] for p in response.json()["products"]] == ["Kemeja Flanel"]

    def test_product_not_found(self, client):
        assert client.get("/products/999").status_code == 404


class TestCartAPI:
    def test_add_then_view(self, client, make_product):
        product = make_product(price=75_000, stock=2, image_url="https://cdn.example.com/a.jpg")

        added = client.post("/cart/items", json={"product_id": product.id})
        assert added.status_code == 201
        assert added.json()["quantity"] == 1

        cart = client.get("/cart").json()
        assert cart["subtotal"] == 75_000
        assert cart["items"][0]["product"]["image_url"] == "https://cdn.example.com/a.jpg"

    def test_empty_cart(self, client):
        response = client.get("/cart")

        assert response.status_code == 200
        assert response.json()["items"] == []

    def test_add_beyond_stock_is_conflict(self, client, make_product):
        product = make_product(stock=1)
        client.post("/cart/items", json={"product_id": product.id})

        response = client.post("/cart/items", json={"product_id": product.id})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "insufficient_stock"

    def test_update_quantity_out_of_range(self, client, make_product, make_cart):
        product = make_product(stock=3)
        cart = make_cart(1, (product, 1))

        response = client.patch(f"/cart/items/{cart.items[0].id}", json={"quantity": 4})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_quantity"

    def test_remove_other_users_line_is_not_found(self, client, make_product, make_cart):
        product = make_product()
        theirs = make_cart(2, (product, 1))

        assert client.delete(f"/cart/items/{theirs.items[0].id}").status_code == 404

    def test_batch_remove(self, client, make_product, make_cart):
        shirt = make_product(name="Kemeja Flanel")
        bag = make_product(name="Tas Kulit")
        make_cart(1, (shirt, 1), (bag, 1))

        response = client.request("DELETE", "/cart/items", json={"item_ids": _cart_line_ids(client)})

        assert response.json() == {"removed": 2}
        assert client.get("/cart").json()["id"] is None


class TestCheckoutAPI:
    def test_full_flow(self, client, dispatcher, db, make_product):
        product = make_product(name="Kaos Vintage", price=100_000, stock=1)
        client.post("/cart/items", json={"product_id": product.id})

        staged = client.post("/checkout/begin", json={"item_ids": _cart_line_ids(client)})
        assert staged.status_code == 200
        assert staged.json()["total"] == 115_000
        assert client.get("/checkout/staged").json() == staged.json()

        confirmed = client.post(
            "/checkout/confirm",
            json={"method": "E_WALLET", "recipient": {"full_name": "Sari Dewi"}},
        )

        assert confirmed.status_code == 201
        body = confirmed.json()
        assert body["total_amount"] == 115_000
        assert body["status"] == "PENDING"
        assert body["payment_status"] == "PENDING"
        assert body["message"].startswith("📦 PESANAN-THRIFTEASE 📦")
        assert unquote(body["whatsapp_url"].split("?text=", 1)[1]) == body["message"]
        assert dispatcher.sent_messages[0]["text"] == body["message"]

        assert client.get("/products").json()["products"] == []
        assert client.get("/cart").json()["items"] == []
        db.expire_all()
        assert db.get(Product, product.id).is_visible is False

        mine = client.get("/orders/me").json()
        assert mine["total"] == 1
        assert mine["orders"][0]["items"][0]["price"] == 100_000

    def test_confirm_without_body_uses_bank_transfer(self, client, make_product):
        product = make_product()
        client.post("/cart/items", json={"product_id": product.id})
        client.post("/checkout/begin", json={"item_ids": _cart_line_ids(client)})

        assert client.post("/checkout/confirm").status_code == 201
        assert client.get("/payments/me").json()["payments"][0]["method"] == "BANK_TRANSFER"

    def test_empty_selection(self, client):
        response = client.post("/checkout/begin", json={"item_ids": []})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    def test_confirm_without_staged_order(self, client):
        response = client.post("/checkout/confirm")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "no_staged_order"

    def test_double_submit_creates_one_order(self, client, make_product):
        product = make_product()
        client.post("/cart/items", json={"product_id": product.id})
        client.post("/checkout/begin", json={"item_ids": _cart_line_ids(client)})

        first = client.post("/checkout/confirm")
        second = client.post("/checkout/confirm")

        assert (first.status_code, second.status_code) == (201, 400)
        assert client.get("/orders/me").json()["total"] == 1

    def test_notification_failure_keeps_order(self, client, dispatcher, make_product):
        dispatcher.should_succeed = False
        product = make_product()
        client.post("/cart/items", json={"product_id": product.id})
        client.post("/checkout/begin", json={"item_ids": _cart_line_ids(client)})

        response = client.post("/checkout/confirm")

        assert response.status_code == 201
        assert client.get("/orders/me").json()["total"] == 1


class TestLifecycleAPI:
    def test_status_updates_require_admin(self, client, placed_order):
        order, _ = placed_order

        response = client.patch(f"/orders/{order.id}/status", json={"status": "SHIPPED"})

        assert response.status_code == 403

    def test_admin_moves_order(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["role"] = "admin"

        response = client.patch(f"/orders/{order.id}/status", json={"status": "SHIPPED"})

        assert response.status_code == 200
        assert response.json()["status"] == "SHIPPED"

    def test_missing_status(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["role"] = "admin"

        assert client.patch(f"/orders/{order.id}/status", json={}).status_code == 400

    def test_success_without_completed_at(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["role"] = "admin"

        response = client.patch(f"/payments/{order.payment.id}/status", json={"status": "SUCCESS"})

        assert response.status_code == 400

    def test_failed_payment_puts_products_back(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["role"] = "admin"

        response = client.patch(f"/payments/{order.payment.id}/status", json={"status": "FAILED"})

        assert response.status_code == 200
        assert response.json()["status"] == "FAILED"
        assert client.get(f"/orders/{order.id}").json()["status"] == "CANCELLED"
        names = sorted(p["name"] for p in client.get("/products").json()["products"])
        assert names == ["Kemeja Flanel", "Tas Kulit"]

    def test_other_users_order_is_hidden(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["id"] = 2

        assert client.get(f"/orders/{order.id}").status_code == 404

    def test_admin_deletes_order(self, client, current_user, placed_order):
        order, _ = placed_order
        current_user["role"] = "admin"

        assert client.delete(f"/orders/{order.id}").status_code == 204
        assert client.get("/orders").json()["total"] == 0
        assert client.get("/payments").json()["total"] == 0
