"""
Orders through the HTTP API: placement, status changes, cancellation, rating, payment.
"""
import pytest

import orders
import vendors
from conftest import HOME, bearer
from database import get_document_by_id, update_document
from errors import Conflict


class TestPlaceOrder:

    def test_totals_and_number(self, place_order):
        _, _, order = place_order(taxes=10)
        assert order["items_total"] == 250
        assert order["delivery_charge"] == 20
        assert order["total_amount"] == 280
        assert order["status"] == "pending"
        assert order["status_history"] == []
        assert order["order_number"].startswith("TMS")

    def test_prices_come_from_menu(self, client, vendor_with_menu, register_customer):
        _, vendor, items = vendor_with_menu
        token, _ = register_customer()
        response = client.post("/api/orders", headers=bearer(token), json={
            "vendor_id": vendor["id"],
            "items": [{"menu_item_id": items["Veg Thali"], "quantity": 1, "price": 1}],
            "delivery_address": HOME,
            "scheduled_date": "2026-10-20T12:00:00",
            "scheduled_time": "12:30",
        })
        assert response.status_code == 201
        assert response.json()["items"][0]["price"] == 100

    def test_empty_order_rejected(self, client, vendor_with_menu, register_customer):
        _, vendor, _ = vendor_with_menu
        token, _ = register_customer()
        response = client.post("/api/orders", headers=bearer(token), json={
            "vendor_id": vendor["id"], "items": [], "delivery_address": HOME,
            "scheduled_date": "2026-10-20T12:00:00", "scheduled_time": "12:30",
        })
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_order"

    def test_unknown_menu_item_rejected(self, client, vendor_with_menu, register_customer):
        _, vendor, _ = vendor_with_menu
        token, _ = register_customer()
        response = client.post("/api/orders", headers=bearer(token), json={
            "vendor_id": vendor["id"], "items": [{"menu_item_id": "nope", "quantity": 1}],
            "delivery_address": HOME, "scheduled_date": "2026-10-20T12:00:00", "scheduled_time": "12:30",
        })
        assert response.status_code == 400

    def test_unapproved_vendor_rejected(self, client, register_vendor, register_customer):
        _, vendor = register_vendor(approved=False)
        token, _ = register_customer()
        response = client.post("/api/orders", headers=bearer(token), json={
            "vendor_id": vendor["id"], "items": [{"menu_item_id": "x", "quantity": 1}],
            "delivery_address": HOME, "scheduled_date": "2026-10-20T12:00:00", "scheduled_time": "12:30",
        })
        assert response.status_code == 400

    def test_my_orders(self, client, place_order):
        customer_token, vendor_token, order = place_order()
        mine = client.get("/api/orders/mine", headers=bearer(customer_token)).json()
        theirs = client.get("/api/orders/mine", headers=bearer(vendor_token)).json()
        assert [o["id"] for o in mine] == [order["id"]]
        assert [o["id"] for o in theirs] == [order["id"]]

    def test_other_customer_cannot_read(self, client, place_order, register_customer):
        _, _, order = place_order()
        stranger, _ = register_customer()
        assert client.get(f"/api/orders/{order['id']}", headers=bearer(stranger)).status_code == 403

    def test_missing_order(self, client, register_customer):
        token, _ = register_customer()
        response = client.get("/api/orders/64b7f0c2a1b2c3d4e5f60718", headers=bearer(token))
        assert response.status_code == 404

    def test_order_number_collision_is_retried(self, place_order, monkeypatch):
        _, _, first = place_order()
        numbers = iter([first["order_number"], "TMS17000000000000002"])
        monkeypatch.setattr(orders, "next_order_number", lambda database: next(numbers))
        _, _, second = place_order()
        assert second["order_number"] == "TMS17000000000000002"

    def test_order_number_exhausted_conflicts(self, client, vendor_with_menu, place_order, monkeypatch):
        customer_token, _, first = place_order()
        _, vendor, items = vendor_with_menu
        monkeypatch.setattr(orders, "next_order_number", lambda database: first["order_number"])
        response = client.post("/api/orders", headers=bearer(customer_token), json={
            "vendor_id": vendor["id"], "items": [{"menu_item_id": items["Veg Thali"], "quantity": 1}],
            "delivery_address": HOME, "scheduled_date": "2026-10-20T12:00:00", "scheduled_time": "12:30",
        })
        assert response.status_code == 409
        assert response.json()["code"] == "conflict"


class TestStatusChanges:

    def _move(self, client, token, order_id, status):
        return client.patch(f"/api/orders/{order_id}/status", headers=bearer(token), json={"status": status})

    def test_full_lifecycle(self, client, mongo, place_order):
        _, vendor_token, order = place_order()
        for status in ("confirmed", "preparing", "ready", "out-for-delivery", "delivered"):
            response = self._move(client, vendor_token, order["id"], status)
            assert response.status_code == 200, response.text
            assert response.json()["status"] == status

        stored = get_document_by_id(mongo, "order", order["id"])
        assert len(stored["status_history"]) == 5
        assert all(entry["updated_by"] == "vendor" for entry in stored["status_history"])
        assert stored["order_number"] == order["order_number"]

        vendor = get_document_by_id(mongo, "vendor", order["vendor_id"])
        assert vendor["total_orders"] == 1
        assert vendor["total_earnings"] == 280

    def test_terminal_rejects_further_changes(self, client, place_order):
        _, vendor_token, order = place_order()
        assert self._move(client, vendor_token, order["id"], "rejected").status_code == 200
        response = self._move(client, vendor_token, order["id"], "confirmed")
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_skip_rejected(self, client, place_order):
        _, vendor_token, order = place_order()
        assert self._move(client, vendor_token, order["id"], "delivered").status_code == 409

    def test_customer_cannot_change_status(self, client, place_order):
        customer_token, _, order = place_order()
        assert self._move(client, customer_token, order["id"], "confirmed").status_code == 403

    def test_other_vendor_cannot_change_status(self, client, place_order, register_vendor):
        _, _, order = place_order()
        other_token, _ = register_vendor()
        assert self._move(client, other_token, order["id"], "confirmed").status_code == 403

    def test_admin_can_change_status(self, client, mongo, place_order, admin_token):
        _, _, order = place_order()
        assert self._move(client, admin_token, order["id"], "confirmed").status_code == 200
        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["status_history"][-1]["updated_by"] == "admin"

    def test_cancel_through_status_records_cancellation(self, client, mongo, place_order):
        _, vendor_token, order = place_order()
        response = client.patch(f"/api/orders/{order['id']}/status", headers=bearer(vendor_token),
                                json={"status": "cancelled", "note": "kitchen closed"})
        assert response.status_code == 200
        cancellation = response.json()["cancellation"]
        assert cancellation["cancelled_by"] == "vendor"
        assert cancellation["reason"] == "kitchen closed"
        assert cancellation["refund_status"] == "pending"
        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["status"] == "cancelled"
        assert stored["cancellation"]["refund_status"] == "pending"
        assert len(stored["status_history"]) == 1

    def test_stale_status_is_not_saved(self, client, mongo, place_order):
        _, vendor_token, order = place_order()
        stale = orders.load_order(mongo, order["id"])
        assert self._move(client, vendor_token, order["id"], "confirmed").status_code == 200

        orders.transition(stale, "rejected", "admin")
        with pytest.raises(Conflict):
            orders.save_transition(mongo, stale, "pending")

        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["status"] == "confirmed"
        assert [entry["status"] for entry in stored["status_history"]] == ["confirmed"]


class TestCancel:

    def test_customer_cancels(self, client, mongo, place_order):
        customer_token, _, order = place_order()
        response = client.post(f"/api/orders/{order['id']}/cancel", headers=bearer(customer_token),
                               json={"reason": "plans changed"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation"]["cancelled_by"] == "customer"
        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["cancellation"]["reason"] == "plans changed"
        assert stored["cancellation"]["refund_status"] == "pending"
        assert len(stored["status_history"]) == 1

    def test_cannot_cancel_delivered(self, client, place_order):
        customer_token, vendor_token, order = place_order()
        for status in ("confirmed", "preparing", "ready", "out-for-delivery", "delivered"):
            client.patch(f"/api/orders/{order['id']}/status", headers=bearer(vendor_token), json={"status": status})
        response = client.post(f"/api/orders/{order['id']}/cancel", headers=bearer(customer_token), json={})
        assert response.status_code == 409

    def test_cannot_cancel_twice(self, client, place_order):
        customer_token, _, order = place_order()
        client.post(f"/api/orders/{order['id']}/cancel", headers=bearer(customer_token), json={})
        response = client.post(f"/api/orders/{order['id']}/cancel", headers=bearer(customer_token), json={})
        assert response.status_code == 409


class TestRating:

    def _deliver(self, client, vendor_token, order_id):
        for status in ("confirmed", "preparing", "ready", "out-for-delivery", "delivered"):
            client.patch(f"/api/orders/{order_id}/status", headers=bearer(vendor_token), json={"status": status})

    def test_rating_folds_into_vendor(self, client, mongo, place_order, register_customer):
        first_token, vendor_token, first = place_order()
        second_token, _, second = place_order()
        self._deliver(client, vendor_token, first["id"])
        self._deliver(client, vendor_token, second["id"])

        response = client.post(f"/api/orders/{first['id']}/rating", headers=bearer(first_token),
                               json={"overall": 5, "food": 5, "comment": "Just like home"})
        assert response.status_code == 200
        assert response.json()["review"]["comment"] == "Just like home"
        client.post(f"/api/orders/{second['id']}/rating", headers=bearer(second_token), json={"overall": 2})

        vendor = get_document_by_id(mongo, "vendor", first["vendor_id"])
        assert vendor["rating"]["count"] == 2
        assert vendor["rating"]["average"] == pytest.approx(3.5)

    def test_cannot_rate_undelivered(self, client, place_order):
        customer_token, _, order = place_order()
        response = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                               json={"overall": 4})
        assert response.status_code == 400

    def test_cannot_rate_twice(self, client, place_order):
        customer_token, vendor_token, order = place_order()
        self._deliver(client, vendor_token, order["id"])
        client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token), json={"overall": 4})
        response = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                               json={"overall": 4})
        assert response.status_code == 400

    def test_rating_out_of_range(self, client, place_order):
        customer_token, _, order = place_order()
        response = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                               json={"overall": 6})
        assert response.status_code == 400

    def test_lost_vendor_race_still_counts(self, client, mongo, place_order, monkeypatch):
        customer_token, vendor_token, order = place_order()
        self._deliver(client, vendor_token, order["id"])
        real_get = vendors.get_document_by_id
        raced = []

        def racing_read(database, collection, _id, projection=None):
            doc = real_get(database, collection, _id, projection)
            if collection == "vendor" and not raced:
                raced.append(True)
                update_document(mongo, "vendor", order["vendor_id"], {"rating": {"average": 3, "count": 1}})
            return doc

        monkeypatch.setattr(vendors, "get_document_by_id", racing_read)
        response = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                               json={"overall": 5})
        assert response.status_code == 200
        vendor = get_document_by_id(mongo, "vendor", order["vendor_id"])
        assert vendor["rating"] == {"average": 4.0, "count": 2}

    def test_failed_fold_leaves_order_unrated(self, client, mongo, place_order, monkeypatch):
        customer_token, vendor_token, order = place_order()
        self._deliver(client, vendor_token, order["id"])

        def contended(database, vendor_id, new_rating):
            raise Conflict("Vendor rating changed concurrently, please retry")

        monkeypatch.setattr(orders, "apply_rating", contended)
        response = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                               json={"overall": 5, "comment": "Lovely"})
        assert response.status_code == 409
        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["rating"] is None
        assert stored["review"] is None

        monkeypatch.undo()
        retry = client.post(f"/api/orders/{order['id']}/rating", headers=bearer(customer_token),
                            json={"overall": 5})
        assert retry.status_code == 200
        assert get_document_by_id(mongo, "vendor", order["vendor_id"])["rating"]["count"] == 1


class TestPaymentIntent:

    def test_mock_intent_records_reference(self, client, mongo, place_order, monkeypatch):
        from settings import settings

        monkeypatch.setattr(settings, "stripe_secret_key", None)
        customer_token, _, order = place_order(payment_method="online")
        response = client.post(f"/api/orders/{order['id']}/payment-intent", headers=bearer(customer_token))
        assert response.status_code == 200
        assert response.json() == {"clientSecret": "mock_client_secret", "amount": 28000}
        stored = get_document_by_id(mongo, "order", order["id"])
        assert stored["payment"]["transaction_id"] == f"mock_{order['order_number']}"

    def test_cash_order_has_no_intent(self, client, place_order):
        customer_token, _, order = place_order(payment_method="cash")
        response = client.post(f"/api/orders/{order['id']}/payment-intent", headers=bearer(customer_token))
        assert response.status_code == 400


class TestDashboards:

    def test_customer_dashboard(self, client, place_order):
        customer_token, _, order = place_order()
        body = client.get("/api/dashboard/customer", headers=bearer(customer_token)).json()
        assert [o["id"] for o in body["recent_orders"]] == [order["id"]]
        assert body["active_subscriptions"] == 0

    def test_vendor_dashboard(self, client, place_order):
        _, vendor_token, _ = place_order()
        body = client.get("/api/dashboard/vendor", headers=bearer(vendor_token)).json()
        assert body["orders_by_status"]["pending"] == 1
        assert body["verification_status"] == "approved"

    def test_admin_dashboard(self, client, place_order, admin_token):
        place_order()
        body = client.get("/api/dashboard/admin", headers=bearer(admin_token)).json()
        assert body["orders"] == 1
        assert body["open_orders"] == 1
        assert body["vendors"] == 1
