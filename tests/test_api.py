import pytest
from fastapi.testclient import TestClient

from conftest import InMemoryStore, RecordingGateway, RecordingNotifier
from labourmarket.payments import compute_signature
from labourmarket.server import create_app


@pytest.fixture
def api(settings):
    store = InMemoryStore()
    app = create_app(settings, store=store, notifier=RecordingNotifier(), gateway=RecordingGateway())
    with TestClient(app) as client:
        client.store = store
        yield client


def signup(client, name, role="customer", password="secret123"):
    res = client.post(
        "/api/auth/signup",
        json={"name": name, "email": f"{name.lower()}@example.com", "password": password, "role": role},
    )
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def make_plumber(client, name="Ravi"):
    headers = signup(client, name, role="worker")
    res = client.post(
        "/api/profile/worker",
        json={"category": "Plumber", "hourly_rate": 250, "location": "Pune", "experience_years": 4},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    return headers, res.json()


BOOKING = {"date": "2026-11-02T09:30:00+00:00", "booking_mode": "hourly", "number_of_hours": 2}


def test_root(api):
    assert api.get("/api/").json() == {"message": "Labour Market Backend is running"}


class TestAuth:
    def test_signup_then_login(self, api):
        signup(api, "Asha")

        res = api.post("/api/auth/login", data={"username": "asha@example.com", "password": "secret123"})

        assert res.status_code == 200
        body = res.json()
        assert body["token_type"] == "bearer"
        assert body["role"] == "customer"
        assert body["name"] == "Asha"

    def test_duplicate_signup(self, api):
        signup(api, "Asha")
        res = api.post(
            "/api/auth/signup",
            json={"name": "Asha", "email": "asha@example.com", "password": "secret123"},
        )
        assert res.status_code == 409
        assert res.json() == {"detail": "User already exists"}

    def test_wrong_password(self, api):
        signup(api, "Asha")
        res = api.post("/api/auth/login", data={"username": "asha@example.com", "password": "nope-nope"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Invalid Credentials"

    def test_missing_token(self, api):
        res = api.get("/api/profile/me")
        assert res.status_code == 401
        assert res.json()["detail"] == "No token, authorization denied"

    def test_garbage_token(self, api):
        res = api.get("/api/profile/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_legacy_header(self, api):
        bearer = signup(api, "Asha")
        token = bearer["Authorization"].split(" ", 1)[1]

        res = api.get("/api/profile/me", headers={"x-auth-token": token})

        assert res.status_code == 200
        assert res.json()["user"]["email"] == "asha@example.com"
        assert "password_hash" not in res.json()["user"]


class TestProfile:
    def test_worker_signup_gets_placeholder_profile(self, api):
        headers = signup(api, "Ravi", role="worker")

        labourer = api.get("/api/profile/me", headers=headers).json()["labourer"]

        assert labourer["category"] == "General"
        assert labourer["location"] == "Not set"
        assert len(api.store.labourers) == 1

    def test_worker_profile_update_keeps_identity(self, api):
        headers = signup(api, "Ravi", role="worker")
        placeholder = api.get("/api/profile/me", headers=headers).json()["labourer"]

        res = api.post(
            "/api/profile/worker",
            json={
                "category": "Plumber",
                "hourly_rate": 250,
                "location": "Pune",
                "experience_years": 4,
                "skills": "Pipes, Taps, Pipes",
            },
            headers=headers,
        )

        labourer = res.json()
        assert labourer["id"] == placeholder["id"]
        assert labourer["category"] == "Plumber"
        assert labourer["skills"] == ["Pipes", "Taps"]
        assert len(api.store.labourers) == 1

    def test_worker_profile_requires_fields(self, api):
        headers = signup(api, "Ravi", role="worker")
        res = api.post("/api/profile/worker", json={"category": "Plumber"}, headers=headers)
        assert res.status_code == 400
        assert res.json()["detail"] == "Please enter all required fields"

    def test_customer_cannot_edit_worker_profile(self, api):
        headers = signup(api, "Asha")
        res = api.post(
            "/api/profile/worker",
            json={"category": "Plumber", "hourly_rate": 250, "location": "Pune", "experience_years": 4},
            headers=headers,
        )
        assert res.status_code == 403

    def test_push_token_and_addresses(self, api):
        headers = signup(api, "Asha")

        assert api.put("/api/profile/push-token", json={"fcm_token": "device-token-1"}, headers=headers).status_code == 200
        res = api.post("/api/profile/addresses", json={"address": "12 MG Road", "label": "Home"}, headers=headers)

        assert res.status_code == 200
        assert res.json()[0]["address"] == "12 MG Road"
        user = next(iter(api.store.users.values()))
        assert user["push_token"] == "device-token-1"

    def test_profile_image_syncs_worker_labourer(self, api):
        headers = signup(api, "Ravi", role="worker")

        res = api.put("/api/profile/image", json={"profilePicture": "data:image/png;base64,AAAA"}, headers=headers)

        assert res.status_code == 200
        assert res.json()["profile_picture"] == "data:image/png;base64,AAAA"
        assert "password_hash" not in res.json()
        labourer = api.get("/api/profile/me", headers=headers).json()["labourer"]
        assert labourer["image_url"] == "data:image/png;base64,AAAA"

    def test_profile_image_required(self, api):
        headers = signup(api, "Asha")
        res = api.put("/api/profile/image", json={}, headers=headers)
        assert res.status_code == 400
        assert res.json()["detail"] == "No image data provided"

    def test_labourer_listing(self, api):
        _, plumber = make_plumber(api)

        assert [l["id"] for l in api.get("/api/labourers", params={"category": "Plumber"}).json()] == [plumber["id"]]
        assert api.get("/api/labourers", params={"category": "Painter"}).json() == []
        assert api.get(f"/api/labourers/{plumber['id']}").json()["name"] == "Ravi"
        assert api.get("/api/labourers/unknown").status_code == 404


class TestBookingFlow:
    def test_broadcast_claim_and_complete(self, api):
        customer = signup(api, "Asha")
        worker, plumber = make_plumber(api)

        created = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=customer)
        assert created.status_code == 200, created.text
        booking_id = created.json()["id"]
        assert created.json()["labourer_id"] is None

        visible = api.get("/api/bookings/worker", headers=worker).json()
        assert [b["id"] for b in visible] == [booking_id]
        assert visible[0]["user"]["name"] == "Asha"

        claimed = api.put(f"/api/bookings/{booking_id}/claim", headers=worker)
        assert claimed.status_code == 200
        assert claimed.json()["status"] == "confirmed"
        assert claimed.json()["labourer_id"] == plumber["id"]

        again = api.put(f"/api/bookings/{booking_id}/claim", headers=worker)
        assert again.status_code == 409

        done = api.put(f"/api/bookings/{booking_id}/status", json={"status": "completed"}, headers=worker)
        assert done.status_code == 200
        assert done.json()["status"] == "completed"
        assert api.store.labourers[plumber["id"]]["jobs_completed"] == 1

        mine = api.get("/api/bookings/user", headers=customer).json()
        assert mine[0]["labourer"]["id"] == plumber["id"]

    def test_worker_cannot_create_booking(self, api):
        worker, _ = make_plumber(api)
        res = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=worker)
        assert res.status_code == 403

    def test_invalid_status_value(self, api):
        customer = signup(api, "Asha")
        booking_id = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=customer).json()["id"]

        res = api.put(f"/api/bookings/{booking_id}/status", json={"status": "archived"}, headers=customer)

        assert res.status_code == 400

    def test_stranger_cannot_change_status(self, api):
        customer = signup(api, "Asha")
        other = signup(api, "Meena")
        booking_id = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=customer).json()["id"]

        res = api.put(f"/api/bookings/{booking_id}/status", json={"status": "cancelled"}, headers=other)

        assert res.status_code == 401
        assert api.store.bookings[booking_id]["status"] == "pending"


class TestPaymentFlow:
    def test_order_and_verification(self, api, settings):
        customer = signup(api, "Asha")
        booking_id = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=customer).json()["id"]

        order = api.post("/api/payments/create-order", json={"bookingId": booking_id, "amount": 500}, headers=customer)
        assert order.status_code == 200, order.text
        order_id = order.json()["id"]
        assert order.json()["amount"] == 50000

        bad = api.post(
            "/api/payments/verify-payment",
            json={
                "bookingId": booking_id,
                "razorpay_order_id": order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "0" * 64,
            },
            headers=customer,
        )
        assert bad.status_code == 400
        assert bad.json() == {"success": False, "msg": "Invalid signature"}

        good = api.post(
            "/api/payments/verify-payment",
            json={
                "bookingId": booking_id,
                "razorpay_order_id": order_id,
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": compute_signature(settings.payment_key_secret, order_id, "pay_1"),
            },
            headers=customer,
        )
        assert good.status_code == 200
        assert good.json()["success"] is True
        assert good.json()["booking"]["payment_status"] == "paid"

    def test_stripe_webhook_route_requires_configuration(self, api):
        res = api.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})
        # no STRIPE_WEBHOOK_SECRET in the test settings
        assert res.status_code == 500
        assert res.json()["detail"] == "Payment webhook is not configured"

    def test_order_for_someone_elses_booking(self, api):
        customer = signup(api, "Asha")
        other = signup(api, "Meena")
        booking_id = api.post("/api/bookings", json={**BOOKING, "category": "Plumber"}, headers=customer).json()["id"]

        res = api.post("/api/payments/create-order", json={"booking_id": booking_id, "amount": 500}, headers=other)

        assert res.status_code == 401
