import os
import sys
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicebroker.main import app

client = TestClient(app)


def _user(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def _login(user_id: str) -> dict:
    login = client.post("/auth/login", json={"user_id": user_id, "password": "broker-demo"})
    assert login.status_code == 200
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


def _create_request(requester_id: str, **overrides) -> dict:
    payload = {
        "requester_id": requester_id,
        "booking_mode": "quote-only",
        "category": "home",
        "subcategory": "electrical",
        "location": "Brunswick",
        "description": "Two downlights flicker.",
    }
    payload.update(overrides)
    response = client.post("/requests", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def _submit_quote(request_id: str, provider_id: str, price) -> dict:
    response = client.post(
        "/quotes",
        json={"request_id": request_id, "provider_id": provider_id, "price": price, "message": "Can start today."},
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_auth_login_and_me():
    headers = _login("user_2")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["user_id"] == "user_2"


def test_auth_rejects_bad_password_and_missing_token():
    login = client.post("/auth/login", json={"user_id": "user_2", "password": "wrong"})
    assert login.status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_token_must_match_actor():
    requester = _user("req")
    headers = _login(_user("intruder"))
    response = client.post(
        "/requests",
        json={
            "requester_id": requester,
            "booking_mode": "quote-only",
            "category": "home",
            "subcategory": "electrical",
            "location": "Brunswick",
        },
        headers=headers,
    )
    assert response.status_code == 403


def test_create_request_validates_booking_mode_fields():
    requester = _user("req")
    tomorrow = (datetime.now(timezone.utc).date() + timedelta(days=1)).isoformat()

    bad = client.post(
        "/requests",
        json={
            "requester_id": requester,
            "booking_mode": "quote-only",
            "category": "home",
            "subcategory": "electrical",
            "location": "Brunswick",
            "date": tomorrow,
        },
    )
    assert bad.status_code == 400
    assert "date" in bad.json()["detail"]

    scheduled = _create_request(requester, booking_mode="scheduled", date=tomorrow, time="14:30")
    assert scheduled["status"] == "Open"
    assert scheduled["date"] == tomorrow

    listed = client.get("/requests", params={"requester_id": requester, "booking_mode": "scheduled"})
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [scheduled["id"]]


def test_unknown_request_is_404():
    response = client.get("/requests/req_does_not_exist")
    assert response.status_code == 404


def test_duplicate_quote_is_409():
    request = _create_request(_user("req"))
    provider = _user("prov")
    _submit_quote(request["id"], provider, 120)

    second = client.post("/quotes", json={"request_id": request["id"], "provider_id": provider, "price": 110})
    assert second.status_code == 409

    zero = client.post("/quotes", json={"request_id": request["id"], "provider_id": _user("prov"), "price": 0})
    assert zero.status_code == 400


def test_full_negotiation_over_http():
    requester = _user("req")
    provider_a = _user("prov")
    provider_b = _user("prov")
    request = _create_request(requester)

    viewed = client.post(f"/requests/{request['id']}/view", json={"actor_user_id": provider_a})
    assert viewed.status_code == 200
    assert viewed.json()["status"] == "Viewed"

    quote_a = _submit_quote(request["id"], provider_a, 100)
    quote_b = _submit_quote(request["id"], provider_b, "90.00")
    assert quote_b["status"] == "Pending"
    assert float(quote_b["price"]) == 90.0

    quotes = client.get("/quotes", params={"request_id": request["id"], "actor_user_id": requester})
    assert quotes.status_code == 200
    assert {item["id"] for item in quotes.json()} == {quote_a["id"], quote_b["id"]}
    own_only = client.get("/quotes", params={"request_id": request["id"], "actor_user_id": provider_a})
    assert [item["id"] for item in own_only.json()] == [quote_a["id"]]

    agreement = client.post("/agreements", json={"quote_id": quote_b["id"], "requester_id": requester})
    assert agreement.status_code == 200
    agreement_id = agreement.json()["id"]

    first = client.post(
        f"/agreements/{agreement_id}/accept",
        json={"actor_user_id": requester, "actor_role": "requester"},
    )
    assert first.status_code == 200
    assert first.json()["status"] == "Pending"

    final = client.post(
        f"/agreements/{agreement_id}/accept",
        json={"actor_user_id": provider_b, "actor_role": "provider"},
    )
    assert final.status_code == 200
    assert final.json()["status"] == "Accepted"

    assigned = client.get(f"/requests/{request['id']}").json()
    assert assigned["status"] == "Assigned"
    assert assigned["assigned_provider_id"] == provider_b
    losing_quote = client.get(f"/quotes/{quote_a['id']}", params={"actor_user_id": provider_a})
    assert losing_quote.json()["status"] == "Rejected"
    stranger_read = client.get(f"/quotes/{quote_a['id']}", params={"actor_user_id": _user("prov")})
    assert stranger_read.status_code == 403
    assert client.get(f"/agreements/{agreement_id}", params={"actor_user_id": provider_a}).status_code == 403
    assert client.get(f"/agreements/{agreement_id}", params={"actor_user_id": requester}).json()["status"] == "Accepted"
    assert client.get(f"/requests/{request['id']}/statuses/{provider_a}").json()["status"] == "Rejected"

    statuses = client.get(f"/requests/{request['id']}/statuses", params={"actor_user_id": requester})
    assert statuses.status_code == 200
    assert {row["provider_id"]: row["status"] for row in statuses.json()} == {
        provider_a: "Rejected",
        provider_b: "Assigned",
    }

    skip = client.post(
        f"/workflow/{request['id']}/{provider_b}/advance",
        json={"actor_user_id": provider_b, "milestone": "completed"},
    )
    assert skip.status_code == 422

    for milestone in ("in_progress", "checked_in", "completed"):
        step = client.post(
            f"/workflow/{request['id']}/{provider_b}/advance",
            json={"actor_user_id": provider_b, "milestone": milestone},
        )
        assert step.status_code == 200, step.text

    workflow_url = f"/workflow/{request['id']}/{provider_b}"
    assert client.get(workflow_url, params={"actor_user_id": provider_a}).status_code == 403
    workflow = client.get(workflow_url, params={"actor_user_id": requester}).json()
    assert workflow["is_completed"] is True
    assert client.get(f"/requests/{request['id']}").json()["status"] == "Completed"

    requester_titles = [item["title"] for item in client.get("/notifications", params={"user_id": requester}).json()]
    assert "New quote received" in requester_titles
    assert "Request completed" in requester_titles
    provider_titles = [item["title"] for item in client.get("/notifications", params={"user_id": provider_b}).json()]
    assert "Agreement finalized" in provider_titles
    assert "You have been assigned" in provider_titles


def test_hide_and_feed_over_http():
    request = _create_request(_user("req"))
    provider = _user("prov")

    hidden = client.post(f"/requests/{request['id']}/hide", json={"actor_user_id": provider})
    assert hidden.status_code == 200
    feed = client.get("/requests/feed", params={"provider_id": provider}).json()
    assert request["id"] not in [item["request"]["id"] for item in feed]

    unhidden = client.post(f"/requests/{request['id']}/unhide", json={"actor_user_id": provider})
    assert unhidden.json()["unhidden"] is True
    feed = client.get("/requests/feed", params={"provider_id": provider}).json()
    assert request["id"] in [item["request"]["id"] for item in feed]


def test_messages_and_notification_read_over_http():
    requester = _user("req")
    provider = _user("prov")
    request = _create_request(requester)
    quote = _submit_quote(request["id"], provider, 75)

    posted = client.post(
        "/messages",
        json={"sender_id": requester, "request_id": request["id"], "quote_id": quote["id"], "text": "Any flexibility?"},
    )
    assert posted.status_code == 200
    message = posted.json()
    assert message["receiver_id"] == provider

    thread = client.get(
        "/messages/thread",
        params={"request_id": request["id"], "viewer_id": provider, "quote_id": quote["id"]},
    )
    assert thread.status_code == 200
    assert thread.json()["unread_count"] == 1

    forbidden = client.post(f"/messages/{message['id']}/read", json={"actor_user_id": requester})
    assert forbidden.status_code == 403
    delivered = client.post(f"/messages/{message['id']}/delivered", json={"actor_user_id": provider})
    assert delivered.json()["is_delivered"] is True

    notifications = client.get("/notifications", params={"user_id": requester, "unread_only": True}).json()
    assert notifications
    marked = client.post(f"/notifications/{notifications[0]['id']}/read", params={"user_id": requester})
    assert marked.status_code == 200
    assert marked.json()["read"] is True
    missing = client.post("/notifications/ntf_missing/read", params={"user_id": requester})
    assert missing.status_code == 404


def test_expired_quote_accept_is_422():
    requester = _user("req")
    provider = _user("prov")
    request = _create_request(requester)
    expires_at = (datetime.now(timezone.utc) + timedelta(milliseconds=50)).isoformat()
    quote = client.post(
        "/quotes",
        json={"request_id": request["id"], "provider_id": provider, "price": 50, "expires_at": expires_at},
    ).json()

    time.sleep(0.2)
    assert client.post("/quotes/sweep").status_code == 401
    swept = client.post("/quotes/sweep", headers=_login(requester))
    assert swept.status_code == 200
    assert quote["id"] in [item["id"] for item in swept.json()]

    accept = client.post(
        f"/quotes/{quote['id']}/accept",
        json={"actor_user_id": requester, "actor_role": "requester"},
    )
    assert accept.status_code == 422


def test_cancel_request_over_http():
    requester = _user("req")
    request = _create_request(requester)

    forbidden = client.post(f"/requests/{request['id']}/cancel", json={"actor_user_id": _user("other")})
    assert forbidden.status_code == 403
    cancelled = client.post(f"/requests/{request['id']}/cancel", json={"actor_user_id": requester})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "Cancelled"
    again = client.post(f"/requests/{request['id']}/cancel", json={"actor_user_id": requester})
    assert again.status_code == 422


def test_huge_quote_price_is_400():
    request = _create_request(_user("req"))
    response = client.post(
        "/quotes",
        json={"request_id": request["id"], "provider_id": _user("prov"), "price": "1e30"},
    )
    assert response.status_code == 400
    assert "at most" in response.json()["detail"]


def test_edit_request_over_http():
    requester = _user("req")
    request = _create_request(requester)
    tomorrow = (datetime.now(timezone.utc).date() + timedelta(days=1)).isoformat()
    edited_payload = {
        "requester_id": requester,
        "booking_mode": "scheduled",
        "category": "home",
        "subcategory": "plumbing",
        "location": "Coburg",
        "date": tomorrow,
        "time": "09:00",
    }

    edited = client.put(f"/requests/{request['id']}", json=edited_payload)
    assert edited.status_code == 200, edited.text
    assert edited.json()["subcategory"] == "plumbing"
    assert edited.json()["date"] == tomorrow
    assert edited.json()["status"] == "Open"

    missing_time = client.put(f"/requests/{request['id']}", json={**edited_payload, "time": None})
    assert missing_time.status_code == 400
    other = _user("req")
    forbidden = client.put(f"/requests/{request['id']}", json={**edited_payload, "requester_id": other})
    assert forbidden.status_code == 403

    client.post(f"/requests/{request['id']}/cancel", json={"actor_user_id": requester})
    closed = client.put(f"/requests/{request['id']}", json=edited_payload)
    assert closed.status_code == 422


def test_chat_list_over_http():
    requester = _user("req")
    provider = _user("prov")
    request = _create_request(requester)
    quote = _submit_quote(request["id"], provider, 60)
    client.post(
        "/messages",
        json={"sender_id": requester, "request_id": request["id"], "quote_id": quote["id"], "text": "Tuesday works?"},
    )

    chats = client.get("/messages/chats", params={"user_id": provider})
    assert chats.status_code == 200
    body = chats.json()
    assert body["total_count"] == 1
    chat = body["chats"][0]
    assert chat["request_id"] == request["id"]
    assert chat["other_user_id"] == requester
    assert chat["service_title"] == "electrical - home"
    assert chat["last_message"] == "Tuesday works?"
    assert chat["unread_count"] == 1
