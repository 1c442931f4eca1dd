import csv
import io
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from sqlalchemy.exc import OperationalError

from ballotbox import db
from ballotbox.catalog import position_ids
from ballotbox.services import get_services


def _login(client, email="ada@example.com", unique_id="GCN001"):
    resp = client.post("/api/voters/login", json={"email": email, "unique_id": unique_id})
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    return body["voter"], {"Authorization": f"Bearer {body['access_token']}"}


def _vote(client, headers, votes):
    return client.post("/api/votes", json={"votes": votes}, headers=headers)


def test_ballot_is_public(client):
    resp = client.get("/api/ballot")
    assert resp.status_code == 200
    assert [p["id"] for p in resp.get_json()["positions"]] == position_ids()


def test_validate_endpoint(client):
    ok = client.post("/api/voters/validate", json={"unique_id": "GCN001"}).get_json()
    assert ok == {"is_valid": True, "is_available": True, "message": None}

    bad = client.post("/api/voters/validate", json={"unique_id": "GCN999"}).get_json()
    assert bad["is_valid"] is False
    assert bad["message"] == "Invalid ID - not found in voter registry"


def test_voter_login_and_vote(client, full_ballot):
    voter, headers = _login(client)
    assert voter["has_voted"] is False
    assert voter["unique_id"] == "GCN001"

    resp = _vote(client, headers, full_ballot)
    assert resp.status_code == 201

    again = _vote(client, headers, full_ballot)
    assert again.status_code == 409
    assert again.get_json()["error"] == "ALREADY_VOTED"

    voter, _ = _login(client)
    assert voter["has_voted"] is True


def test_login_sets_cookie(client):
    resp = client.post("/api/voters/login", json={"email": "ada@example.com", "unique_id": "GCN001"})
    assert "access_token_cookie" in resp.headers.get("Set-Cookie", "")


def test_login_errors(client):
    resp = client.post("/api/voters/login", json={"email": "nope", "unique_id": "GCN001"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_EMAIL"

    resp = client.post("/api/voters/login", json={"email": "ada@example.com", "unique_id": "GCN999"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_ID"

    _login(client)
    resp = client.post("/api/voters/login", json={"email": "bob@example.com", "unique_id": "GCN001"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "ID_ALREADY_USED"


def test_incomplete_ballot_over_http(client, full_ballot):
    _, headers = _login(client)
    full_ballot.pop("president")
    resp = _vote(client, headers, full_ballot)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "INCOMPLETE_BALLOT"


def test_vote_requires_voter_token(client, full_ballot, admin_headers):
    assert _vote(client, {}, full_ballot).status_code == 401
    assert _vote(client, admin_headers, full_ballot).status_code == 403


def test_store_error_is_generic(client, full_ballot, monkeypatch):
    _, headers = _login(client)

    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("password=hunter2 host=db"))

    monkeypatch.setattr(db.session, "commit", broken_commit)
    resp = _vote(client, headers, full_ballot)
    monkeypatch.undo()

    assert resp.status_code == 503
    body = resp.get_json()
    assert body["error"] == "STORE_ERROR"
    assert "hunter2" not in body["message"]


def test_admin_login(client, admin_password):
    resp = client.post("/api/admin/login", json={"username": "admin", "password": admin_password})
    assert resp.status_code == 200
    token = resp.get_json()["access_token"]

    resp = client.get("/api/admin/voters", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_admin_login_failure_is_throttled(client, admin_password):
    resp = client.post("/api/admin/login", json={"username": "admin", "password": "guess"})
    assert resp.status_code == 401

    resp = client.post("/api/admin/login", json={"username": "admin", "password": admin_password})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1


def test_admin_endpoints_reject_voters(app, client):
    _, headers = _login(client)
    assert client.get("/api/results", headers=headers).status_code == 403
    assert client.delete("/api/admin/votes", headers=headers).status_code == 403
    assert app.test_client().get("/api/results").status_code == 401


def test_results(client, admin_headers, make_ballot):
    for n, unique_id in enumerate(["GCN001", "GCN002", "GCN003"]):
        _, headers = _login(client, f"v{n}@example.com", unique_id)
        _vote(client, headers, make_ballot(president="raphael-iyama"))
    _, headers = _login(client, "v9@example.com", "GCN004")
    _vote(client, headers, make_ballot(president="ogbaji-edor-raymond"))

    body = client.get("/api/results", headers=admin_headers).get_json()
    assert body["tally"]["president"] == {"raphael-iyama": 3, "ogbaji-edor-raymond": 1}
    president = body["positions"][0]
    assert president["winner"]["id"] == "raphael-iyama"
    assert [r["votes"] for r in president["results"]] == [3, 1]
    assert body["total_votes"] == 4 * len(position_ids())


def test_csv_export(client, admin_headers, full_ballot):
    _, headers = _login(client)
    _vote(client, headers, full_ballot)

    resp = client.get("/api/results/export.csv", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert "attachment; filename=election-results-" in resp.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert ["President", "Hon. Raphael Iyama", "1", "100.0%"] in rows


def test_results_stream_sends_initial_tally(client, admin_headers):
    resp = client.get("/api/results/stream", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"

    chunk = next(iter(resp.response))
    if isinstance(chunk, bytes):
        chunk = chunk.decode()
    assert chunk.startswith("event: tally\n")
    data = json.loads(chunk.split("data: ", 1)[1])
    assert set(data) == set(position_ids())
    resp.close()


def test_voter_registry_management(client, admin_headers):
    resp = client.post("/api/admin/voters", json={"unique_id": "NEW-200", "voter_name": "Grace"},
                       headers=admin_headers)
    assert resp.status_code == 201

    dup = client.post("/api/admin/voters", json={"unique_id": "NEW-200"}, headers=admin_headers)
    assert dup.status_code == 409

    resp = client.put("/api/admin/voters/NEW-200/active", json={"active": False}, headers=admin_headers)
    assert resp.status_code == 200
    assert client.post("/api/voters/validate", json={"unique_id": "NEW-200"}).get_json()["is_valid"] is False

    bad = client.put("/api/admin/voters/NEW-200/active", json={"active": "no"}, headers=admin_headers)
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "INVALID_REQUEST"

    voters = client.get("/api/admin/voters", headers=admin_headers).get_json()["voters"]
    row = next(v for v in voters if v["unique_id"] == "NEW-200")
    assert row["voter_name"] == "Grace"
    assert row["issued_by"] == "admin"
    assert row["is_active"] is False


def test_admin_deletes_and_reset(client, admin_headers, full_ballot):
    _, ada = _login(client, "ada@example.com", "GCN001")
    _vote(client, ada, full_ballot)
    _, bob = _login(client, "bob@example.com", "GCN002")
    _vote(client, bob, full_ballot)

    resp = client.delete("/api/admin/voters/GCN001/votes", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()["votes_deleted"] == len(position_ids())

    resp = client.delete("/api/admin/voters/GCN001", headers=admin_headers)
    assert resp.status_code == 200
    assert client.post("/api/voters/validate", json={"unique_id": "GCN001"}).get_json()["is_available"] is True

    resp = client.delete("/api/admin/voters/GCN005", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "UNKNOWN_VOTER"

    resp = client.delete("/api/admin/votes", headers=admin_headers)
    assert resp.status_code == 200
    tally = client.get("/api/results", headers=admin_headers).get_json()["tally"]
    assert all(counts == {} for counts in tally.values())


def test_admin_store_failure_says_investigate(client, admin_headers, monkeypatch):
    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("connection lost"))

    monkeypatch.setattr(db.session, "commit", broken_commit)
    resp = client.delete("/api/admin/votes", headers=admin_headers)
    monkeypatch.undo()

    assert resp.status_code == 503
    assert "investigate" in resp.get_json()["message"]


def test_health(client):
    resp = client.get("/health")
    assert resp.get_json()["db"]["ok"] is True


@pytest.mark.parametrize("body", [["ada@example.com", "GCN001"], "GCN001", 42])
def test_non_object_body_is_rejected(client, body):
    resp = client.post("/api/voters/login", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_REQUEST"


def test_non_object_body_on_admin_endpoint(client, admin_headers):
    resp = client.put("/api/admin/voters/GCN001/active", json=[True], headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_REQUEST"


def test_registry_free_text_must_be_text(client, admin_headers):
    resp = client.post("/api/admin/voters", json={"unique_id": "GCN777", "voter_name": 42},
                       headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_REQUEST"

    resp = client.post("/api/admin/voters", json={"unique_id": "GCN778", "notes": ["x"]},
                       headers=admin_headers)
    assert resp.status_code == 400


def test_results_stream_releases_db_session(client, admin_headers, monkeypatch):
    released = []
    original_remove = db.session.remove

    def remove():
        released.append(True)
        original_remove()

    monkeypatch.setattr(db.session, "remove", remove)
    resp = client.get("/api/results/stream", headers=admin_headers)
    next(iter(resp.response))
    assert released
    resp.close()


def test_admin_logout_clears_cookie(client, admin_password):
    client.post("/api/admin/login", json={"username": "admin", "password": admin_password})
    resp = client.post("/api/admin/logout")
    assert resp.status_code == 200
    cookies = resp.headers.getlist("Set-Cookie")
    assert any(cookie.startswith("access_token_cookie=;") for cookie in cookies)


def test_admin_login_prunes_stale_throttle_records(app, client, admin_password):
    guard = get_services().admin_guard
    long_ago = datetime(2000, 1, 1, tzinfo=timezone.utc)
    guard.failed_logins["10.9.9.9"] = [long_ago]
    guard.locks["10.9.9.9"] = long_ago
    guard.next_allowed["10.9.9.9"] = long_ago

    client.post("/api/admin/login", json={"username": "admin", "password": admin_password})

    assert "10.9.9.9" not in guard.failed_logins
    assert "10.9.9.9" not in guard.locks
    assert "10.9.9.9" not in guard.next_allowed


def test_admin_lockout_is_reported(client):
    guard = get_services().admin_guard
    for _ in range(guard.max_attempts):
        guard.record_failed_attempt("127.0.0.1")

    resp = client.post("/api/admin/login", json={"username": "admin", "password": "guess"})
    assert resp.status_code == 429
    assert resp.get_json()["error"] == "LOCKED_OUT"


def test_notification_status(client, admin_headers):
    body = client.get("/api/admin/notifications", headers=admin_headers).get_json()
    assert body == {"enabled": False, "resend_configured": False, "admin_email_configured": True}


def test_send_test_email(client, admin_headers):
    notifier = get_services().notifier
    notifier.email_client = MagicMock(configured=True)
    notifier.email_client.send.return_value = True

    resp = client.post("/api/admin/notifications/test", json={"email": "Ops@Example.com"},
                       headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()["sent"] is True
    message = notifier.email_client.send.call_args[0][0]
    assert message.to == "ops@example.com"
    assert "TEST-123" in message.html

    bad = client.post("/api/admin/notifications/test", json={"email": "nope"}, headers=admin_headers)
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "INVALID_EMAIL"


def test_resend_confirmation(client, admin_headers, full_ballot):
    resp = client.post("/api/admin/voters/GCN001/confirmation", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "UNKNOWN_VOTER"

    _, headers = _login(client)
    resp = client.post("/api/admin/voters/GCN001/confirmation", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "NOT_VOTED"

    _vote(client, headers, full_ballot)
    workflow = get_services().workflow
    workflow.notifier = MagicMock()
    workflow.notifier.dispatch_confirmation.return_value = True

    resp = client.post("/api/admin/voters/GCN001/confirmation", headers=admin_headers)
    assert resp.status_code == 202
    assert resp.get_json() == {"unique_id": "GCN001", "queued": True}
    submission = workflow.notifier.dispatch_confirmation.call_args[0][0]
    assert submission.voter_email == "ada@example.com"
    assert submission.votes == full_ballot


def test_health_reports_vote_feed(client):
    body = client.get("/health").get_json()
    assert body["vote_feed"] == {"subscribers": 0, "dropped": 0}
