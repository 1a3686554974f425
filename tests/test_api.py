from __future__ import annotations

import asyncio
import uuid


def _user(prefix: str) -> str:
    # The API database is shared by the whole test session.
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _seed_call(repo, initiator: str, recipient: str, outcome: str, *, duration: int = 0) -> str:
    async def _seed():
        call = await repo.create_session(initiator_id=initiator, recipient_id=recipient, call_type="voice")
        await repo.transition_session(call.id, from_statuses=("initiating",), to_status="ringing")
        if outcome == "ringing":
            return call.id
        fields = {"duration_seconds": duration}
        if outcome == "missed":
            fields["is_missed"] = True
        row = await repo.transition_session(call.id, from_statuses=("ringing",), to_status=outcome, **fields)
        event = {"active": "call_started", "declined": "call_declined", "missed": "call_missed"}[outcome]
        await repo.upsert_history(
            call.id,
            {
                "initiator_id": initiator,
                "recipient_id": recipient,
                "call_type": row.call_type,
                "duration_seconds": row.duration_seconds,
                "status": row.status,
                "event_type": event,
            },
        )
        return call.id

    return asyncio.run(_seed())


def test_history_lists_the_users_calls_newest_first(client, api_repository):
    alice, bob = _user("alice"), _user("bob")
    first = _seed_call(api_repository, alice, bob, "declined")
    second = _seed_call(api_repository, bob, alice, "missed")
    _seed_call(api_repository, _user("carol"), bob, "declined")

    response = client.get("/api/calls/history", headers={"X-User-Id": alice})
    assert response.status_code == 200
    payload = response.json()
    assert [entry["call_id"] for entry in payload] == [second, first]
    assert payload[0]["event_type"] == "call_missed"
    assert payload[0]["is_read"] is False

    limited = client.get("/api/calls/history?limit=1", headers={"X-User-Id": alice})
    assert [entry["call_id"] for entry in limited.json()] == [second]


def test_ongoing_returns_only_non_terminal_sessions(client, api_repository):
    alice, bob = _user("alice"), _user("bob")
    ringing = _seed_call(api_repository, alice, bob, "ringing")
    active = _seed_call(api_repository, bob, alice, "active")
    _seed_call(api_repository, alice, bob, "declined")

    response = client.get("/api/calls/ongoing", headers={"X-User-Id": alice})
    assert response.status_code == 200
    assert {session["id"] for session in response.json()} == {ringing, active}


def test_missed_call_badge_and_mark_read(client, api_repository):
    alice, bob = _user("alice"), _user("bob")
    _seed_call(api_repository, alice, bob, "missed")
    _seed_call(api_repository, alice, bob, "missed")
    _seed_call(api_repository, bob, alice, "missed")

    headers = {"X-User-Id": bob}
    assert client.get("/api/calls/missed/unread-count", headers=headers).json() == {"count": 2}
    assert client.post("/api/calls/missed/read", headers=headers).json() == {"updated": 2}
    assert client.get("/api/calls/missed/unread-count", headers=headers).json() == {"count": 0}
    # The caller's own missed count is untouched.
    assert client.get("/api/calls/missed/unread-count", headers={"X-User-Id": alice}).json() == {"count": 1}


def test_get_call_for_participant(client, api_repository):
    alice, bob = _user("alice"), _user("bob")
    call_id = _seed_call(api_repository, alice, bob, "missed")

    response = client.get(f"/api/calls/{call_id}", headers={"X-User-Id": bob})
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "missed"
    assert payload["is_missed"] is True
    assert payload["initiator_id"] == alice
