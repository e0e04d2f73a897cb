from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from models.space import SpaceStatus
from models.user import UserRole


def as_user(user) -> dict:
    return {"x-user-id": str(user.id)}


def window(start_hours: float = -1, end_hours: float = 1) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "start_time": (now + timedelta(hours=start_hours)).isoformat(),
        "end_time": (now + timedelta(hours=end_hours)).isoformat(),
    }


async def create_space(client, tutor, **times) -> dict:
    resp = await client.post(
        "/api/space/create",
        json={"name": "Linear Algebra Office Hours", "description": "Week 3", **window(**times)},
        headers=as_user(tutor),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_question_lifecycle_through_archive(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()

    space = await create_space(client, tutor)
    assert space["status"] == SpaceStatus.ACTIVE.value
    assert space["join_url"].endswith(space["code"])

    resp = await client.post("/api/space/join", json={"space_code": space["code"].lower()}, headers=as_user(student))
    assert resp.status_code == 200
    assert resp.json()["participant_count"] == 1

    resp = await client.post(
        "/api/posts/create",
        json={"space_id": space["id"], "question": "How do I invert a 3x3 matrix?"},
        headers=as_user(student),
    )
    assert resp.status_code == 200, resp.text
    post = resp.json()
    assert post["difficulty_level"] == "unranked"
    assert post["difficulty_score"] == 0
    assert post["is_answered"] is False

    resp = await client.post(
        "/api/posts/answer",
        json={"post_id": post["id"], "response": "Use the adjugate or row reduction."},
        headers=as_user(tutor),
    )
    assert resp.status_code == 200
    assert resp.json()["is_answered"] is True
    assert resp.json()["answered_by"] == tutor.id

    resp = await client.get("/api/posts/statistics", params={"space_id": space["id"]}, headers=as_user(tutor))
    assert resp.json()["statistics"] == {
        "total_posts": 1,
        "answered_posts": 1,
        "unanswered_posts": 0,
        "participant_count": 1,
        "average_difficulty_score": 0.0,
    }

    resp = await client.post(f"/api/archives/manual/{space['id']}", headers=as_user(tutor))
    assert resp.status_code == 200, resp.text
    session = resp.json()["session"]
    assert session["is_archived"] is True
    assert session["statistics"]["total_posts"] == 1

    resp = await client.get(f"/api/archives/{session['session_id']}", headers=as_user(tutor))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["space"]["code"] == space["code"]
    assert data["posts"][0]["tutor_response"] == "Use the adjugate or row reduction."

    resp = await client.get("/api/archives", headers=as_user(tutor))
    assert [s["space_id"] for s in resp.json()["archived_spaces"]] == [space["id"]]

    # the space no longer takes questions
    resp = await client.post(
        "/api/posts/create",
        json={"space_id": space["id"], "question": "One more?"},
        headers=as_user(student),
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_rearchive_needs_force(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    space = await create_space(client, tutor)

    first = await client.post(f"/api/archives/manual/{space['id']}", headers=as_user(tutor))
    again = await client.post(f"/api/archives/manual/{space['id']}", headers=as_user(tutor))
    forced = await client.post(f"/api/archives/manual/{space['id']}", params={"force": "true"}, headers=as_user(tutor))

    assert first.status_code == 200
    assert again.status_code == 409
    assert forced.status_code == 200
    assert forced.json()["session"]["session_id"] == first.json()["session"]["session_id"]


@pytest.mark.asyncio
async def test_status_change_to_archived_creates_snapshot(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    space = await create_space(client, tutor)

    resp = await client.post(
        "/api/space/status",
        json={"space_id": space["id"], "status": "archived"},
        headers=as_user(tutor),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "archived"

    resp = await client.get("/api/archives", headers=as_user(tutor))
    assert len(resp.json()["archived_spaces"]) == 1


@pytest.mark.asyncio
async def test_anonymous_participant_can_ask_and_reply(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    space = await create_space(client, tutor)

    resp = await client.post(
        "/api/space/join-anonymous",
        json={"space_code": space["code"], "nickname": "Owl", "email": "Owl@Example.com"},
    )
    assert resp.status_code == 200
    token = resp.json()["session_token"]
    again = await client.post(
        "/api/space/join-anonymous",
        json={"space_code": space["code"], "nickname": "Owl", "email": "owl@example.com"},
    )
    assert again.json()["session_token"] == token

    headers = {"x-participant-token": token}
    resp = await client.post("/api/posts/create", json={"space_id": space["id"], "question": "Is 0 even?"}, headers=headers)
    assert resp.status_code == 200
    post = resp.json()
    assert post["student_nickname"] == "Owl"
    assert post["participant_id"] is not None

    resp = await client.post("/api/posts/reply", json={"post_id": post["id"], "content": "Yes, it is."}, headers=as_user(tutor))
    reply = resp.json()
    resp = await client.post("/api/posts/reply/like", json={"reply_id": reply["id"]}, headers=headers)
    assert resp.json()["like_count"] == 1
    resp = await client.post("/api/posts/reply/like", json={"reply_id": reply["id"]}, headers=headers)
    assert resp.json()["like_count"] == 1

    resp = await client.get("/api/posts/detail", params={"post_id": post["id"]}, headers=headers)
    [stored_reply] = resp.json()["replies"]
    assert stored_reply["like_count"] == 1
    assert stored_reply["liked_by_me"] is True

    resp = await client.get("/api/posts/list", params={"space_id": space["id"]}, headers={"x-participant-token": "bogus"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_posts_sorted_by_difficulty_or_time(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    space = await factory.space(tutor)
    await factory.join(space, student)
    easy = await factory.post(space, student, "easy", score=10)
    hard = await factory.post(space, student, "hard", score=90)
    medium = await factory.post(space, student, "medium", score=50, answered_by=tutor)

    resp = await client.get("/api/posts/list", params={"space_id": space.id}, headers=as_user(student))
    assert [p["id"] for p in resp.json()["posts"]] == [hard.id, medium.id, easy.id]

    resp = await client.get("/api/posts/list", params={"space_id": space.id, "sort": "time"}, headers=as_user(student))
    assert {p["id"] for p in resp.json()["posts"]} == {easy.id, hard.id, medium.id}

    resp = await client.get("/api/posts/unanswered", params={"space_id": space.id}, headers=as_user(tutor))
    assert [p["id"] for p in resp.json()["posts"]] == [hard.id, easy.id]

    resp = await client.get("/api/posts/list", params={"space_id": space.id, "sort": "random"}, headers=as_user(student))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_only_the_author_edits_and_ranking_fields_stay(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    other = await factory.user()
    space = await factory.space(tutor)
    for user in (student, other):
        await factory.join(space, user)
    post = await factory.post(space, student, "Original", score=42, level="medium")

    resp = await client.post("/api/posts/update", json={"post_id": post.id, "question": "Hijacked"}, headers=as_user(other))
    assert resp.status_code == 403

    resp = await client.post(
        "/api/posts/update",
        json={"post_id": post.id, "question": "Reworded", "difficulty_score": 1},
        headers=as_user(student),
    )
    assert resp.status_code == 200
    assert resp.json()["question"] == "Reworded"
    assert resp.json()["difficulty_score"] == 42

    resp = await client.post("/api/posts/delete", json={"post_id": post.id}, headers=as_user(other))
    assert resp.status_code == 403
    resp = await client.post("/api/posts/delete", json={"post_id": post.id}, headers=as_user(tutor))
    assert resp.status_code == 200
    resp = await client.get("/api/posts/detail", params={"post_id": post.id}, headers=as_user(student))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_non_members_and_strangers_are_refused(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    space = await factory.space(tutor)

    resp = await client.post("/api/posts/create", json={"space_id": space.id, "question": "Hi?"}, headers=as_user(student))
    assert resp.status_code == 403

    resp = await client.post("/api/posts/create", json={"space_id": space.id, "question": "Hi?"})
    assert resp.status_code == 401

    resp = await client.post("/api/space/create", json={"name": "Nope", **window()}, headers=as_user(student))
    assert resp.status_code == 403

    resp = await client.get("/api/space/info", params={"space_id": space.id}, headers={"x-user-id": "999"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_bearer_token_identifies_the_user(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    token = jwt.encode({"sub": str(tutor.id)}, "test-secret", algorithm="HS256")

    resp = await client.get("/api/space/mine", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200

    resp = await client.get("/api/space/mine", headers={"Authorization": f"Bearer {token}", "x-user-id": str(tutor.id + 1)})
    assert resp.status_code == 403

    resp = await client.get("/api/space/mine", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_archive_access_is_scoped(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    rival = await factory.user(UserRole.TUTOR)
    admin = await factory.user(UserRole.ADMIN)
    student = await factory.user()
    now = datetime.utcnow()
    await factory.space(tutor, start=now - timedelta(hours=3), end=now - timedelta(hours=1))

    resp = await client.post("/api/archives/trigger", headers=as_user(student))
    assert resp.status_code == 403
    resp = await client.post("/api/archives/trigger", headers=as_user(admin))
    assert resp.json()["count"] == 1

    [summary] = (await client.get("/api/archives", headers=as_user(tutor))).json()["archived_spaces"]
    assert (await client.get("/api/archives", headers=as_user(rival))).json()["archived_spaces"] == []
    resp = await client.get(f"/api/archives/{summary['session_id']}", headers=as_user(rival))
    assert resp.status_code == 404
    resp = await client.get("/api/archives/424242", headers=as_user(admin))
    assert resp.status_code == 404

    resp = await client.delete(f"/api/archives/{summary['session_id']}", headers=as_user(tutor))
    assert resp.status_code == 403
    resp = await client.delete(f"/api/archives/{summary['session_id']}", headers=as_user(admin))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_space_with_posts_cannot_be_deleted(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    space = await factory.space(tutor)
    empty = await factory.space(tutor)
    await factory.post(space, student)

    resp = await client.post("/api/space/delete", json={"space_id": space.id}, headers=as_user(tutor))
    assert resp.status_code == 409
    resp = await client.post("/api/space/delete", json={"space_id": empty.id}, headers=as_user(tutor))
    assert resp.status_code == 200
    resp = await client.get(f"/api/space/code/{empty.code}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_expired_space_cannot_be_joined(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    now = datetime.utcnow()
    space = await factory.space(tutor, start=now - timedelta(hours=3), end=now - timedelta(minutes=1))

    resp = await client.post("/api/space/join", json={"space_code": space.code}, headers=as_user(student))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_deleting_an_archived_space_keeps_its_archive(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    space = await create_space(client, tutor)
    resp = await client.post(f"/api/archives/manual/{space['id']}", headers=as_user(tutor))
    session_id = resp.json()["session"]["session_id"]

    resp = await client.post("/api/space/delete", json={"space_id": space["id"]}, headers=as_user(tutor))
    assert resp.status_code == 200

    resp = await client.get("/api/archives", headers=as_user(tutor))
    assert [s["session_id"] for s in resp.json()["archived_spaces"]] == [session_id]
    resp = await client.get(f"/api/archives/{session_id}", headers=as_user(tutor))
    assert resp.status_code == 200
    assert resp.json()["data"]["space"]["code"] == space["code"]

    # a new space never takes over the deleted space's id
    fresh = await create_space(client, tutor)
    assert fresh["id"] != space["id"]
    resp = await client.post(f"/api/archives/manual/{fresh['id']}", headers=as_user(tutor))
    assert resp.status_code == 200
    assert resp.json()["session"]["session_id"] != session_id


@pytest.mark.asyncio
async def test_knowledge_and_session_summaries_are_for_tutors(client, factory):
    tutor = await factory.user(UserRole.TUTOR)
    student = await factory.user()
    space = await factory.space(tutor)
    await factory.join(space, student)
    await factory.post(space, student, "What is a basis?", score=40, level="medium",
                       points=[{"topic": "Linear algebra", "concept": "Basis"}])
    await factory.post(space, student, "Why is det(AB) = det(A)det(B)?", score=80, level="very_hard",
                       points=[{"topic": "Linear algebra", "concept": "Determinant"}])

    resp = await client.get("/api/posts/knowledge-summary", params={"space_id": space.id}, headers=as_user(student))
    assert resp.status_code == 403
    resp = await client.get("/api/posts/knowledge-summary", params={"space_id": space.id}, headers=as_user(tutor))
    assert resp.status_code == 200
    body = resp.json()
    assert body["topics"] == [{"topic": "Linear algebra", "concepts": ["Basis", "Determinant"], "post_count": 2}]
    assert body["summary"] == "**Linear algebra**: Basis, Determinant"

    resp = await client.post("/api/space/summary", json={"space_id": space.id}, headers=as_user(student))
    assert resp.status_code == 403
    resp = await client.post("/api/space/summary", json={"space_id": space.id}, headers=as_user(tutor))
    assert resp.status_code == 200
    body = resp.json()
    assert body["post_count"] == 2
    assert body["source"] == "local"
    assert "- Why is det(AB) = det(A)det(B)?" in body["summary"]

    empty = await factory.space(tutor)
    resp = await client.get("/api/posts/knowledge-summary", params={"space_id": empty.id}, headers=as_user(tutor))
    assert resp.json()["summary"] == "No knowledge points identified yet."
