# tests/test_sharing.py — Board members, invite links and role-based access
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import update

from models import BoardInvite, utcnow
from tests.conftest import get_auth_headers


@pytest_asyncio.fixture
async def board(client: AsyncClient, test_user):
    headers = get_auth_headers(test_user)
    board = (await client.post("/api/v1/boards", json={"name": "Shared"}, headers=headers)).json()
    await client.post(
        f"/api/v1/boards/{board['id']}/categories",
        json={"name": "Work", "create_default_columns": True},
        headers=headers,
    )
    columns = (await client.get(f"/api/v1/boards/{board['id']}/columns", headers=headers)).json()
    return {
        "id": board["id"],
        "url": f"/api/v1/boards/{board['id']}",
        "todo": next(c["id"] for c in columns if c["name"] == "To Do"),
        "headers": headers,
    }


async def invite(client, board, **body):
    resp = await client.post(f"{board['url']}/invites", json=body, headers=board["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()


async def join(client, token, user):
    return await client.post(f"/api/v1/invites/{token}/join", headers=get_auth_headers(user))


@pytest.mark.asyncio
async def test_join_via_invite(client: AsyncClient, board, other_user):
    created = await invite(client, board, role="editor")
    assert created["role"] == "editor"
    assert created["usage_count"] == 0

    resp = await join(client, created["token"], other_user)
    assert resp.status_code == 200
    assert resp.json() == {"board_id": board["id"], "board_name": "Shared", "role": "editor"}

    members = (await client.get(f"{board['url']}/members", headers=board["headers"])).json()
    assert [(m["email"], m["role"]) for m in members] == [("other@taskboard.dev", "editor")]

    invites = (await client.get(f"{board['url']}/invites", headers=board["headers"])).json()
    assert invites[0]["usage_count"] == 1


@pytest.mark.asyncio
async def test_shared_board_listed_with_role(client: AsyncClient, board, other_user):
    await join(client, (await invite(client, board))["token"], other_user)

    boards = (await client.get("/api/v1/boards", headers=get_auth_headers(other_user))).json()
    assert [(b["id"], b["role"]) for b in boards] == [(board["id"], "viewer")]

    detail = (await client.get(board["url"], headers=get_auth_headers(other_user))).json()
    assert detail["role"] == "viewer"

    own = (await client.get(board["url"], headers=board["headers"])).json()
    assert own["role"] == "owner"


@pytest.mark.asyncio
async def test_viewer_reads_but_cannot_write(client: AsyncClient, board, other_user):
    task = (await client.post(
        f"{board['url']}/tasks", json={"title": "seed", "column_id": board["todo"]},
        headers=board["headers"],
    )).json()
    await join(client, (await invite(client, board))["token"], other_user)
    viewer = get_auth_headers(other_user)

    assert (await client.get(f"{board['url']}/tasks", headers=viewer)).status_code == 200
    assert (await client.get(f"{board['url']}/columns", headers=viewer)).status_code == 200
    assert (await client.get(f"{board['url']}/activity", headers=viewer)).status_code == 200

    writes = [
        client.post(f"{board['url']}/tasks", json={"title": "x", "column_id": board["todo"]}, headers=viewer),
        client.patch(f"{board['url']}/tasks/{task['id']}", json={"title": "y"}, headers=viewer),
        client.post(f"{board['url']}/tasks/{task['id']}/comments", json={"content": "hi"}, headers=viewer),
        client.post(f"{board['url']}/columns", json={"name": "Extra"}, headers=viewer),
        client.post(f"{board['url']}/sessions", headers=viewer),
    ]
    for request in writes:
        resp = await request
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Read-only access"

    still = (await client.get(f"{board['url']}/tasks/{task['id']}", headers=board["headers"])).json()
    assert still["title"] == "seed"


@pytest.mark.asyncio
async def test_editor_can_write_but_not_manage(client: AsyncClient, board, other_user):
    await join(client, (await invite(client, board, role="editor"))["token"], other_user)
    editor = get_auth_headers(other_user)

    resp = await client.post(
        f"{board['url']}/tasks", json={"title": "from editor", "column_id": board["todo"]}, headers=editor,
    )
    assert resp.status_code == 201
    assert (await client.post(f"{board['url']}/sessions", headers=editor)).status_code == 201

    assert (await client.patch(board["url"], json={"name": "Mine"}, headers=editor)).status_code == 403
    assert (await client.delete(board["url"], headers=editor)).status_code == 403
    assert (await client.post(f"{board['url']}/invites", json={}, headers=editor)).status_code == 403
    assert (await client.get(f"{board['url']}/invites", headers=editor)).status_code == 403


@pytest.mark.asyncio
async def test_owner_changes_member_role(client: AsyncClient, board, other_user):
    await join(client, (await invite(client, board))["token"], other_user)
    member_url = f"{board['url']}/members/{other_user.id}"

    resp = await client.patch(member_url, json={"role": "editor"}, headers=board["headers"])
    assert resp.status_code == 200
    assert resp.json()["role"] == "editor"

    resp = await client.post(
        f"{board['url']}/labels", json={"name": "urgent"}, headers=get_auth_headers(other_user),
    )
    assert resp.status_code == 201

    resp = await client.patch(member_url, json={"role": "admin"}, headers=board["headers"])
    assert resp.status_code == 422

    resp = await client.patch(
        member_url, json={"role": "viewer"}, headers=get_auth_headers(other_user),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_update_unknown_member_is_404(client: AsyncClient, board, other_user):
    resp = await client.patch(
        f"{board['url']}/members/{other_user.id}", json={"role": "editor"}, headers=board["headers"],
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_remove_member(client: AsyncClient, board, other_user, third_user):
    token = (await invite(client, board))["token"]
    await join(client, token, other_user)
    await join(client, token, third_user)

    # A member cannot remove someone else
    resp = await client.delete(
        f"{board['url']}/members/{third_user.id}", headers=get_auth_headers(other_user),
    )
    assert resp.status_code == 403

    resp = await client.delete(f"{board['url']}/members/{other_user.id}", headers=board["headers"])
    assert resp.status_code == 200
    assert (await client.get(board["url"], headers=get_auth_headers(other_user))).status_code == 403

    # Leaving on one's own
    resp = await client.delete(
        f"{board['url']}/members/{third_user.id}", headers=get_auth_headers(third_user),
    )
    assert resp.status_code == 200
    assert (await client.get(f"{board['url']}/members", headers=board["headers"])).json() == []


@pytest.mark.asyncio
async def test_unknown_token_is_404(client: AsyncClient, other_user):
    resp = await join(client, "no-such-token", other_user)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_expired_invite_rejected(client: AsyncClient, board, other_user, db_session):
    created = await invite(client, board, expires_in_days=7)
    await db_session.execute(
        update(BoardInvite).where(BoardInvite.id == created["id"]).values(expires_at=utcnow() - timedelta(hours=1))
    )
    await db_session.commit()

    resp = await join(client, created["token"], other_user)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invite has expired"


@pytest.mark.asyncio
async def test_exhausted_invite_rejected(client: AsyncClient, board, other_user, third_user):
    created = await invite(client, board, usage_limit=1)
    assert (await join(client, created["token"], other_user)).status_code == 200

    # Joining again as an existing member does not use up the invite
    again = await join(client, created["token"], other_user)
    assert again.status_code == 200
    assert again.json()["role"] == "viewer"

    resp = await join(client, created["token"], third_user)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invite usage limit reached"


@pytest.mark.asyncio
async def test_owner_joining_keeps_owner_role(client: AsyncClient, board, test_user):
    created = await invite(client, board)
    resp = await join(client, created["token"], test_user)
    assert resp.json()["role"] == "owner"
    assert (await client.get(f"{board['url']}/members", headers=board["headers"])).json() == []


@pytest.mark.asyncio
async def test_revoked_invite_no_longer_joins(client: AsyncClient, board, other_user):
    created = await invite(client, board)
    resp = await client.delete(f"{board['url']}/invites/{created['id']}", headers=board["headers"])
    assert resp.status_code == 200
    assert (await join(client, created["token"], other_user)).status_code == 404


@pytest.mark.asyncio
async def test_outsider_has_no_access(client: AsyncClient, board, other_user):
    outsider = get_auth_headers(other_user)
    assert (await client.get(f"{board['url']}/members", headers=outsider)).status_code == 403
    assert (await client.post(f"{board['url']}/invites", json={}, headers=outsider)).status_code == 403


@pytest.mark.asyncio
async def test_invite_validation(client: AsyncClient, board):
    for body in ({"usage_limit": 0}, {"expires_in_days": 0}, {"role": "owner"}):
        resp = await client.post(f"{board['url']}/invites", json=body, headers=board["headers"])
        assert resp.status_code == 422
