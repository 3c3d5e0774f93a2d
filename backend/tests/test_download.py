import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import app.services.access as access_service
from app.models.download_audit import DownloadAudit
from conftest import START, auth, make_settings, parse_ts


def _download(ctx, asset_id, subject, **headers):
    return ctx.client.get(f"/assets/{asset_id}/download-url", headers={**auth(subject), **headers})


def _audit_rows(ctx):
    with ctx.session_factory() as db:
        return list(db.scalars(select(DownloadAudit)))


def test_owner_gets_short_lived_url_and_audit_row(ctx, ready_asset):
    asset = ready_asset()
    r = _download(ctx, asset["id"], "alice", **{"X-Request-ID": "req-123"})
    assert r.status_code == 200, r.text

    body = r.json()
    assert body["url"].startswith("https://storage.test/download/private/alice/")
    assert body["url"].endswith("?ttl=90")
    assert parse_ts(body["expires_at"]) == START + timedelta(seconds=90)

    rows = _audit_rows(ctx)
    assert len(rows) == 1
    assert rows[0].asset_id == uuid.UUID(asset["id"])
    assert rows[0].subject_id == "alice"
    assert rows[0].request_id == "req-123"
    assert rows[0].ip == "testclient"


def test_every_download_appends_an_audit_row(ctx, ready_asset):
    asset = ready_asset()
    for _ in range(3):
        assert _download(ctx, asset["id"], "alice").status_code == 200
    assert len(_audit_rows(ctx)) == 3


def test_stranger_is_forbidden(ctx, ready_asset):
    asset = ready_asset()
    r = _download(ctx, asset["id"], "mallory")
    assert r.status_code == 403
    assert r.json()["error_code"] == "forbidden"
    assert r.json()["context"]["reason"] == "no_share"
    assert _audit_rows(ctx) == []


def test_share_without_download_permission_is_forbidden(ctx, ready_asset):
    asset = ready_asset()
    r = ctx.client.put(
        f"/assets/{asset['id']}/shares/bob",
        json={"can_download": False, "expected_version": 1},
        headers=auth("alice"),
    )
    assert r.status_code == 200

    r = _download(ctx, asset["id"], "bob")
    assert r.status_code == 403
    assert r.json()["context"]["reason"] == "download_not_permitted"

    # Read access still holds.
    assert ctx.client.get(f"/assets/{asset['id']}", headers=auth("bob")).status_code == 200


def test_grantee_with_download_permission_gets_url(ctx, ready_asset):
    asset = ready_asset()
    r = ctx.client.put(
        f"/assets/{asset['id']}/shares/bob",
        json={"can_download": True, "expected_version": 1},
        headers=auth("alice"),
    )
    assert r.status_code == 200

    r = _download(ctx, asset["id"], "bob")
    assert r.status_code == 200
    rows = _audit_rows(ctx)
    assert [row.subject_id for row in rows] == ["bob"]

    # Revoking takes effect on the next request.
    r = ctx.client.delete(f"/assets/{asset['id']}/shares/bob", params={"expected_version": 2}, headers=auth("alice"))
    assert r.status_code == 200
    assert _download(ctx, asset["id"], "bob").status_code == 403


def test_asset_that_is_not_ready_has_no_url(ctx, create_slot):
    slot = create_slot("alice")
    r = _download(ctx, slot["asset_id"], "alice")
    assert r.status_code == 400
    assert r.json()["error_code"] == "bad_request"
    assert r.json()["context"]["status"] == "uploading"


def test_authorization_is_checked_before_status(ctx, create_slot):
    slot = create_slot("alice")
    r = _download(ctx, slot["asset_id"], "mallory")
    assert r.status_code == 403


def test_unknown_asset_is_not_found(ctx):
    r = _download(ctx, uuid.uuid4(), "alice")
    assert r.status_code == 404


def test_audit_failure_does_not_fail_the_download(ctx, ready_asset, monkeypatch):
    asset = ready_asset()

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO download_audit", {}, Exception("disk full"))

    monkeypatch.setattr(access_service, "record_download", broken)
    r = _download(ctx, asset["id"], "alice")
    assert r.status_code == 200
    assert r.json()["url"].startswith("https://storage.test/download/")
    assert _audit_rows(ctx) == []


def test_audit_rows_survive_asset_deletion(ctx, ready_asset):
    asset = ready_asset()
    assert _download(ctx, asset["id"], "alice").status_code == 200
    r = ctx.client.delete(f"/assets/{asset['id']}", params={"expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 204
    assert len(_audit_rows(ctx)) == 1


def test_download_ttl_is_clamped():
    assert make_settings(DOWNLOAD_URL_TTL_SECONDS="10").download_ttl == 90
    assert make_settings(DOWNLOAD_URL_TTL_SECONDS="100").download_ttl == 100
    assert make_settings(DOWNLOAD_URL_TTL_SECONDS="3600").download_ttl == 120
