import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.core.errors import VersionConflict
from app.models.asset import Asset, AssetStatus
from app.models.asset_share import AssetShare
from app.models.upload_ticket import UploadTicket
from app.services.versioning import apply_versioned_update
from conftest import START, auth, parse_ts


def test_versioned_update_requires_matching_version(db):
    asset = Asset(
        owner_id="alice",
        filename="a.png",
        mime_type="image/png",
        size_bytes=3,
        storage_path="private/alice/a.png",
        status=AssetStatus.uploading,
        version=0,
    )
    db.add(asset)
    db.commit()

    later = START + timedelta(minutes=5)
    updated = apply_versioned_update(db, asset_id=asset.id, expected_version=0, now=later, filename="b.png")
    db.commit()
    assert updated.version == 1
    assert updated.filename == "b.png"

    with pytest.raises(VersionConflict):
        apply_versioned_update(db, asset_id=asset.id, expected_version=0, now=later, filename="c.png")
    db.rollback()

    fresh = db.get(Asset, asset.id, populate_existing=True)
    assert fresh.version == 1
    assert fresh.filename == "b.png"


def test_successive_mutations_increase_version_by_one(ctx, ready_asset):
    asset = ready_asset()
    aid = asset["id"]
    version = asset["version"]
    assert version == 1

    steps = [
        lambda v: ctx.client.patch(f"/assets/{aid}", json={"filename": "a.pdf", "expected_version": v}, headers=auth("alice")),
        lambda v: ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": True, "expected_version": v}, headers=auth("alice")),
        lambda v: ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": False, "expected_version": v}, headers=auth("alice")),
        lambda v: ctx.client.delete(f"/assets/{aid}/shares/bob", params={"expected_version": v}, headers=auth("alice")),
        lambda v: ctx.client.patch(f"/assets/{aid}", json={"filename": "b.pdf", "expected_version": v}, headers=auth("alice")),
    ]
    for step in steps:
        ctx.clock.advance(1)
        stale = step(version - 1)
        assert stale.status_code == 409
        r = ctx.client.get(f"/assets/{aid}", headers=auth("alice"))
        assert r.json()["version"] == version

        r = step(version)
        assert r.status_code == 200, r.text
        assert r.json()["version"] == version + 1
        assert parse_ts(r.json()["updated_at"]) == ctx.clock.now
        version += 1


def test_rename_sanitizes_and_checks_owner(ctx, ready_asset):
    asset = ready_asset()
    aid = asset["id"]

    r = ctx.client.patch(f"/assets/{aid}", json={"filename": "../x/New Name.pdf", "expected_version": 1}, headers=auth("bob"))
    assert r.status_code == 403

    r = ctx.client.patch(f"/assets/{aid}", json={"filename": "../x/New Name.pdf", "expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 200
    assert r.json()["filename"] == "New-Name.pdf"
    # The stored object path does not move.
    with ctx.session_factory() as db:
        assert db.get(Asset, uuid.UUID(aid)).storage_path.endswith("-My-Report.pdf")


def test_rename_unknown_asset(ctx):
    r = ctx.client.patch(f"/assets/{uuid.uuid4()}", json={"filename": "a.pdf", "expected_version": 0}, headers=auth("alice"))
    assert r.status_code == 404


def test_share_upserts_single_row_per_grantee(ctx, ready_asset):
    aid = ready_asset()["id"]
    r = ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": False, "expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 200
    r = ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": True, "expected_version": 2}, headers=auth("alice"))
    assert r.status_code == 200

    with ctx.session_factory() as db:
        rows = list(db.scalars(select(AssetShare).where(AssetShare.asset_id == uuid.UUID(aid))))
        assert len(rows) == 1
        assert rows[0].grantee_id == "bob"
        assert rows[0].can_download is True
        assert rows[0].granted_by == "alice"


def test_share_rules(ctx, ready_asset):
    aid = ready_asset()["id"]

    r = ctx.client.put(f"/assets/{aid}/shares/alice", json={"can_download": True, "expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 400

    r = ctx.client.put(f"/assets/{aid}/shares/carol", json={"can_download": True, "expected_version": 1}, headers=auth("bob"))
    assert r.status_code == 403

    r = ctx.client.delete(f"/assets/{aid}/shares/carol", params={"expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"


def test_stale_share_writes_nothing(ctx, ready_asset):
    aid = ready_asset()["id"]
    r = ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": True, "expected_version": 0}, headers=auth("alice"))
    assert r.status_code == 409
    with ctx.session_factory() as db:
        assert db.scalar(select(func.count()).select_from(AssetShare)) == 0


def test_delete_with_stale_version_keeps_everything(ctx, ready_asset):
    aid = ready_asset()["id"]
    r = ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": True, "expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 200

    r = ctx.client.delete(f"/assets/{aid}", params={"expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 409

    with ctx.session_factory() as db:
        assert db.get(Asset, uuid.UUID(aid)) is not None
        assert db.get(UploadTicket, uuid.UUID(aid)) is not None
        assert db.scalar(select(func.count()).select_from(AssetShare)) == 1


def test_delete_removes_asset_ticket_shares_and_object(ctx, ready_asset):
    asset = ready_asset()
    aid = asset["id"]
    r = ctx.client.put(f"/assets/{aid}/shares/bob", json={"can_download": True, "expected_version": 1}, headers=auth("alice"))
    assert r.status_code == 200

    r = ctx.client.delete(f"/assets/{aid}", params={"expected_version": 2}, headers=auth("bob"))
    assert r.status_code == 403

    r = ctx.client.delete(f"/assets/{aid}", params={"expected_version": 2}, headers=auth("alice"))
    assert r.status_code == 204

    r = ctx.client.get(f"/assets/{aid}", headers=auth("alice"))
    assert r.status_code == 404
    with ctx.session_factory() as db:
        assert db.get(UploadTicket, uuid.UUID(aid)) is None
        assert db.scalar(select(func.count()).select_from(AssetShare)) == 0
    assert len(ctx.storage.deleted) == 1
    assert ctx.storage.deleted[0].startswith("private/alice/")
