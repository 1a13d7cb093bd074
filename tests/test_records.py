"""Tests for record create/update/delete and the delete cascades."""

import pytest
from sqlalchemy.exc import OperationalError

import records
from access_control import Forbidden, OwnerPath, SharedPath, ValidationFailed
from overlay import list_records, mark_used, toggle_favorite
from records import create_record, delete_record, delete_user, update_record
from sharing import share_record
from store import SecretRecord, ShareGrant, User


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


# ─── Create ─────────────────────────────────────────────────────────


class TestCreate:
    def test_defaults(self, db, alice):
        record = create_record(db, alice.id, {"title": "Gmail", "username": "a", "password": "p"})
        data = record.to_dict()

        assert data["ownerId"] == alice.id
        assert data["favorite"] is False
        assert data["category"] == "Other"
        assert data["passwordStrength"] == "Good"
        assert data["website"] is None
        assert data["lastUsedAt"] is not None

    def test_client_owner_is_ignored(self, db, alice, bob):
        record = create_record(db, alice.id, {
            "title": "Gmail", "username": "a", "password": "p", "ownerId": bob.id, "id": 999,
        })
        assert record.owner_id == alice.id
        assert record.id != 999

    @pytest.mark.parametrize("missing", ["title", "username", "password"])
    def test_required_fields(self, db, alice, missing):
        fields = {"title": "Gmail", "username": "a", "password": "p"}
        del fields[missing]
        with pytest.raises(ValidationFailed):
            create_record(db, alice.id, fields)

    @pytest.mark.parametrize("field,value", [
        ("category", "Games"),
        ("passwordStrength", "Excellent"),
        ("favorite", "yes"),
        ("title", "   "),
    ])
    def test_invalid_values(self, db, alice, field, value):
        fields = {"title": "Gmail", "username": "a", "password": "p", field: value}
        with pytest.raises(ValidationFailed):
            create_record(db, alice.id, fields)

    @pytest.mark.parametrize("field,limit", [("title", 255), ("username", 255), ("website", 1024)])
    def test_overlong_values_rejected(self, db, alice, field, limit):
        fields = {"title": "Gmail", "username": "a", "password": "p", field: "x" * (limit + 1)}
        with pytest.raises(ValidationFailed, match=f"{field} must be at most {limit} characters"):
            create_record(db, alice.id, fields)
        assert db.query(SecretRecord).count() == 0

    def test_value_at_limit_accepted(self, db, alice):
        record = create_record(db, alice.id, {"title": "t" * 255, "username": "a", "password": "p"})
        assert len(record.title) == 255


# ─── Update ─────────────────────────────────────────────────────────


class TestUpdate:
    def test_partial_update_keeps_other_fields(self, db, alice, make_record):
        record = make_record(alice, "Gmail", website="https://gmail.com")

        updated = update_record(db, OwnerPath(record.id), alice.id, {"title": "Work Gmail"})

        assert updated.title == "Work Gmail"
        assert updated.username == "someone"
        assert updated.website == "https://gmail.com"

    def test_immutable_fields_ignored(self, db, alice, bob, make_record):
        record = make_record(alice)
        created_at = record.to_dict()["createdAt"]

        updated = update_record(db, OwnerPath(record.id), alice.id, {
            "ownerId": bob.id, "owner_id": bob.id, "id": 999, "createdAt": "2000-01-01T00:00:00Z",
        })

        assert updated.id == record.id
        assert updated.owner_id == alice.id
        assert updated.to_dict()["createdAt"] == created_at

    def test_non_owner_rejected_and_record_unchanged(self, db, alice, bob, make_record):
        record = make_record(alice)
        share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        with pytest.raises(Forbidden):
            update_record(db, OwnerPath(record.id), bob.id, {"title": "pwned"})

        assert db.query(SecretRecord).filter(SecretRecord.id == record.id).one().title == "Gmail"

    def test_grant_key_rejected(self, db, alice, bob, make_record):
        record = make_record(alice)
        [outcome] = share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        with pytest.raises(Forbidden):
            update_record(db, SharedPath(outcome.shared_id), bob.id, {"title": "pwned"})

    def test_empty_patch_still_authorizes(self, db, alice, bob, make_record):
        record = make_record(alice)

        assert update_record(db, OwnerPath(record.id), alice.id, {}).id == record.id
        with pytest.raises(Forbidden):
            update_record(db, OwnerPath(record.id), bob.id, {})

    def test_cannot_blank_required_field(self, db, alice, make_record):
        record = make_record(alice)
        with pytest.raises(ValidationFailed):
            update_record(db, OwnerPath(record.id), alice.id, {"password": ""})

    def test_overlong_title_rejected_and_record_unchanged(self, db, alice, make_record):
        record = make_record(alice)
        with pytest.raises(ValidationFailed):
            update_record(db, OwnerPath(record.id), alice.id, {"title": "x" * 5000})
        assert db.query(SecretRecord).filter(SecretRecord.id == record.id).one().title == "Gmail"


# ─── Delete Record ──────────────────────────────────────────────────


class TestDeleteRecord:
    def test_cascades_to_grants(self, db, alice, bob, make_user, make_record):
        carol = make_user("carol")
        record = make_record(alice)
        share_record(db, OwnerPath(record.id), alice.id, [bob.email, carol.email])

        result = delete_record(db, OwnerPath(record.id), alice.id)

        assert result.grants_removed == 2
        assert result.cascade_error is None
        assert db.query(ShareGrant).count() == 0
        assert list_records(db, bob.id)["shared"] == []
        assert list_records(db, carol.id)["shared"] == []
        assert list_records(db, alice.id)["owned"] == []

    def test_deleted_record_not_found_for_anyone(self, db, alice, bob, make_record):
        record = make_record(alice)
        record_id = record.id
        [outcome] = share_record(db, OwnerPath(record_id), alice.id, [bob.email])
        delete_record(db, OwnerPath(record_id), alice.id)

        with pytest.raises(Forbidden):
            toggle_favorite(db, OwnerPath(record_id), alice.id)
        with pytest.raises(Forbidden):
            toggle_favorite(db, SharedPath(outcome.shared_id), bob.id)
        with pytest.raises(Forbidden):
            mark_used(db, SharedPath(outcome.shared_id), bob.id)
        with pytest.raises(Forbidden):
            delete_record(db, OwnerPath(record_id), alice.id)

    def test_non_owner_rejected(self, db, alice, bob, make_record):
        record = make_record(alice)
        [outcome] = share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        with pytest.raises(Forbidden):
            delete_record(db, OwnerPath(record.id), bob.id)
        with pytest.raises(Forbidden):
            delete_record(db, SharedPath(outcome.shared_id), bob.id)
        assert db.query(SecretRecord).count() == 1
        assert db.query(ShareGrant).count() == 1

    def test_cascade_failure_is_reported_not_rolled_back(self, db, alice, bob, make_record, monkeypatch):
        record = make_record(alice)
        [outcome] = share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        def broken_sweep(*args, **kwargs):
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        monkeypatch.setattr(records, "_sweep", broken_sweep)
        result = delete_record(db, OwnerPath(record.id), alice.id)

        assert result.cascade_error is not None
        assert db.query(SecretRecord).count() == 0
        # the leftover grant stays invisible and unusable
        assert db.query(ShareGrant).count() == 1
        assert list_records(db, bob.id)["shared"] == []
        with pytest.raises(Forbidden):
            toggle_favorite(db, SharedPath(outcome.shared_id), bob.id)

    def test_cascade_retry_is_harmless(self, db, alice, make_record):
        record_id = make_record(alice).id
        delete_record(db, OwnerPath(record_id), alice.id)

        assert records._sweep(db, ShareGrant.password_id == record_id) == 0


# ─── Delete User ────────────────────────────────────────────────────


class TestDeleteUser:
    def test_removes_owned_records_and_their_grants(self, db, alice, bob, make_record):
        record = make_record(alice)
        share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        alice_id = alice.id
        result = delete_user(db, alice_id)

        assert result.cascade_error is None
        assert db.query(User).filter(User.id == alice_id).count() == 0
        assert db.query(SecretRecord).count() == 0
        assert list_records(db, bob.id)["shared"] == []

    def test_removes_grants_received(self, db, alice, bob, make_record):
        record = make_record(alice)
        share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        result = delete_user(db, bob.id)

        assert result.grants_removed == 1
        assert db.query(ShareGrant).count() == 0
        assert [r["id"] for r in list_records(db, alice.id)["owned"]] == [record.id]

    def test_unknown_user(self, db):
        with pytest.raises(Forbidden):
            delete_user(db, 31337)

    def test_cascade_failure_reported(self, db, alice, bob, make_record, monkeypatch):
        record = make_record(alice)
        share_record(db, OwnerPath(record.id), alice.id, [bob.email])

        def broken_sweep(*args, **kwargs):
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        monkeypatch.setattr(records, "_sweep", broken_sweep)
        alice_id = alice.id
        result = delete_user(db, alice_id)

        assert result.cascade_error is not None
        assert db.query(User).filter(User.id == alice_id).count() == 0
