"""Tests for memorial create/edit/delete and location shaping."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

import memorials
from errors import NotFound, PermissionDenied, ServiceError, ValidationError
from location import LocationSelection
from memorials import ImageUpload, MemorialChanges, MemorialForm, build_location
from models import Memorial

NYC = LocationSelection(latitude=40.712776, longitude=-74.005974, address="New York, NY")


def _images(n):
    return [ImageUpload(filename=f"photo{i}.jpg", data=b"jpeg-bytes-%d" % i) for i in range(n)]


def _create(db, store, user, images=0, **form):
    selection = form.pop("selection", None)
    form.setdefault("name", "In memory of Maria")
    return memorials.create_memorial(db, store, user, MemorialForm(**form), selection, _images(images))


class TestBuildLocation:
    def test_public_with_selection(self):
        assert build_location(True, NYC) == {
            "latitude": 40.712776,
            "longitude": -74.005974,
            "address": "New York, NY",
            "position_key": "40.71278,-74.00597",
        }

    def test_public_without_selection_rejected(self):
        with pytest.raises(ValidationError):
            build_location(True, None)

    def test_private_never_keeps_coordinates(self):
        assert build_location(False, NYC) == {
            "latitude": None, "longitude": None, "address": None, "position_key": None,
        }

    def test_public_keeps_existing_location(self):
        existing = {"latitude": 1.0, "longitude": 2.0, "address": "Here", "position_key": "1.00000,2.00000"}
        assert build_location(True, None, existing=existing) == existing


class TestCreate:
    def test_creates_private_memorial(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=2, birth_date="1950-01-01",
                           song_link="https://youtu.be/abc123")

        assert memorial.memorial_id is not None
        assert memorial.owner_id == "alice"
        assert memorial.owner_display_name == "Alice"
        assert memorial.model_ref == "jabami_anime_tree_v2.glb"
        assert memorial.is_public is False
        assert memorial.location is None
        assert memorial.created_at is not None
        assert len(memorial.images) == 2
        assert memorial.images == store.uploaded
        assert all(url.startswith("/media/memorials/alice/") for url in memorial.images)

    def test_display_name_falls_back_to_email_local_part(self, db_session, store, bob):
        assert _create(db_session, store, bob).owner_display_name == "bob.smith"

    def test_five_images_accepted(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=5)
        assert len(memorial.images) == 5

    def test_six_images_rejected_without_upload(self, db_session, store, alice):
        with pytest.raises(ValidationError):
            _create(db_session, store, alice, images=6)
        assert store.uploaded == []
        assert db_session.query(Memorial).count() == 0

    def test_public_without_location_rejected_before_upload(self, db_session, store, alice):
        with pytest.raises(ValidationError):
            _create(db_session, store, alice, images=1, is_public=True)
        assert store.uploaded == []
        assert db_session.query(Memorial).count() == 0

    def test_private_drops_selection(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, is_public=False, selection=NYC)
        assert memorial.latitude is None
        assert memorial.position_key is None

    def test_public_with_location(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, is_public=True, selection=NYC)
        assert memorial.location["address"] == "New York, NY"
        assert memorial.location["position_key"] == "40.71278,-74.00597"

    @pytest.mark.parametrize("form", [{"name": "   "}, {"model_ref": "cactus.glb"}])
    def test_invalid_form(self, db_session, store, alice, form):
        with pytest.raises(ValidationError):
            _create(db_session, store, alice, **form)

    def test_failed_upload_removes_earlier_files(self, db_session, store, alice, monkeypatch):
        real_upload = store.upload

        def flaky_upload(path, data):
            if len(store.uploaded) == 1:
                raise ServiceError("disk full")
            return real_upload(path, data)

        monkeypatch.setattr(store, "upload", flaky_upload)
        with pytest.raises(ServiceError):
            _create(db_session, store, alice, images=3)
        assert store.deleted == store.uploaded
        assert db_session.query(Memorial).count() == 0


class TestQueries:
    def test_gallery_is_owner_only_newest_first(self, db_session, store, alice, bob):
        first = _create(db_session, store, alice, name="First")
        second = _create(db_session, store, alice, name="Second")
        _create(db_session, store, bob, name="Bob's")

        assert [m.memorial_id for m in memorials.list_owned(db_session, "alice")] == [
            second.memorial_id, first.memorial_id,
        ]

    def test_public_list(self, db_session, store, alice):
        public = _create(db_session, store, alice, is_public=True, selection=NYC)
        _create(db_session, store, alice)

        assert [m.memorial_id for m in memorials.list_public(db_session)] == [public.memorial_id]

    def test_private_memorial_hidden_from_others(self, db_session, store, alice):
        memorial = _create(db_session, store, alice)

        assert memorials.get_memorial(db_session, memorial.memorial_id, "alice") is memorial
        with pytest.raises(NotFound):
            memorials.get_memorial(db_session, memorial.memorial_id, "bob")
        with pytest.raises(NotFound):
            memorials.get_memorial(db_session, 9999, "alice")

    def test_public_memorial_visible_to_anyone(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, is_public=True, selection=NYC)
        assert memorials.get_memorial(db_session, memorial.memorial_id, None) is memorial


class TestUpdate:
    def test_overwrites_fields(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, birth_date="1950-01-01")
        changes = MemorialChanges(name="Renamed", model_ref="tree_elm.glb", birth_date="")

        updated = memorials.update_memorial(db_session, store, alice, memorial.memorial_id, changes)

        assert updated.name == "Renamed"
        assert updated.model_ref == "tree_elm.glb"
        assert updated.birth_date is None
        assert updated.updated_at is not None

    def test_image_limit_not_reapplied_on_edit(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=5)
        updated = memorials.update_memorial(
            db_session, store, alice, memorial.memorial_id, MemorialChanges(), images=_images(2),
        )
        assert len(updated.images) == 7

    def test_turning_private_clears_location(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, is_public=True, selection=NYC)

        updated = memorials.update_memorial(
            db_session, store, alice, memorial.memorial_id, MemorialChanges(is_public=False), selection=NYC,
        )

        assert updated.is_public is False
        assert updated.location is None

    def test_public_without_any_location_rejected(self, db_session, store, alice):
        memorial = _create(db_session, store, alice)
        with pytest.raises(ValidationError):
            memorials.update_memorial(
                db_session, store, alice, memorial.memorial_id, MemorialChanges(is_public=True), images=_images(1),
            )
        assert store.uploaded == []

    def test_public_edit_keeps_stored_location(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, is_public=True, selection=NYC)
        updated = memorials.update_memorial(
            db_session, store, alice, memorial.memorial_id, MemorialChanges(name="Still public"),
        )
        assert updated.location["address"] == "New York, NY"

    def test_public_edit_with_new_selection(self, db_session, store, alice):
        memorial = _create(db_session, store, alice)
        paris = LocationSelection(latitude=48.8566, longitude=2.3522, address="Paris")

        updated = memorials.update_memorial(
            db_session, store, alice, memorial.memorial_id, MemorialChanges(is_public=True), selection=paris,
        )

        assert updated.location["position_key"] == "48.85660,2.35220"

    def test_other_user_cannot_edit(self, db_session, store, alice, bob):
        memorial = _create(db_session, store, alice)
        with pytest.raises(PermissionDenied):
            memorials.update_memorial(db_session, store, bob, memorial.memorial_id, MemorialChanges(name="x"))

    def test_missing_memorial(self, db_session, store, alice):
        with pytest.raises(NotFound):
            memorials.update_memorial(db_session, store, alice, 404, MemorialChanges(name="x"))


class TestRemoval:
    def test_remove_image(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=2)
        gone, kept = memorial.images

        updated = memorials.remove_image(db_session, store, alice, memorial.memorial_id, gone)

        assert updated.images == [kept]
        assert store.deleted == [gone]

    def test_remove_unknown_image(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=1)
        with pytest.raises(NotFound):
            memorials.remove_image(db_session, store, alice, memorial.memorial_id, "/media/other.jpg")

    def test_delete_cascades_to_images(self, db_session, store, alice):
        memorial = _create(db_session, store, alice, images=3)
        urls = list(memorial.images)
        memorial_id = memorial.memorial_id

        memorials.delete_memorial(db_session, store, alice, memorial_id)

        assert store.deleted == urls
        assert not any((store.root / store.path_for(url)).exists() for url in urls)
        assert db_session.get(Memorial, memorial_id) is None

    def test_failed_delete_keeps_record_and_images(self, db_session, store, alice, monkeypatch):
        memorial = _create(db_session, store, alice, images=2)
        urls = list(memorial.images)
        memorial_id = memorial.memorial_id

        def broken_commit():
            raise OperationalError("DELETE", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", broken_commit)
        with pytest.raises(ServiceError):
            memorials.delete_memorial(db_session, store, alice, memorial_id)
        monkeypatch.undo()

        assert store.deleted == []
        assert all((store.root / store.path_for(url)).exists() for url in urls)
        assert db_session.get(Memorial, memorial_id).images == urls

    def test_delete_by_other_user_rejected(self, db_session, store, alice, bob):
        memorial = _create(db_session, store, alice, images=1)
        with pytest.raises(PermissionDenied):
            memorials.delete_memorial(db_session, store, bob, memorial.memorial_id)
        assert store.deleted == []


def test_table_rejects_public_without_location(db_session):
    db_session.add(Memorial(owner_id="alice", name="Tree", model_ref="tree_elm.glb", images=[], is_public=True))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_to_dict(db_session, store, alice):
    memorial = _create(db_session, store, alice, is_public=True, selection=NYC,
                       song_link="https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=1")
    data = memorials.to_dict(memorial)

    assert data["id"] == memorial.memorial_id
    assert data["song_embed_url"] == "https://www.youtube.com/embed/dQw4w9WgXcQ"
    assert data["location"]["position_key"] == "40.71278,-74.00597"
    assert data["model_url"].endswith("/jabami_anime_tree_v2.glb")
