"""Tests for the container schema (driftwatch/schemas/container.py)."""

import pytest

from driftwatch.exceptions import ContainerValidationError
from driftwatch.schemas.container import (
    flatten,
    full_name,
    result_changed,
    unflatten,
    validate,
)


class TestValidate:
    """Tests for validation and derived fields."""

    def test_defaults(self, make_container):
        container = validate(make_container())
        assert container.display_name == "app"
        assert container.display_icon == "mdi:docker"
        assert container.result is None

    def test_missing_required_field(self, make_container):
        document = make_container()
        del document["image"]["name"]
        with pytest.raises(ContainerValidationError):
            validate(document)

    def test_strict_types(self, make_container):
        with pytest.raises(ContainerValidationError):
            validate(make_container(image={"tag": {"semver": "yes"}}))
        with pytest.raises(ContainerValidationError):
            validate(make_container(name=42))

    def test_invalid_created_date(self, make_container):
        with pytest.raises(ContainerValidationError):
            validate(make_container(image={"created": "yesterday"}))

    def test_computed_keys_in_input_ignored(self, make_container):
        container = validate(make_container(updateAvailable=True))
        assert container.update_available is False

    def test_link_rendering(self, make_container):
        container = validate(
            make_container(
                linkTemplate="https://example.com/releases/v${major}.${minor}.${patch}",
                result={"tag": "2.0.0"},
            )
        )
        assert container.link == "https://example.com/releases/v1.2.0"
        assert container.result.link == "https://example.com/releases/v2.0.0"

    def test_document_excludes_computed_fields(self, make_container):
        document = validate(make_container(result={"tag": "2.0.0"})).to_document()
        assert "updateAvailable" not in document
        assert "updateKind" not in document
        assert document["image"]["tag"]["value"] == "1.2.0"

    def test_json_dict_includes_computed_fields(self, make_container):
        payload = validate(make_container(result={"tag": "2.0.0"})).to_json_dict()
        assert payload["updateAvailable"] is True
        assert payload["updateKind"]["semverDiff"] == "major"


class TestUpdateAvailable:
    """Tests for update detection."""

    def test_no_result(self, make_container):
        assert validate(make_container()).update_available is False

    def test_same_tag(self, make_container):
        assert validate(make_container(result={"tag": "1.2.0"})).update_available is False

    def test_new_tag(self, make_container):
        container = validate(make_container(result={"tag": "2.0.0"}))
        assert container.update_available is True
        kind = container.update_kind
        assert (kind.kind, kind.local_value, kind.remote_value, kind.semver_diff) == (
            "tag",
            "1.2.0",
            "2.0.0",
            "major",
        )

    def test_digest_update(self, make_container):
        container = validate(
            make_container(
                image={"tag": {"value": "latest", "semver": False}, "digest": {"watch": True, "value": "sha256:old"}},
                result={"tag": "latest", "digest": "sha256:new"},
            )
        )
        assert container.update_available is True
        assert container.update_kind.kind == "digest"
        assert container.update_kind.semver_diff is None

    def test_digest_unchanged(self, make_container):
        container = validate(
            make_container(
                image={"tag": {"value": "latest", "semver": False}, "digest": {"watch": True, "value": "sha256:a"}},
                result={"tag": "latest", "digest": "sha256:a"},
            )
        )
        assert container.update_available is False
        assert container.update_kind.kind == "unknown"

    def test_transformed_tags_compared(self, make_container):
        container = validate(
            make_container(
                transformTags=r"^(\d+\.\d+\.\d+)-.*$ => $1",
                image={"tag": {"value": "1.2.0-ls1"}},
                result={"tag": "1.2.0-ls2"},
            )
        )
        assert container.update_available is False

    def test_recomputed_on_every_read(self, make_container):
        container = validate(make_container(result={"tag": "2.0.0"}))
        container.result.tag = "1.2.0"
        assert validate(container).update_available is False


class TestHelpers:
    """Tests for full_name, result_changed and flatten/unflatten."""

    def test_full_name(self, make_container):
        assert full_name(validate(make_container())) == "local_app"
        assert full_name({"watcher": "remote", "name": "db"}) == "remote_db"

    def test_result_changed(self, make_container):
        previous = validate(make_container(result={"tag": "1.3.0"}))
        same = validate(make_container(result={"tag": "1.3.0"}))
        newer = validate(make_container(result={"tag": "2.0.0"}))
        assert result_changed(None, same) is True
        assert result_changed(previous, same) is False
        assert result_changed(previous, newer) is True

    def test_flatten_keys(self, make_container):
        flat = flatten(validate(make_container(labels={"com.example": "x"}, result={"tag": "2.0.0"})))
        assert flat["image_tag_value"] == "1.2.0"
        assert flat["image_registry_name"] == "hub"
        assert flat["labels_com.example"] == "x"
        assert flat["update_available"] is True
        assert flat["update_kind_kind"] == "tag"

    def test_flatten_round_trip(self, make_container):
        container = validate(
            make_container(
                labels={"com.docker.compose.project": "stack"},
                triggerInclude="ntfy.ops:minor",
                result={"tag": "2.0.0"},
                notification={"message": "Installing", "level": "info"},
            )
        )
        restored = validate(unflatten(flatten(container)))
        assert restored.to_document() == container.to_document()
