"""
Tests for image reference parsing
"""

import pytest

from deployment.types import DeploymentRequest, ImageRef
from utils.image_ref import is_valid_repository, is_valid_tag, registry_for, split_image_reference


class TestSplitImageReference:
    """split_image_reference()"""

    @pytest.mark.parametrize("reference,expected", [
        ("nginx", ("nginx", None)),
        ("nginx:1.25", ("nginx", "1.25")),
        ("ghcr.io/org/app:latest", ("ghcr.io/org/app", "latest")),
        ("registry.example.com:5000/app", ("registry.example.com:5000/app", None)),
        ("registry.example.com:5000/app:v1", ("registry.example.com:5000/app", "v1")),
        ("app@sha256:abcdef", ("app@sha256:abcdef", None)),
        ("  be:1  ", ("be", "1")),
    ])
    def test_split(self, reference, expected):
        assert split_image_reference(reference) == expected

    def test_trailing_colon_means_no_tag(self):
        assert split_image_reference("be:") == ("be", None)


class TestValidation:
    """Tag and repository grammar"""

    @pytest.mark.parametrize("tag", ["1", "1.4.0", "v2_rc-1", "latest", "0123456789ab", "a" * 128])
    def test_valid_tags(self, tag):
        assert is_valid_tag(tag)

    @pytest.mark.parametrize("tag", ["", None, ".hidden", "-dash", "has space", "a/b", "a" * 129])
    def test_invalid_tags(self, tag):
        assert not is_valid_tag(tag)

    @pytest.mark.parametrize("repository", ["be", "org/app", "ghcr.io/org/app", "localhost:5000/my-app"])
    def test_valid_repositories(self, repository):
        assert is_valid_repository(repository)

    @pytest.mark.parametrize("repository", ["", "Upper", "bad repo", "app/", "/app"])
    def test_invalid_repositories(self, repository):
        assert not is_valid_repository(repository)


class TestRegistryFor:
    """registry_for()"""

    @pytest.mark.parametrize("repository,registry", [
        ("nginx", "docker.io"),
        ("library/nginx", "docker.io"),
        ("ghcr.io/user/app", "ghcr.io"),
        ("registry.example.com:5000/app", "registry.example.com:5000"),
        ("localhost/app", "localhost"),
    ])
    def test_registry(self, repository, registry):
        assert registry_for(repository) == registry


class TestImageRefType:
    """ImageRef / DeploymentRequest helpers"""

    def test_parse(self):
        image = ImageRef.parse("ghcr.io/org/app:1.0", runtime_user="app", build_context="./app")
        assert image == ImageRef("ghcr.io/org/app", "1.0", "app", "./app")
        assert image.reference == "ghcr.io/org/app:1.0"

    def test_reference_without_tag(self):
        assert ImageRef("be").reference == "be"

    def test_request_dedupes_images_keeping_order(self):
        request = DeploymentRequest.create(
            branch="main",
            images=[ImageRef("fe", "1"), ImageRef("be", "1"), ImageRef("fe", "1", "other"), ImageRef("fe", "2")],
        )
        assert [image.reference for image in request.images] == ["fe:1", "be:1", "fe:2"]
        assert request.images[0].runtime_user == ""
