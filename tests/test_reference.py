"""Tests for image reference parsing."""

import pytest

from reference import ImageReference, is_valid_digest, local_archive, parse_reference

DIGEST = "sha256:" + "ef" * 32


class TestParseReference:
    """Tests for parse_reference function."""

    def test_qualified_with_tag(self):
        ref = parse_reference("docker.io/library/centos:8")

        assert ref.domain == "docker.io"
        assert ref.path == "library/centos"
        assert ref.tag == "8"
        assert str(ref) == "docker.io/library/centos:8"

    def test_unqualified(self):
        ref = parse_reference("centos:latest")

        assert ref.domain == ""
        assert ref.path == "centos"
        assert ref.tag == "latest"

    def test_first_component_without_dot_is_path(self):
        ref = parse_reference("shop/web")

        assert ref.domain == ""
        assert ref.path == "shop/web"

    def test_registry_with_port(self):
        ref = parse_reference("mirror.local:5000/ns1/web")

        assert ref.domain == "mirror.local:5000"
        assert ref.path == "ns1/web"
        assert ref.tag == ""

    def test_localhost(self):
        assert parse_reference("localhost/web").domain == "localhost"

    def test_digest(self):
        ref = parse_reference(f"quay.io/shop/web@{DIGEST}")

        assert ref.digest == DIGEST
        assert str(ref) == f"quay.io/shop/web@{DIGEST}"

    def test_docker_prefix(self):
        assert parse_reference("docker://quay.io/shop/web:1") == parse_reference(
            "quay.io/shop/web:1"
        )

    def test_archive(self):
        ref = parse_reference("docker-archive:/tmp/image.tar")

        assert ref.is_local
        assert ref.path == "/tmp/image.tar"

    @pytest.mark.parametrize(
        "text",
        ["", "docker://", "Shop/Web", "quay.io/shop/web@sha256:zz", "quay.io/shop/web:", "docker-archive:"],
    )
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_reference(text)


class TestImageReference:
    """Tests for ImageReference class."""

    def test_with_domain(self):
        ref = parse_reference("shop/web:1").with_domain("docker.io")

        assert str(ref) == "docker.io/shop/web:1"

    def test_with_digest_drops_tag(self):
        ref = parse_reference("quay.io/shop/web:1").with_digest(DIGEST)

        assert ref.tag == ""
        assert str(ref) == f"quay.io/shop/web@{DIGEST}"

    def test_with_invalid_digest(self):
        with pytest.raises(ValueError):
            parse_reference("quay.io/shop/web").with_digest("nope")

    def test_transport_names(self):
        assert parse_reference("quay.io/shop/web:1").transport_name() == "docker://quay.io/shop/web:1"
        assert local_archive("/tmp/x.tar").transport_name() == "docker-archive:/tmp/x.tar"

    def test_name(self):
        assert ImageReference(path="shop/web", domain="quay.io", tag="1").name == "quay.io/shop/web"


class TestIsValidDigest:
    """Tests for is_valid_digest function."""

    def test_valid(self):
        assert is_valid_digest(DIGEST)

    @pytest.mark.parametrize("value", ["", "sha256:", "sha256:xyz", "abc", None, 42])
    def test_invalid(self, value):
        assert not is_valid_digest(value)
