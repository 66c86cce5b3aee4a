"""Tests for version parsing and the upgrade skew rule."""

import pytest

from machinist.errors import InvalidVersionError, VersionPolicyError
from machinist.utils.versions import (
    check_for_version_jump,
    is_up_or_downgrade,
    is_version_jump,
    less_than,
    node_style_version,
    parse_version,
)


class TestParseVersion:
    def test_with_and_without_prefix(self):
        assert parse_version("v1.15.1") == (1, 15, 1)
        assert parse_version("1.15.1") == (1, 15, 1)

    def test_build_suffix_is_ignored(self):
        assert parse_version("v1.17.5-eks-1") == (1, 17, 5)

    @pytest.mark.parametrize("bad", ["", "1.15", "v1.x.0", "latest", "1.15.1.2"])
    def test_malformed(self, bad):
        with pytest.raises(InvalidVersionError):
            parse_version(bad)


class TestComparisons:
    def test_up_or_downgrade_normalises_prefix(self):
        assert not is_up_or_downgrade("1.15.1", "v1.15.1")
        assert is_up_or_downgrade("v1.14.1", "1.15.1")

    def test_less_than_is_numeric(self):
        assert less_than("v1.9.0", "v1.10.0")
        assert not less_than("v1.10.0", "v1.10.0")

    def test_node_style_version(self):
        assert node_style_version("1.15.1") == "v1.15.1"
        assert node_style_version("v1.15.1") == "v1.15.1"

    @pytest.mark.parametrize(
        "from_version,to_version,expected",
        [
            ("v1.14.1", "v1.14.9", False),
            ("v1.14.1", "v1.15.0", False),
            ("v1.14.1", "v1.16.0", True),
            ("v1.15.0", "v1.14.0", True),
            ("v1.15.0", "v2.0.0", True),
        ],
    )
    def test_is_version_jump(self, from_version, to_version, expected):
        assert is_version_jump(from_version, to_version) is expected


class TestCheckForVersionJump:
    def test_patch_upgrade_allowed(self):
        check_for_version_jump("v1.14.1", "1.14.3")

    def test_single_minor_upgrade_allowed(self):
        check_for_version_jump("v1.14.1", "1.15.1")

    def test_downgrade_rejected(self):
        with pytest.raises(VersionPolicyError, match="downgrade not supported"):
            check_for_version_jump("v1.15.1", "1.14.1")

    def test_multi_minor_jump_rejected(self):
        with pytest.raises(VersionPolicyError, match="single-minor-version"):
            check_for_version_jump("v1.14.1", "1.16.0")
