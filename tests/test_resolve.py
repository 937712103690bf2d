"""Tests for turning server_name lines into domain names."""

import pytest

from certctl import (
    AmbiguousMarkupError,
    ServerNameLine,
    isCertifiable,
    resolveServerNames,
    scanConfig,
)


def resolve(*lines):
    return resolveServerNames(scanConfig(lines).serverNames, "site.conf")


class TestPlainNames:
    def test_order_kept(self):
        assert resolve(
            "server_name b.example.com a.example.com;",
            "server_name c.example.com;",
        ) == ["b.example.com", "a.example.com", "c.example.com"]

    def test_repeats_kept(self):
        assert resolve(
            "server_name a.example.com;", "server_name a.example.com;"
        ) == ["a.example.com", "a.example.com"]

    def test_regex_names_dropped(self):
        assert resolve(
            r"server_name ~^(?<sub>.+)\.example\.com$ www.example.com;"
        ) == ["www.example.com"]

    @pytest.mark.parametrize(
        "name", ["_", '""', "127.0.0.1", "::1", "[2001:db8::1]", "~.*"]
    )
    def test_uncertifiable_names(self, name):
        assert not isCertifiable(name)

    @pytest.mark.parametrize("name", ["example.com", "*.example.com", "localhost"])
    def test_certifiable_names(self, name):
        assert isCertifiable(name)


class TestMarkers:
    def test_block_on_one_line(self):
        # first name opens, second name closes with the same tag
        assert resolve(
            "server_name a.example.com b.example.com; # certbot_domain:*.example.com"
        ) == ["*.example.com"]

    def test_block_across_lines(self):
        assert resolve(
            "server_name a.example.com; # certbot_domain:*.example.com",
            "server_name b.example.com c.example.com;",
            "server_name d.example.com; # certbot_domain:*.example.com",
            "server_name other.org;",
        ) == ["*.example.com", "other.org"]

    def test_names_inside_block_suppressed_even_if_regex(self):
        assert resolve(
            "server_name a.example.com; # certbot_domain:*.example.com",
            "server_name ~^x;",
            "server_name b.example.com; # certbot_domain:*.example.com",
        ) == ["*.example.com"]

    def test_reopened_block_emits_again(self):
        assert resolve(
            "server_name foo.example.com bar.example.com; # certbot_domain:*.example.com",
            "server_name baz.example.com; # certbot_domain:*.example.com",
        ) == ["*.example.com", "*.example.com"]

    def test_different_marker_while_open(self):
        with pytest.raises(AmbiguousMarkupError) as info:
            resolve(
                "server_name a.example.com; # certbot_domain:*.example.com",
                "server_name b.example.org; # certbot_domain:*.example.org",
            )

        assert info.value.path == "site.conf"
        assert info.value.lineno == 2
        assert info.value.openMarker == "*.example.com"
        assert info.value.marker == "*.example.org"
        assert "site.conf:2" in str(info.value)

    def test_different_marker_after_close(self):
        assert resolve(
            "server_name a.example.com b.example.com; # certbot_domain:*.example.com",
            "server_name a.example.org b.example.org; # certbot_domain:*.example.org",
        ) == ["*.example.com", "*.example.org"]

    def test_state_does_not_leak_between_calls(self):
        opened = [ServerNameLine(1, ["a.example.com"], "*.example.com")]
        assert resolveServerNames(opened) == ["*.example.com"]
        assert resolveServerNames([ServerNameLine(1, ["b.example.com"], "")]) == [
            "b.example.com"
        ]
