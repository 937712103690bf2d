"""Tests for folding per-file findings into the certificate registry."""

from certctl import buildRegistry, mergeFindings, unique


def test_unique_keeps_first_occurrence():
    assert unique(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


def test_unique_is_case_sensitive():
    assert unique(["A.example.com", "a.example.com"]) == [
        "A.example.com",
        "a.example.com",
    ]


class TestMergeFindings:
    def test_new_identity(self):
        assert mergeFindings({}, ["site"], ["a.com", "b.com", "a.com"]) == {
            "site": ("a.com", "b.com")
        }

    def test_does_not_modify_input(self):
        registry = {"site": ("a.com",)}
        merged = mergeFindings(registry, ["site"], ["b.com"])

        assert registry == {"site": ("a.com",)}
        assert merged == {"site": ("a.com", "b.com")}

    def test_untouched_identities_kept(self):
        registry = {"other": ("x.com",)}
        merged = mergeFindings(registry, ["site"], ["a.com"])
        assert merged == {"other": ("x.com",), "site": ("a.com",)}

    def test_every_identity_in_file_gets_the_names(self):
        merged = mergeFindings({}, ["rsa-site", "ecc-site"], ["a.com"])
        assert merged == {"rsa-site": ("a.com",), "ecc-site": ("a.com",)}

    def test_identity_without_names(self):
        assert mergeFindings({}, ["site"], []) == {"site": ()}

    def test_merge_equals_dedupe_of_concatenation(self):
        first = ["b.com", "a.com", "b.com"]
        second = ["c.com", "a.com", "d.com"]

        merged = mergeFindings(mergeFindings({}, ["s"], first), ["s"], second)
        assert list(merged["s"]) == unique(first + second)


class TestBuildRegistry:
    def test_first_seen_order_across_files(self):
        registry = buildRegistry(
            [
                (["site"], ["www.example.com", "example.com"]),
                (["other"], ["other.org"]),
                (["site"], ["example.com", "shop.example.com"]),
            ]
        )

        assert list(registry) == ["site", "other"]
        assert registry["site"] == ("www.example.com", "example.com", "shop.example.com")
        assert registry["other"] == ("other.org",)

    def test_files_without_certificates_contribute_nothing(self):
        registry = buildRegistry([([], ["plain-http.example.com"])])
        assert registry == {}

    def test_empty(self):
        assert buildRegistry([]) == {}

    def test_same_input_same_registry(self):
        findings = [(["a"], ["x.com", "y.com"]), (["b", "a"], ["z.com"])]
        assert buildRegistry(findings) == buildRegistry(findings)
