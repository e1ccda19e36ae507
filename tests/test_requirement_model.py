"""Tests for package names, versions, sources and requirement parsing."""
import pytest

from versioning.errors import MalformedConstraint
from versioning.models import (
    DEFAULT_SOURCE,
    DEV_GROUP,
    DependencyGroup,
    GitSource,
    IndexSource,
    PackageName,
    PackageVersion,
    PathSource,
    Resolution,
    ResolutionNode,
    source_from_dict,
)
from versioning.parser import parse_requirement, parse_requirements, source_from_url


class TestPackageName:
    """PEP 503 normalization."""

    @pytest.mark.parametrize("raw", ["Foo_Bar", "foo.bar", "FOO-bar", "foo__bar"])
    def test_normalizes(self, raw):
        assert str(PackageName.parse(raw)) == "foo-bar"

    def test_display_does_not_affect_equality(self):
        assert PackageName.parse("Django") == PackageName.parse("django")
        assert PackageName.parse("Django").display == "Django"

    @pytest.mark.parametrize("raw", ["", "-foo", "foo bar", "foo!"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(ValueError):
            PackageName.parse(raw)


class TestPackageVersion:
    """Total ordering over PEP 440 versions."""

    def test_ordering(self):
        versions = [PackageVersion(t) for t in ["1.0", "1.0a1", "1.0.post1", "0.9", "1.0.dev0"]]
        assert [str(x) for x in sorted(versions)] == ["0.9", "1.0.dev0", "1.0a1", "1.0", "1.0.post1"]

    def test_local_label_breaks_ties(self):
        assert PackageVersion("1.0") < PackageVersion("1.0+cpu")
        assert PackageVersion("1.0+cpu") != PackageVersion("1.0")

    def test_normalized_equality(self):
        assert PackageVersion("1.0") == PackageVersion("1.0.0")
        assert hash(PackageVersion("1.0")) == hash(PackageVersion("1.0.0"))


class TestSources:
    """Source identity and config round trips."""

    def test_keys(self):
        assert IndexSource().key() == "index:default"
        assert GitSource("https://h/x.git", "v1").key() == "git:https://h/x.git@v1"
        assert PathSource("./libs/../libs/util").key() == "path:libs/util"

    @pytest.mark.parametrize(
        "source",
        [IndexSource("internal"), GitSource("https://h/x.git"), GitSource("https://h/x.git", "abc"), PathSource("a/b")],
    )
    def test_from_dict(self, source):
        assert source_from_dict(source.to_dict()) == source

    def test_from_dict_rejects_unknown(self):
        with pytest.raises(ValueError):
            source_from_dict({"svn": "x"})

    def test_source_from_url(self):
        assert source_from_url("git+https://github.com/org/lib.git@v1.0") == GitSource(
            "https://github.com/org/lib.git", "v1.0"
        )
        assert source_from_url("file:libs/util", base_dir="members/app") == PathSource("members/app/libs/util")
        with pytest.raises(ValueError):
            source_from_url("https://example.com/pkg.tar.gz")


class TestDependencyGroup:
    """Group parsing and rendering."""

    def test_parse(self):
        assert DependencyGroup.parse("default") == DependencyGroup.default()
        assert DependencyGroup.parse("dev") == DEV_GROUP
        assert DependencyGroup.parse("optional:Socks") == DependencyGroup.optional("socks")
        assert DependencyGroup.parse("socks") == DependencyGroup.optional("socks")

    def test_str(self):
        assert str(DependencyGroup.optional("Test_Extra")) == "optional:test-extra"


class TestParseRequirement:
    """PEP 508 requirement strings."""

    def test_full_requirement(self):
        req = parse_requirement("Requests[Socks]>=2.31,<3 ; python_version>='3.8'")
        assert str(req.name) == "requests"
        assert req.name.display == "Requests"
        assert req.extras == frozenset({"socks"})
        assert req.constraint.canonical() == ">=2.31,<3"
        assert str(req.constraint) == ">=2.31,<3"
        assert req.marker == 'python_version >= "3.8"'
        assert req.source == DEFAULT_SOURCE

    def test_bare_name_is_any(self):
        req = parse_requirement("idna")
        assert req.constraint.is_any()

    def test_git_reference(self):
        req = parse_requirement("lib @ git+https://github.com/org/lib.git@v2")
        assert req.source == GitSource("https://github.com/org/lib.git", "v2")
        assert req.constraint.is_any()

    def test_explicit_source_wins(self):
        req = parse_requirement("util>=1", source=PathSource("libs/util"))
        assert req.source == PathSource("libs/util")

    def test_group_is_attached(self):
        assert parse_requirement("pytest", group=DEV_GROUP).group == DEV_GROUP

    @pytest.mark.parametrize("text", ["", "requests =>2.0", "requests>=", "requests>=1.0,,<2"])
    def test_malformed(self, text):
        with pytest.raises(MalformedConstraint):
            parse_requirement(text)

    def test_parse_requirements_skips_comments(self):
        reqs = parse_requirements(["# header", "", "idna>=3  # inline", "six"])
        assert [str(r.name) for r in reqs] == ["idna", "six"]

    def test_str_round_trips_through_parser(self):
        req = parse_requirement("Flask[async]>=2.0,<3")
        assert parse_requirement(str(req)) == req


class TestResolution:
    """Resolution mapping behaviour."""

    def test_iterates_in_name_order_and_normalizes_lookup(self):
        nodes = {
            PackageName.parse(n): ResolutionNode(PackageName.parse(n), PackageVersion("1.0"), DEFAULT_SOURCE)
            for n in ["zeta", "Alpha"]
        }
        resolution = Resolution(nodes)
        assert [str(n) for n in resolution] == ["alpha", "zeta"]
        assert resolution.version_of("ALPHA") == PackageVersion("1.0")
        assert "Zeta" in resolution
        assert 42 not in resolution
