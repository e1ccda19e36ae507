"""Tests for metadata providers."""
import json
import threading

import pytest
import yaml

from resolver.provider import (
    CachingProvider,
    Candidate,
    ChainProvider,
    IndexSnapshotProvider,
    LocalPathProvider,
    MetadataProvider,
    load_snapshot,
)
from resolver.solver import Solver
from versioning.errors import UnknownPackage
from versioning.models import (
    DEFAULT_SOURCE,
    GitSource,
    IndexSource,
    PackageName,
    PackageVersion,
    PathSource,
    WorkspaceMember,
)
from versioning.parser import parse_requirement
from workspace.graph import build_requirement_graph

SNAPSHOT = {
    "packages": {
        "Requests": {
            "2.31.0": {"requires": ["idna>=2.5", "colorama ; sys_platform == 'win32'"], "extras": {"socks": ["PySocks"]}},
            "2.30.0": None,
        },
    },
    "indexes": {"internal": {"corp-lib": {"1.0": {}}}},
    "git": [
        {"url": "https://example.com/lib.git", "rev": "v1", "name": "lib", "version": "1.0"},
        {"url": "https://example.com/lib.git", "rev": "v2", "name": "lib", "version": "2.0"},
    ],
    "path": [{"path": "vendor/util", "name": "util", "version": "0.1"}],
}


def name(text):
    return PackageName.parse(text)


class CountingProvider(MetadataProvider):
    """Counts fetches per package."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = {}
        self.lock = threading.Lock()

    def fetch_candidates(self, pkg, source):
        with self.lock:
            self.calls[str(pkg)] = self.calls.get(str(pkg), 0) + 1
        return self.inner.fetch_candidates(pkg, source)


class TestIndexSnapshotProvider:
    """Serving packages from a frozen snapshot."""

    def test_versions_and_lazy_requirements(self):
        provider = IndexSnapshotProvider(SNAPSHOT)
        candidates = provider.fetch_candidates(name("requests"), DEFAULT_SOURCE)
        assert sorted(str(c.version) for c in candidates) == ["2.30.0", "2.31.0"]
        latest = max(candidates, key=lambda c: c.version)
        assert not latest.is_loaded
        assert [str(r.name) for r in latest.requirements] == ["idna", "colorama"]
        assert [str(r.name) for r in latest.extra_requirements["socks"]] == ["pysocks"]
        assert latest.is_loaded

    def test_environment_filters_markers(self):
        provider = IndexSnapshotProvider(SNAPSHOT, environment={"sys_platform": "linux"})
        latest = max(provider.fetch_candidates(name("requests"), DEFAULT_SOURCE), key=lambda c: c.version)
        assert [str(r.name) for r in latest.requirements] == ["idna"]

    def test_named_index(self):
        provider = IndexSnapshotProvider(SNAPSHOT)
        assert len(provider.fetch_candidates(name("corp-lib"), IndexSource("internal"))) == 1
        with pytest.raises(UnknownPackage):
            provider.fetch_candidates(name("corp-lib"), DEFAULT_SOURCE)

    def test_git_revisions(self):
        provider = IndexSnapshotProvider(SNAPSHOT)
        pinned = provider.fetch_candidates(name("lib"), GitSource("https://example.com/lib.git", "v2"))
        assert [str(c.version) for c in pinned] == ["2.0"]
        assert len(provider.fetch_candidates(name("lib"), GitSource("https://example.com/lib.git"))) == 2

    def test_path_entries(self):
        provider = IndexSnapshotProvider(SNAPSHOT)
        found = provider.fetch_candidates(name("util"), PathSource("./vendor/util"))
        assert [str(c.version) for c in found] == ["0.1"]

    def test_unknown_package(self):
        with pytest.raises(UnknownPackage):
            IndexSnapshotProvider(SNAPSHOT).fetch_candidates(name("nope"), DEFAULT_SOURCE)

    @pytest.mark.parametrize("suffix", [".json", ".yaml"])
    def test_from_file(self, tmp_path, suffix):
        path = tmp_path / f"index{suffix}"
        if suffix == ".json":
            path.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
        else:
            path.write_text(yaml.safe_dump(SNAPSHOT), encoding="utf-8")
        provider = IndexSnapshotProvider.from_file(str(path))
        assert len(provider.fetch_candidates(name("requests"), DEFAULT_SOURCE)) == 2

    def test_from_toml_file(self, tmp_path):
        path = tmp_path / "index.toml"
        path.write_text('[packages.six."1.16.0"]\nrequires = []\n', encoding="utf-8")
        provider = IndexSnapshotProvider.from_file(str(path))
        assert [str(c.version) for c in provider.fetch_candidates(name("six"), DEFAULT_SOURCE)] == ["1.16.0"]

    def test_bad_snapshot_file(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_snapshot(str(path))


class TestLocalPathProvider:
    """Serving path dependencies from their pyproject.toml."""

    def _write_project(self, root):
        project = root / "libs" / "util"
        project.mkdir(parents=True)
        (project / "pyproject.toml").write_text(
            '[project]\nname = "Util"\nversion = "0.3.0"\n'
            'dependencies = ["idna>=3"]\n'
            '[project.optional-dependencies]\nfast = ["orjson"]\n',
            encoding="utf-8",
        )

    def test_reads_project(self, tmp_path):
        self._write_project(tmp_path)
        provider = LocalPathProvider(str(tmp_path))
        [candidate] = provider.fetch_candidates(name("util"), PathSource("libs/util"))
        assert candidate.version == PackageVersion("0.3.0")
        assert [str(r.name) for r in candidate.requirements] == ["idna"]
        assert [str(r.name) for r in candidate.extra_requirements["fast"]] == ["orjson"]

    def test_name_mismatch(self, tmp_path):
        self._write_project(tmp_path)
        with pytest.raises(UnknownPackage):
            LocalPathProvider(str(tmp_path)).fetch_candidates(name("other"), PathSource("libs/util"))

    def test_missing_project(self, tmp_path):
        with pytest.raises(UnknownPackage):
            LocalPathProvider(str(tmp_path)).fetch_candidates(name("util"), PathSource("libs/util"))


class TestChainAndCache:
    """Routing and memoization."""

    def test_chain_routes_by_source(self, tmp_path):
        TestLocalPathProvider()._write_project(tmp_path)
        chain = ChainProvider([LocalPathProvider(str(tmp_path)), IndexSnapshotProvider(SNAPSHOT)])
        assert chain.fetch_candidates(name("util"), PathSource("libs/util"))[0].version == PackageVersion("0.3.0")
        assert len(chain.fetch_candidates(name("requests"), DEFAULT_SOURCE)) == 2

    def test_cache_memoizes_results_and_errors(self):
        counting = CountingProvider(IndexSnapshotProvider(SNAPSHOT))
        cache = CachingProvider(counting)
        first = cache.fetch_candidates(name("requests"), DEFAULT_SOURCE)
        assert cache.fetch_candidates(name("requests"), DEFAULT_SOURCE) is first
        for _ in range(2):
            with pytest.raises(UnknownPackage):
                cache.fetch_candidates(name("nope"), DEFAULT_SOURCE)
        assert counting.calls == {"requests": 1, "nope": 1}

    def test_prefetch_warms_cache(self):
        counting = CountingProvider(IndexSnapshotProvider(SNAPSHOT))
        cache = CachingProvider(counting, workers=2)
        try:
            cache.prefetch([(name("requests"), DEFAULT_SOURCE), (name("nope"), DEFAULT_SOURCE)])
            candidates = cache.fetch_candidates(name("requests"), DEFAULT_SOURCE)
            assert all(c.is_loaded for c in candidates)
            with pytest.raises(UnknownPackage):
                cache.fetch_candidates(name("nope"), DEFAULT_SOURCE)
            assert counting.calls == {"requests": 1, "nope": 1}
        finally:
            cache.close()

    @pytest.mark.parametrize("workers", [0, 2])
    def test_bad_snapshot_version_fails_the_same_with_prefetch(self, workers):
        provider = CachingProvider(IndexSnapshotProvider({"packages": {"a": {"not a version": {}}}}), workers=workers)
        graph = build_requirement_graph([WorkspaceMember(id="m1", root_requirements=(parse_requirement("a"),))])
        try:
            with pytest.raises(UnknownPackage) as excinfo:
                Solver(provider).solve(graph)
        finally:
            provider.close()
        assert excinfo.value.required_by == ["m1"]

    def test_prefetch_without_workers_is_noop(self):
        counting = CountingProvider(IndexSnapshotProvider(SNAPSHOT))
        CachingProvider(counting).prefetch([(name("requests"), DEFAULT_SOURCE)])
        assert counting.calls == {}


def test_candidate_loader_runs_once():
    calls = []

    def loader():
        calls.append(1)
        return (), {}

    candidate = Candidate(name("x"), PackageVersion("1.0"), DEFAULT_SOURCE, loader=loader)
    assert candidate.requirements == ()
    assert candidate.extra_requirements == {}
    assert len(calls) == 1
