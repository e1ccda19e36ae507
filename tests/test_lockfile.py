"""Tests for lock synthesis, serialization and verification."""
import json
import os

import pytest

from lockfile import (
    LockArtifact,
    LockEntry,
    dumps,
    export_requirements,
    is_stale,
    load,
    loads,
    preferred_versions,
    synthesize,
    verify_lock,
    write_lock,
)
from resolver import IndexSnapshotProvider, resolve
from versioning.errors import LockfileError
from versioning.models import (
    DEFAULT_GROUP,
    DEFAULT_SOURCE,
    DEV_GROUP,
    GitSource,
    PackageName,
    PackageVersion,
    PathSource,
    WorkspaceMember,
)
from versioning.parser import parse_requirement
from workspace.graph import build_requirement_graph

PROVIDER_DATA = {
    "packages": {
        "requests": {"2.31.0": {"requires": ["idna>=2.5"]}},
        "idna": {"3.4": {}, "3.6": {}},
    }
}


def member(member_id, *reqs):
    return WorkspaceMember(id=member_id, root_requirements=tuple(parse_requirement(r) for r in reqs))


def locked(*reqs):
    graph, result = resolve([member("app", *reqs)], IndexSnapshotProvider(PROVIDER_DATA))
    return graph, synthesize(result.resolution, graph.requirements_hash(), graph.groups)


def entry(name, version, source=DEFAULT_SOURCE, deps=()):
    return LockEntry(
        name=PackageName.parse(name),
        version=PackageVersion(version),
        resolved_dependencies=tuple(PackageName.parse(d) for d in deps),
        source=source,
    )


class TestSynthesize:
    """Building a lock artifact from a resolution."""

    def test_entries_sorted_with_edges(self):
        graph, lock = locked("requests")
        assert [str(e.name) for e in lock] == ["idna", "requests"]
        assert lock.get("requests").resolved_dependencies == (PackageName.parse("idna"),)
        assert lock.requirements_hash == graph.requirements_hash()
        assert lock.groups == (DEFAULT_GROUP,)

    def test_empty_hash_rejected(self):
        graph, result = resolve([member("app", "idna")], IndexSnapshotProvider(PROVIDER_DATA))
        with pytest.raises(ValueError):
            synthesize(result.resolution, "", graph.groups)


class TestSerialization:
    """Canonical JSON form."""

    def test_document_shape(self):
        _, lock = locked("requests")
        text = dumps(lock)
        assert text.endswith("}\n")
        doc = json.loads(text)
        assert doc["version"] == 1
        assert doc["groups"] == ["default"]
        assert doc["package"][1] == {
            "name": "requests",
            "version": "2.31.0",
            "source": {"index": "default"},
            "resolved_dependencies": ["idna"],
        }
        assert text.index('"groups"') < text.index('"package"') < text.index('"requirements_hash"')

    def test_byte_stable(self):
        assert dumps(locked("requests")[1]) == dumps(locked("requests")[1])

    def test_loads_restores_artifact(self):
        lock = LockArtifact(
            requirements_hash="sha256:abc",
            groups=(DEFAULT_GROUP, DEV_GROUP),
            entries=(
                entry("lib", "1.0", GitSource("https://example.com/lib.git", "v1")),
                entry("util", "0.1", PathSource("libs/util"), deps=["lib"]),
            ),
        )
        assert loads(dumps(lock)) == lock

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[]",
            '{"version": 2, "requirements_hash": "x", "package": []}',
            '{"version": 1, "package": []}',
            '{"version": 1, "requirements_hash": "x", "package": {}}',
            '{"version": 1, "requirements_hash": "x", "package": [{"name": "a"}]}',
            '{"version": 1, "requirements_hash": "x", "package": [{"name": "a", "version": "nope!"}]}',
            '{"version": 1, "requirements_hash": "x", "package": [{"name": "a", "version": "1"}, {"name": "A", "version": "2"}]}',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(LockfileError):
            loads(text)


class TestWriteLock:
    """Atomic writes."""

    def test_write_and_load(self, tmp_path):
        _, lock = locked("requests")
        path = tmp_path / "depsolve.lock"
        write_lock(lock, str(path))
        assert load(str(path)) == lock
        assert os.listdir(tmp_path) == ["depsolve.lock"]

    def test_failed_write_leaves_nothing(self, tmp_path):
        _, lock = locked("requests")
        path = tmp_path / "missing-dir" / "depsolve.lock"
        with pytest.raises(LockfileError):
            write_lock(lock, str(path))
        assert not path.exists()

    def test_failed_write_keeps_previous_lock(self, tmp_path, monkeypatch):
        _, lock = locked("requests")
        path = tmp_path / "depsolve.lock"
        path.write_text("previous", encoding="utf-8")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)
        with pytest.raises(LockfileError):
            write_lock(lock, str(path))
        assert path.read_text(encoding="utf-8") == "previous"
        assert os.listdir(tmp_path) == ["depsolve.lock"]

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(LockfileError):
            load(str(tmp_path / "nope.lock"))


class TestChecks:
    """Staleness, verification, export and preferences."""

    def test_staleness(self):
        graph, lock = locked("requests")
        assert not is_stale(lock, graph.requirements_hash())
        changed = build_requirement_graph([member("app", "requests>=2")])
        assert is_stale(lock, changed.requirements_hash())

    def test_verify_clean(self):
        graph, lock = locked("requests")
        assert verify_lock(lock, graph) == []

    def test_verify_reports_problems(self):
        _, lock = locked("requests")
        graph = build_requirement_graph([member("app", "requests<2", "idna @ git+https://example.com/idna.git", "six")])
        problems = verify_lock(lock, graph)
        assert any("requests==2.31.0 does not satisfy '<2'" in p for p in problems)
        assert any("idna is locked from" in p for p in problems)
        assert any(p.startswith("six is required by app") for p in problems)

    def test_verify_dangling_edge(self):
        lock = LockArtifact("sha256:x", (DEFAULT_GROUP,), (entry("a", "1.0", deps=["b"]),))
        graph = build_requirement_graph([member("app", "a")])
        assert verify_lock(lock, graph) == ["a depends on b, which is not locked"]

    def test_export_requirements(self):
        lock = LockArtifact(
            requirements_hash="sha256:abc",
            groups=(DEFAULT_GROUP,),
            entries=(
                entry("idna", "3.6"),
                entry("lib", "1.0", GitSource("https://example.com/lib.git", "v1")),
                entry("util", "0.1", PathSource("libs/util")),
            ),
        )
        assert export_requirements(lock).splitlines() == [
            "# generated by depsolve",
            "# requirements_hash: sha256:abc",
            "# groups: default",
            "idna==3.6",
            "lib @ git+https://example.com/lib.git@v1",
            "-e file:libs/util",
        ]

    def test_preferred_versions(self):
        _, lock = locked("requests")
        assert preferred_versions(lock) == {
            PackageName.parse("idna"): PackageVersion("3.6"),
            PackageName.parse("requests"): PackageVersion("2.31.0"),
        }
