"""Tests for policy versioning and the append-only Policy Store."""

import threading
from datetime import datetime

import pytest

from matrix_kernel.errors import InvalidVersionError, PolicyIntegrityError, VersionExistsError
from matrix_kernel.models.matrix import (
    Attribute,
    AttributeType,
    DecisionMatrix,
    EqualityCondition,
    Rule,
    RuleAction,
)
from matrix_kernel.policy.store import PolicyStore
from matrix_kernel.policy.versioning import (
    latest_version,
    next_minor_version,
    parse_version,
    sort_versions,
)


def _make_matrix(version: str = "1.0", rules=None) -> DecisionMatrix:
    return DecisionMatrix(
        version=version,
        created_at=datetime(2024, 1, 1),
        created_by="test",
        description=f"Matrix {version}",
        attributes=[
            Attribute(
                name="frequency",
                type=AttributeType.CATEGORICAL,
                possible_values=["daily", "weekly", "monthly"],
            ),
        ],
        rules=rules if rules is not None else [
            Rule(
                rule_id="daily-rpa",
                name="Daily work is RPA",
                conditions=[EqualityCondition(attribute="frequency", operator="==", value="daily")],
                action=RuleAction(type="override", target_category="RPA"),
            ),
        ],
    )


class TestVersioning:
    def test_numeric_not_lexicographic(self):
        assert latest_version(["1.9", "1.10"]) == "1.10"
        assert latest_version(["1.9", "1.10", "2.0"]) == "2.0"

    def test_sort_descending_by_default(self):
        assert sort_versions(["1.9", "2.0", "1.10", "1.10.1"]) == ["2.0", "1.10.1", "1.10", "1.9"]
        assert sort_versions(["1.10", "1.9"], descending=False) == ["1.9", "1.10"]

    def test_parse_pads_patch(self):
        assert parse_version("1.2") == (1, 2, 0)
        assert parse_version("1.2.3") == (1, 2, 3)

    @pytest.mark.parametrize("bad", ["1", "v1.0", "1.0-beta", "", "1..2"])
    def test_invalid_versions(self, bad):
        with pytest.raises(InvalidVersionError):
            parse_version(bad)

    def test_next_minor_drops_patch(self):
        assert next_minor_version("1.0") == "1.1"
        assert next_minor_version("1.9") == "1.10"
        assert next_minor_version("1.2.5") == "1.3"


class TestPolicyStore:
    def test_empty_store(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        assert store.get_latest() is None
        assert store.list_versions() == []
        assert (tmp_path / "decision-matrix").is_dir()
        assert (tmp_path / "prompts").is_dir()

    def test_save_and_get(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        store.save_version(_make_matrix("1.0"))
        loaded = store.get_version("1.0")
        assert loaded == _make_matrix("1.0")
        assert (tmp_path / "decision-matrix" / "v1.0.json").exists()

    def test_missing_version_is_none(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        assert store.get_version("3.0") is None

    def test_invalid_version_lookup(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        with pytest.raises(InvalidVersionError):
            store.get_version("../secrets")

    def test_latest_uses_numeric_order(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        for version in ["1.9", "2.0", "1.10"]:
            store.save_version(_make_matrix(version))
        assert store.list_versions() == ["2.0", "1.10", "1.9"]
        assert store.get_latest().version == "2.0"

    def test_append_only(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        store.save_version(_make_matrix("1.0"))
        with pytest.raises(VersionExistsError) as exc_info:
            store.save_version(_make_matrix("1.0", rules=[]))
        assert exc_info.value.version == "1.0"
        # The stored v1.0 is untouched
        assert len(store.get_version("1.0").rules) == 1

    def test_numerically_equal_version_rejected(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        store.save_version(_make_matrix("1.0"))
        with pytest.raises(VersionExistsError):
            store.save_version(_make_matrix("1.0.0", rules=[]))
        assert store.list_versions() == ["1.0"]
        assert len(store.get_latest().rules) == 1

    def test_integrity_enforced_on_write(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        broken = _make_matrix("1.0", rules=[
            Rule(
                rule_id="r1",
                name="Unknown attribute",
                conditions=[EqualityCondition(attribute="mood", operator="==", value="grim")],
                action=RuleAction(type="flag_review"),
            ),
        ])
        with pytest.raises(PolicyIntegrityError):
            store.save_version(broken)
        assert store.list_versions() == []

    def test_index_rebuilt_on_reopen(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        store.save_version(_make_matrix("1.0"))
        store.save_version(_make_matrix("1.1"))
        store.save_prompt("greeting", "hello")

        reopened = PolicyStore(str(tmp_path))
        assert reopened.list_versions() == ["1.1", "1.0"]
        assert reopened.get_prompt("greeting") == "hello"

    def test_no_temp_files_left(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        store.save_version(_make_matrix("1.0"))
        names = [p.name for p in (tmp_path / "decision-matrix").iterdir()]
        assert names == ["v1.0.json"]

    def test_concurrent_writes_same_version(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        outcomes = []

        def write():
            try:
                store.save_version(_make_matrix("1.0"))
                outcomes.append("saved")
            except VersionExistsError:
                outcomes.append("exists")

        threads = [threading.Thread(target=write) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("saved") == 1
        assert outcomes.count("exists") == 7

    def test_concurrent_writes_different_versions(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        threads = [
            threading.Thread(target=store.save_version, args=(_make_matrix(f"1.{i}"),))
            for i in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.list_versions()) == 10
        assert store.get_latest().version == "1.9"


class TestPromptTemplates:
    def test_versions_auto_increment(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        assert store.save_prompt("learning-suggestion", "first") == "1.0"
        assert store.save_prompt("learning-suggestion", "second") == "1.1"
        assert store.get_prompt("learning-suggestion") == "second"
        assert store.get_prompt("learning-suggestion", "1.0") == "first"
        assert store.list_prompt_versions("learning-suggestion") == ["1.1", "1.0"]
        assert (tmp_path / "prompts" / "learning-suggestion-v1.1.txt").exists()

    def test_explicit_version(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        assert store.save_prompt("p", "body", version="2.0") == "2.0"
        with pytest.raises(VersionExistsError):
            store.save_prompt("p", "other", version="2.0")
        with pytest.raises(VersionExistsError):
            store.save_prompt("p", "other", version="2.0.0")
        assert store.list_prompt_versions("p") == ["2.0"]

    def test_unknown_prompt(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        assert store.get_prompt("nope") is None
        assert store.get_prompt("nope", "1.0") is None

    def test_invalid_prompt_id(self, tmp_path):
        store = PolicyStore(str(tmp_path))
        with pytest.raises(ValueError):
            store.save_prompt("../escape", "body")
