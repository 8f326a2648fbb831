"""Tests for the load/copy synchronizer."""

import pytest

from provider_core.bindings import Shape, copy, load
from provider_core.errors import AttributeWriteError
from provider_core.policy import NormalizationType, ReconciliationPolicy
from provider_core.tree import Kind, StateTree, Value

from sample_resources import COLLECTOR_POLICY, COLLECTOR_SCHEMA, Collector, CollectorDatabase


def server_collector() -> Collector:
    return Collector(
        name="web",
        platform="kubernetes",
        team_id="123",
        data_region="eu-hel-1",
        vrl_transformation=".level = \"info\"",
        ingesting_paused=False,
        logs_retention=0,
        tags=["prod", "eu"],
        custom_bucket=[{"name": "bucket", "endpoint": "https://s3.test"}],
        databases=[CollectorDatabase(id="11", host="db1", port=5432)],
        databases_count=1,
        created_at="2026-01-01T00:00:00Z",
    )


class TestBindings:
    """Tests for binding construction."""

    def test_refs_order_and_shapes(self) -> None:
        refs = Collector().refs()

        assert [b.key for b in refs][:3] == ["name", "platform", "team_id"]
        shapes = {b.key: b.shape for b in refs}
        assert shapes["tags"] is Shape.SCALAR_LIST
        assert shapes["databases"] is Shape.MAP_LIST
        assert shapes["name"] is Shape.SCALAR

    def test_binding_reads_and_writes_its_record(self) -> None:
        record = Collector()
        name = record.refs()[0]

        name.setter("web")

        assert record.name == "web"
        assert name.getter() == "web"


class TestLoad:
    """Tests for tree -> record."""

    def test_loads_only_present_values(self) -> None:
        tree = StateTree(
            {
                "name": "web",
                "ingesting_paused": False,
                "logs_retention": 0,
                "tags": [],
                "platform": None,
                "vrl_transformation": Value.unknown(Kind.STRING),
            }
        )
        record = Collector()

        load(tree, record.refs())

        assert record.to_wire() == {
            "name": "web",
            "ingesting_paused": False,
            "logs_retention": 0,
            "tags": [],
        }

    def test_lists_are_copied(self) -> None:
        tags = ["a", "b"]
        tree = StateTree({"tags": tags})
        record = Collector()

        load(tree, record.refs())
        record.tags.append("c")

        assert tree.value_of("tags") == ["a", "b"]

    def test_map_list_drops_null_entries(self) -> None:
        tree = StateTree({"custom_bucket": [{"name": "b", "endpoint": None}]})
        record = Collector()

        load(tree, record.refs())

        assert record.custom_bucket == [{"name": "b"}]

    def test_only_changed(self) -> None:
        tree = StateTree(
            {"name": "new", "platform": "docker", "logs_retention": 0},
            prior={"name": "old", "platform": "docker", "logs_retention": 30},
        )
        record = Collector()

        load(tree, record.refs(), only_changed=True)

        assert record.to_wire() == {"name": "new", "logs_retention": 0}

    def test_only_changed_with_normalization(self) -> None:
        tree = StateTree(
            {"vrl_transformation": ".a = 1\n.b = 2", "name": "x"},
            prior={"vrl_transformation": ".a = 1  \n.b = 2\n.\n", "name": "x"},
        )
        record = Collector()

        load(tree, record.refs(), only_changed=True, policy=COLLECTOR_POLICY)

        assert record.to_wire() == {}

    def test_type_mismatch_raises(self) -> None:
        tree = StateTree({"logs_retention": "forever"})

        with pytest.raises(AttributeWriteError) as exc_info:
            load(tree, Collector().refs())

        assert exc_info.value.key == "logs_retention"

    def test_shape_mismatch_raises(self) -> None:
        tree = StateTree({"tags": "prod"})

        with pytest.raises(AttributeWriteError, match="expected a list"):
            load(tree, Collector().refs())


class TestCopy:
    """Tests for record -> tree."""

    def test_copies_present_fields(self) -> None:
        tree = StateTree()
        record = Collector(name="web", ingesting_paused=False, tags=["a"])

        errors = copy(tree, record.refs())

        assert errors == []
        assert tree.to_dict() == {"name": "web", "ingesting_paused": False, "tags": ["a"]}

    def test_absent_fields_do_not_overwrite(self) -> None:
        tree = StateTree({"name": "web", "platform": "docker"})

        copy(tree, Collector(name="web").refs())

        assert tree.value_of("platform") == "docker"

    def test_write_order_follows_bindings(self) -> None:
        tree = StateTree()

        copy(tree, server_collector().refs())

        assert list(tree) == [b.key for b in Collector().refs()]

    def test_write_errors_are_collected(self) -> None:
        tree = StateTree(schema={"name": Kind.NUMBER, "platform": Kind.BOOL, "tags": Kind.LIST})
        record = Collector(name="web", platform="docker", tags=["a"])

        errors = copy(tree, record.refs())

        assert [e.key for e in errors] == ["name", "platform"]
        assert tree.value_of("tags") == ["a"]

    def test_nested_items_become_blocks(self) -> None:
        tree = StateTree()

        copy(tree, Collector(databases=[CollectorDatabase(id="11", host="db1")]).refs())

        assert tree.value_of("databases") == [{"id": "11", "host": "db1"}]


class TestCopyPolicy:
    """Tests for policy-driven suppression during copy."""

    def test_write_only_never_written(self) -> None:
        policy = ReconciliationPolicy(write_only_fields=frozenset({"name"}))
        tree = StateTree({"name": "typed-by-user"})

        copy(tree, Collector(name="").refs(), policy)

        assert tree.value_of("name") == "typed-by-user"

    def test_server_derived_kept_once_set(self) -> None:
        tree = StateTree({"data_region": "eu-hel-1"})

        copy(tree, Collector(data_region="germany_1").refs(), COLLECTOR_POLICY)

        assert tree.value_of("data_region") == "eu-hel-1"

    def test_server_derived_filled_when_empty(self) -> None:
        tree = StateTree()

        copy(tree, Collector(data_region="germany_1").refs(), COLLECTOR_POLICY)

        assert tree.value_of("data_region") == "germany_1"

    def test_normalized_equivalent_keeps_user_form(self) -> None:
        tree = StateTree({"vrl_transformation": ".a = 1"})

        copy(tree, Collector(vrl_transformation=".a = 1\n.").refs(), COLLECTOR_POLICY)

        assert tree.value_of("vrl_transformation") == ".a = 1"

    def test_normalized_real_change_written(self) -> None:
        tree = StateTree({"vrl_transformation": ".a = 1"})

        copy(tree, Collector(vrl_transformation=".a = 2").refs(), COLLECTOR_POLICY)

        assert tree.value_of("vrl_transformation") == ".a = 2"

    def test_block_secrets_restored(self) -> None:
        tree = StateTree(
            {"custom_bucket": [{"name": "b", "secret_access_key": "s3cr3t"}]}
        )

        copy(tree, Collector(custom_bucket=[{"name": "b"}]).refs(), COLLECTOR_POLICY)

        assert tree.value_of("custom_bucket") == [{"name": "b", "secret_access_key": "s3cr3t"}]


class TestRoundTrip:
    """Tests for load(copy(r)) reproducing r and copy idempotence."""

    def test_load_after_copy_reproduces_record(self) -> None:
        original = server_collector()
        tree = StateTree(schema=COLLECTOR_SCHEMA)

        assert copy(tree, original.refs(), COLLECTOR_POLICY) == []
        reloaded = Collector()
        load(tree, reloaded.refs())

        assert reloaded.to_wire() == original.to_wire()

    def test_repeated_copy_is_idempotent(self) -> None:
        tree = StateTree(schema=COLLECTOR_SCHEMA)
        copy(tree, server_collector().refs(), COLLECTOR_POLICY)
        first = tree.to_dict()
        first_order = list(tree)

        for _ in range(3):
            copy(tree, server_collector().refs(), COLLECTOR_POLICY)

        assert tree.to_dict() == first
        assert list(tree) == first_order

    @pytest.mark.parametrize(
        "normalization",
        [NormalizationType.SCRIPT, NormalizationType.WHITESPACE_NORMALIZE],
    )
    def test_idempotent_under_server_canonicalization(
        self, normalization: NormalizationType
    ) -> None:
        policy = ReconciliationPolicy(normalized_fields={"vrl_transformation": normalization})
        tree = StateTree({"vrl_transformation": ".a = 1"})

        for _ in range(2):
            copy(tree, Collector(vrl_transformation="  .a = 1  ").refs(), policy)

        assert tree.value_of("vrl_transformation") == ".a = 1"
