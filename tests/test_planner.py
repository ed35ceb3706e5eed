"""End-to-end planning tests against the in-memory provider."""

import pytest

from driftplan.analyzer import analyze_plan
from driftplan.errors import CycleError, PlanError, UnresolvedReferenceError
from driftplan.executor import Executor
from driftplan.formatter import format_json
from driftplan.loader import load_text
from driftplan.models import UNKNOWN, Action, InstanceAddress
from driftplan.planner import Planner
from driftplan.providers.memory import InMemoryProvider

CLUSTER = InstanceAddress("cluster", "main")
POOL_0 = InstanceAddress("node_pool", "workers", 0)
POOL_1 = InstanceAddress("node_pool", "workers", 1)


def _apply(config, provider, store, variables=None):
    planner = Planner(config, provider, store, variables)
    plan = planner.plan()
    result = Executor(provider, store, prepare=planner.prepare_attributes).apply(plan)
    assert result.ok
    return plan


def _actions(plan):
    return {str(c.address): c.action for c in plan.changes}


def test_empty_state_creates_everything(cluster_config, provider, store):
    plan = Planner(cluster_config, provider, store).plan()

    assert _actions(plan) == {
        "cluster.main": Action.CREATE,
        "node_pool.workers[0]": Action.CREATE,
        "node_pool.workers[1]": Action.CREATE,
    }
    assert [c.address for c in plan.changes] == [CLUSTER, POOL_0, POOL_1]
    assert plan.dependencies[POOL_0] == {CLUSTER}
    assert plan.dependencies[POOL_1] == {CLUSTER}
    assert plan.get(POOL_0).after["cluster_id"] is UNKNOWN
    assert not plan.is_destructive


def test_planning_does_not_mutate(cluster_config, provider, store):
    Planner(cluster_config, provider, store).plan()
    assert provider.objects == {}
    assert len(store) == 0
    assert store.payload is None


def test_count_index_selects_list_element(cluster_config, provider, store):
    plan = Planner(cluster_config, provider, store).plan()
    assert plan.get(POOL_0).after["machine_type"] == "small"
    assert plan.get(POOL_1).after["machine_type"] == "large"


def test_apply_then_plan_is_empty(cluster_config, provider, store):
    _apply(cluster_config, provider, store)

    cluster_id = store.get(CLUSTER).resource_id
    assert store.get(POOL_0).attributes["cluster_id"] == cluster_id
    assert store.get(POOL_1).dependencies == (CLUSTER,)

    first = Planner(cluster_config, provider, store).plan()
    second = Planner(cluster_config, provider, store).plan()
    assert not first.has_changes
    assert first.changes == second.changes
    assert first.drift == []


def test_immutable_change_on_one_pool_replaces_only_it(cluster_config, provider, store):
    _apply(cluster_config, provider, store)

    plan = Planner(cluster_config, provider, store, {"machine_types": "small, xlarge"}).plan()

    assert _actions(plan) == {
        "cluster.main": Action.NO_OP,
        "node_pool.workers[0]": Action.NO_OP,
        "node_pool.workers[1]": Action.REPLACE,
    }
    assert len(plan.operations) == 1
    assert plan.is_destructive


def test_mutable_change_updates_in_place(provider, store, cluster_text):
    config = load_text(cluster_text)
    _apply(config, provider, store)

    changed = load_text(cluster_text.replace("size: 3", "size: 5"))
    plan = Planner(changed, provider, store).plan()
    assert plan.get(POOL_0).action == Action.UPDATE
    assert plan.get(POOL_1).action == Action.UPDATE

    _apply(changed, provider, store)
    assert provider.read("node_pool", store.get(POOL_0).resource_id)["size"] == 5


def test_ignored_attribute_change_is_no_op(provider, store, cluster_text):
    ignoring = cluster_text.replace(
        "        size: 3\n", "        size: 3\n      lifecycle:\n        ignore_changes: [size]\n"
    )
    _apply(load_text(ignoring), provider, store)

    changed = load_text(ignoring.replace("size: 3", "size: 7"))
    plan = Planner(changed, provider, store).plan()
    assert not plan.has_changes


def test_reduced_count_deletes_orphan(cluster_config, provider, store):
    _apply(cluster_config, provider, store)

    plan = Planner(cluster_config, provider, store, {"pool_count": 1}).plan()
    assert _actions(plan)["node_pool.workers[1]"] == Action.DELETE
    assert plan.dependencies[POOL_1] == {CLUSTER}

    _apply(cluster_config, provider, store, {"pool_count": 1})
    assert POOL_1 not in store
    assert len(provider.objects) == 2


def test_out_of_band_deletion_is_recreated(cluster_config, provider, store):
    _apply(cluster_config, provider, store)
    provider.destroy("node_pool", store.get(POOL_0).resource_id)

    plan = Planner(cluster_config, provider, store).plan()
    assert plan.drift[0].address == POOL_0
    assert plan.drift[0].deleted
    assert plan.get(POOL_0).action == Action.CREATE


def test_mutable_drift_is_reported_and_corrected(cluster_config, provider, store):
    _apply(cluster_config, provider, store)
    provider.objects[("node_pool", store.get(POOL_1).resource_id)]["size"] = 10

    plan = Planner(cluster_config, provider, store).plan()
    assert [c.path for c in plan.drift[0].changes] == ["size"]
    assert plan.get(POOL_1).action == Action.UPDATE
    assert plan.conflicts == []


def test_immutable_drift_is_a_conflict(cluster_config, provider, store):
    _apply(cluster_config, provider, store)
    provider.objects[("cluster", store.get(CLUSTER).resource_id)]["name"] = "renamed"

    plan = Planner(cluster_config, provider, store).plan()
    assert plan.get(CLUSTER).action == Action.CONFLICT
    assert plan.conflicts[0].address == "cluster.main"
    assert plan.conflicts[0].attributes == ["name"]

    forced = Planner(cluster_config, provider, store).plan(replace=[CLUSTER])
    assert forced.conflicts == []
    assert forced.get(CLUSTER).action == Action.REPLACE


def test_no_refresh_skips_provider_reads(cluster_config, provider, store):
    _apply(cluster_config, provider, store)
    provider.objects[("node_pool", store.get(POOL_1).resource_id)]["size"] = 10

    plan = Planner(cluster_config, provider, store).plan(refresh=False)
    assert not plan.has_changes
    assert plan.drift == []


def test_replace_of_unknown_address(cluster_config, provider, store):
    with pytest.raises(UnresolvedReferenceError):
        Planner(cluster_config, provider, store).plan(
            replace=[InstanceAddress("node_pool", "workers", 9)]
        )


def test_destroy_plan_deletes_every_record(cluster_config, provider, store):
    _apply(cluster_config, provider, store)

    plan = Planner(cluster_config, provider, store).plan(destroy=True)
    assert plan.destroy
    assert set(_actions(plan).values()) == {Action.DELETE}
    assert plan.dependencies[POOL_0] == {CLUSTER}


def test_prevent_destroy_blocks_destructive_plans(provider, store, cluster_text):
    protected = cluster_text.replace(
        "        region: ${var.region}\n",
        "        region: ${var.region}\n      lifecycle:\n        prevent_destroy: true\n",
    )
    config = load_text(protected)
    _apply(config, provider, store)

    with pytest.raises(PlanError, match="prevent_destroy"):
        Planner(config, provider, store).plan(destroy=True)
    with pytest.raises(PlanError, match="cluster.main"):
        Planner(config, provider, store).plan(replace=[CLUSTER])


def test_cycle_is_rejected_before_provider_calls(provider, store):
    config = load_text(
        """
resources:
  bucket:
    a:
      attributes: {peer: "${bucket.b.id}"}
    b:
      attributes: {peer: "${bucket.a.id}"}
"""
    )
    with pytest.raises(CycleError):
        Planner(config, provider, store)


def test_data_sources_are_read_during_plan(store):
    provider = InMemoryProvider(data_sources={"image": {"id": "img-7"}})
    config = load_text(
        """
data:
  image:
    base: {family: debian}
resources:
  server:
    web:
      attributes:
        image_id: ${data.image.base.id}
"""
    )
    plan = Planner(config, provider, store).plan()
    assert plan.get(InstanceAddress("server", "web")).after == {"image_id": "img-7"}


def test_removed_attribute_is_removed_from_the_object(provider, store, cluster_text):
    name_line = "        name: prod\n"
    labelled = cluster_text.replace(name_line, name_line + "        label: blue\n")
    _apply(load_text(labelled), provider, store)
    assert store.get(CLUSTER).attributes["label"] == "blue"

    plan = _apply(load_text(cluster_text), provider, store)
    removal = plan.get(CLUSTER)
    assert removal.action == Action.UPDATE
    assert [(c.path, c.before, c.after) for c in removal.changes] == [("label", "blue", None)]

    cluster_id = store.get(CLUSTER).resource_id
    assert "label" not in provider.read("cluster", cluster_id)
    assert "label" not in store.get(CLUSTER).attributes
    assert not Planner(load_text(cluster_text), provider, store).plan().has_changes


SECRET_CONFIG = """
variables:
  password: {default: hunter2, sensitive: true}
data:
  vault:
    creds: {secret: "${var.password}"}
resources:
  database:
    main:
      attributes:
        conn: "user:${var.password}"
        token: ${data.vault.creds.secret}
        name: orders
"""


def test_sensitive_variables_mark_changes_sensitive(store):
    provider = InMemoryProvider(data_sources={"vault": {}})
    plan = Planner(load_text(SECRET_CONFIG), provider, store).plan()

    flags = {c.path: c.sensitive for c in plan.get(InstanceAddress("database", "main")).changes}
    assert flags == {"conn": True, "name": False, "token": True}
    output = format_json(analyze_plan(plan))
    assert "hunter2" not in output
    assert "orders" in output


def test_single_instance_counts_correlate(provider, store):
    config = load_text(
        """
resources:
  node_pool:
    workers:
      count: 1
      attributes: {size: 3}
  disk:
    data:
      count: 1
      attributes: {pool: "${node_pool.workers.id}"}
"""
    )
    _apply(config, provider, store)

    disk = store.get(InstanceAddress("disk", "data", 0))
    assert disk.attributes["pool"] == store.get(POOL_0).resource_id
    assert disk.dependencies == (POOL_0,)
