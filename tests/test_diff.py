"""Tests for pod snapshot diffing."""

from __future__ import annotations

from conftest import make_pod, status

from kuberun.runner._diff import diff_pod_sets
from kuberun.types import ContainerState

RUNNING = ContainerState.RUNNING
WAITING = ContainerState.WAITING
TERMINATED = ContainerState.TERMINATED


class TestDiffPodSets:
    def test_identical_snapshots_produce_no_diff(self):
        snapshot = {"p1": make_pod("p1", status("main", RUNNING))}
        assert diff_pod_sets(snapshot, dict(snapshot)) == []

    def test_empty_snapshots(self):
        assert diff_pod_sets({}, {}) == []

    def test_new_pod_reports_every_container_as_new(self):
        pod = make_pod("p1", status("main", WAITING), status("sidecar", RUNNING))
        diff = diff_pod_sets({}, {"p1": pod})

        assert len(diff) == 1
        assert diff[0].pod is pod
        assert [c.current.name for c in diff[0].containers] == ["main", "sidecar"]
        assert all(c.previous is None for c in diff[0].containers)

    def test_only_changed_containers_are_reported(self):
        before = make_pod("p1", status("main", WAITING), status("sidecar", RUNNING))
        after = make_pod("p1", status("main", RUNNING), status("sidecar", RUNNING))

        diff = diff_pod_sets({"p1": before}, {"p1": after})

        assert len(diff) == 1
        (change,) = diff[0].containers
        assert change.previous == status("main", WAITING)
        assert change.current == status("main", RUNNING)

    def test_exit_code_change_counts_as_change(self):
        before = make_pod("p1", status("main", TERMINATED, exit_code=0))
        after = make_pod("p1", status("main", TERMINATED, exit_code=1))

        diff = diff_pod_sets({"p1": before}, {"p1": after})

        assert diff[0].containers[0].current.exit_code == 1

    def test_container_added_to_existing_pod_has_no_previous(self):
        before = make_pod("p1", status("main", RUNNING))
        after = make_pod("p1", status("main", RUNNING), status("late", WAITING))

        diff = diff_pod_sets({"p1": before}, {"p1": after})

        (change,) = diff[0].containers
        assert change.previous is None
        assert change.current.name == "late"

    def test_removed_pods_are_not_reported(self):
        before = {
            "p1": make_pod("p1", status("main", RUNNING)),
            "p2": make_pod("p2", status("main", RUNNING)),
        }
        after = {"p1": before["p1"]}
        assert diff_pod_sets(before, after) == []

    def test_output_follows_current_order(self):
        """Discovery order of the current snapshot is preserved."""
        current = {
            "zeta": make_pod("zeta", status("main", RUNNING)),
            "alpha": make_pod("alpha", status("main", RUNNING)),
            "mid": make_pod("mid", status("main", RUNNING)),
        }
        diff = diff_pod_sets({}, current)
        assert [d.pod.name for d in diff] == ["zeta", "alpha", "mid"]

    def test_unchanged_pods_are_skipped_among_changed(self):
        stable = make_pod("stable", status("main", RUNNING))
        before = {"stable": stable, "moving": make_pod("moving", status("main", WAITING))}
        after = {"stable": stable, "moving": make_pod("moving", status("main", RUNNING))}

        diff = diff_pod_sets(before, after)

        assert [d.pod.name for d in diff] == ["moving"]

    def test_inputs_are_not_mutated(self):
        before = {"p1": make_pod("p1", status("main", WAITING))}
        after = {"p1": make_pod("p1", status("main", RUNNING))}
        before_copy, after_copy = dict(before), dict(after)

        diff_pod_sets(before, after)

        assert before == before_copy
        assert after == after_copy
