"""Tests for loading workload YAML files."""

from __future__ import annotations

from pathlib import Path

import pytest

from kuberun.types import WorkloadSpecError
from kuberun.workload_file import load_workload_spec, parse_workload_spec

WORKLOAD = """\
name: build-42
namespace: ci
completions: 2
parallelism: 2
backoff_limit: 1
labels:
  team: infra
volumes:
  - name: scratch
    empty_dir:
      size_limit: 1Gi
containers:
  - name: main
    image: alpine:3.20
    command: ["sh", "-c", "make test"]
    env:
      CI: "true"
    volume_mounts:
      - name: scratch
        mount_path: /scratch
  - name: sidecar
    image: busybox
"""


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "workload.yaml"
    path.write_text(text)
    return path


class TestLoadWorkloadSpec:
    def test_full_file(self, tmp_path):
        spec = load_workload_spec(write(tmp_path, WORKLOAD))

        assert spec.name == "build-42"
        assert spec.namespace == "ci"
        assert spec.completions == 2
        assert spec.labels == {"team": "infra"}
        assert [c.name for c in spec.containers] == ["main", "sidecar"]
        assert spec.containers[0].env[0].name == "CI"
        assert spec.containers[0].volume_mounts[0].mount_path == "/scratch"
        assert spec.volumes[0].empty_dir.size_limit == "1Gi"

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(WorkloadSpecError, match="invalid YAML"):
            load_workload_spec(write(tmp_path, "name: [unclosed\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            load_workload_spec(tmp_path / "nope.yaml")

    def test_validation_runs(self, tmp_path):
        with pytest.raises(WorkloadSpecError, match="at least one container"):
            load_workload_spec(write(tmp_path, "name: lonely\n"))


class TestParseWorkloadSpec:
    def test_top_level_must_be_mapping(self):
        with pytest.raises(WorkloadSpecError, match="mapping"):
            parse_workload_spec(["name", "job"])

    def test_empty_document(self):
        with pytest.raises(WorkloadSpecError):
            parse_workload_spec(None)

    def test_unknown_top_level_key(self):
        raw = {"name": "job", "replicas": 3, "containers": [{"name": "m", "image": "i"}]}
        with pytest.raises(WorkloadSpecError, match="unknown keys replicas"):
            parse_workload_spec(raw)

    def test_unknown_container_key(self):
        raw = {"name": "job", "containers": [{"name": "m", "image": "i", "ports": [80]}]}
        with pytest.raises(WorkloadSpecError, match=r"containers\[0\]: unknown keys ports"):
            parse_workload_spec(raw)

    def test_containers_must_be_list(self):
        with pytest.raises(WorkloadSpecError, match="must be a list"):
            parse_workload_spec({"name": "job", "containers": {"name": "m"}})

    def test_container_entry_must_be_mapping(self):
        with pytest.raises(WorkloadSpecError, match=r"containers\[0\] must be a mapping"):
            parse_workload_spec({"name": "job", "containers": ["alpine"]})

    def test_bad_nested_key(self):
        raw = {
            "name": "job",
            "containers": [{"name": "m", "image": "i", "env": [{"name": "A", "val": "1"}]}],
        }
        with pytest.raises(WorkloadSpecError):
            parse_workload_spec(raw)
