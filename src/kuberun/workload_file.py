"""Workload file loading: YAML description of a Job.

Example::

    name: build-42
    namespace: ci
    completions: 1
    containers:
      - name: main
        image: alpine:3.20
        command: ["sh", "-c", "echo hello"]
        env:
          GREETING: hello
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import yaml

from kuberun.types import ContainerTemplate, WorkloadSpec, WorkloadSpecError

_SPEC_KEYS = frozenset(f.name for f in dataclasses.fields(WorkloadSpec))
_CONTAINER_KEYS = frozenset(f.name for f in dataclasses.fields(ContainerTemplate))


def _check_keys(raw: dict[str, Any], allowed: frozenset[str], where: str) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise WorkloadSpecError(f"{where}: unknown keys {', '.join(unknown)}")


def parse_workload_spec(raw: Any) -> WorkloadSpec:
    """Build a validated WorkloadSpec from already-parsed YAML data."""
    if not isinstance(raw, dict):
        raise WorkloadSpecError("workload file must contain a mapping at the top level")
    _check_keys(raw, _SPEC_KEYS, "workload")
    containers = raw.get("containers") or []
    if not isinstance(containers, list):
        raise WorkloadSpecError("containers must be a list")
    for index, container in enumerate(containers):
        if not isinstance(container, dict):
            raise WorkloadSpecError(f"containers[{index}] must be a mapping")
        _check_keys(container, _CONTAINER_KEYS, f"containers[{index}]")
    try:
        spec = WorkloadSpec.from_dict(raw)
    except TypeError as exc:
        # Nested mappings (env, volume_mounts, ...) with unexpected keys
        raise WorkloadSpecError(str(exc)) from exc
    spec.check_and_set_defaults()
    return spec


def load_workload_spec(path: Path) -> WorkloadSpec:
    """Read and validate a workload YAML file."""
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise WorkloadSpecError(f"{path}: invalid YAML: {exc}") from exc
    return parse_workload_spec(raw)
