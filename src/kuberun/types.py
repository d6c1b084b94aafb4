"""Data models for kuberun."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeAlias

KIND_JOB = "Job"
KIND_POD = "Pod"
RESTART_POLICIES = ("Never", "OnFailure")


class WorkloadSpecError(ValueError):
    """Raised when a workload spec is missing a mandatory field or is inconsistent."""


# ---------------------------------------------------------------------------
# Workload specification (input)
# ---------------------------------------------------------------------------


@dataclass
class EnvVar:
    name: str
    value: str = ""


@dataclass
class VolumeMount:
    name: str
    mount_path: str
    read_only: bool = False


@dataclass
class EmptyDir:
    medium: str = ""  # "" = node default, "Memory" = tmpfs
    size_limit: str | None = None  # quantity string, e.g. "1Gi"


@dataclass
class Volume:
    name: str
    empty_dir: EmptyDir | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Volume:
        empty_dir = raw.get("empty_dir")
        return cls(
            name=raw.get("name", ""),
            empty_dir=EmptyDir(**empty_dir) if isinstance(empty_dir, dict) else None,
        )


@dataclass
class SecurityContext:
    run_as_user: int | None = None
    run_as_group: int | None = None
    privileged: bool | None = None
    read_only_root_filesystem: bool | None = None


@dataclass
class ContainerTemplate:
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    working_dir: str | None = None
    env: list[EnvVar] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)
    security_context: SecurityContext | None = None
    image_pull_policy: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ContainerTemplate:
        env = raw.get("env") or []
        if isinstance(env, dict):
            # Shorthand: {KEY: value}
            env = [{"name": k, "value": str(v)} for k, v in env.items()]
        security = raw.get("security_context")
        return cls(
            name=raw.get("name", ""),
            image=raw.get("image", ""),
            command=[str(c) for c in raw.get("command") or []],
            args=[str(a) for a in raw.get("args") or []],
            working_dir=raw.get("working_dir"),
            env=[EnvVar(**e) for e in env],
            volume_mounts=[VolumeMount(**m) for m in raw.get("volume_mounts") or []],
            security_context=SecurityContext(**security) if security else None,
            image_pull_policy=raw.get("image_pull_policy"),
        )


@dataclass
class WorkloadSpec:
    """A batch workload (Kubernetes Job) ready to be submitted.

    Built by whatever front-end describes the work; ``check_and_set_defaults``
    must pass before it is handed to the cluster.
    """

    name: str
    namespace: str = "default"
    completions: int | None = None
    parallelism: int | None = None
    backoff_limit: int | None = None
    active_deadline_seconds: int | None = None
    ttl_seconds_after_finished: int | None = None
    selector: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    containers: list[ContainerTemplate] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    restart_policy: str = "Never"
    service_account_name: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkloadSpec:
        return cls(
            name=raw.get("name", ""),
            namespace=raw.get("namespace") or "default",
            completions=raw.get("completions"),
            parallelism=raw.get("parallelism"),
            backoff_limit=raw.get("backoff_limit"),
            active_deadline_seconds=raw.get("active_deadline_seconds"),
            ttl_seconds_after_finished=raw.get("ttl_seconds_after_finished"),
            selector={str(k): str(v) for k, v in (raw.get("selector") or {}).items()},
            labels={str(k): str(v) for k, v in (raw.get("labels") or {}).items()},
            containers=[ContainerTemplate.from_dict(c) for c in raw.get("containers") or []],
            volumes=[Volume.from_dict(v) for v in raw.get("volumes") or []],
            restart_policy=raw.get("restart_policy") or "Never",
            service_account_name=raw.get("service_account_name"),
        )

    def check_and_set_defaults(self) -> None:
        """Fill in defaults and fail fast on missing or inconsistent fields."""
        if not self.name:
            raise WorkloadSpecError("workload name is required")
        if not self.namespace:
            self.namespace = "default"
        if not self.restart_policy:
            self.restart_policy = "Never"
        if self.restart_policy not in RESTART_POLICIES:
            raise WorkloadSpecError(
                f"restart_policy must be one of {', '.join(RESTART_POLICIES)}, "
                f"got {self.restart_policy!r}"
            )
        for attr in ("completions", "parallelism"):
            value = getattr(self, attr)
            if value is not None and value < 1:
                raise WorkloadSpecError(f"{attr} must be >= 1, got {value}")
        if not self.containers:
            raise WorkloadSpecError(f"workload {self.name} needs at least one container")

        volume_names = {v.name for v in self.volumes}
        for volume in self.volumes:
            if not volume.name:
                raise WorkloadSpecError("volume name is required")

        seen: set[str] = set()
        for index, container in enumerate(self.containers):
            if not container.name:
                raise WorkloadSpecError(f"containers[{index}].name is required")
            if not container.image:
                raise WorkloadSpecError(f"container {container.name}: image is required")
            if container.name in seen:
                raise WorkloadSpecError(f"duplicate container name {container.name!r}")
            seen.add(container.name)
            for mount in container.volume_mounts:
                if mount.name not in volume_names:
                    raise WorkloadSpecError(
                        f"container {container.name}: volume mount {mount.name!r} "
                        "references an undeclared volume"
                    )
                if not mount.mount_path:
                    raise WorkloadSpecError(
                        f"container {container.name}: mount_path is required for {mount.name!r}"
                    )
            for env in container.env:
                if not env.name:
                    raise WorkloadSpecError(f"container {container.name}: env var name is required")


@dataclass(frozen=True)
class WorkloadHandle:
    """Identity of a created workload, the correlation key for watches."""

    namespace: str
    name: str
    uid: str
    kind: str = KIND_JOB
    selector: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def pod_selector(self) -> dict[str, str]:
        """Label selector for the workload's pods.

        The API server normally fills in ``controller-uid``; when it doesn't
        (older clusters, fakes) fall back to the ``job-name`` label.
        """
        return dict(self.selector) if self.selector else {"job-name": self.name}


@dataclass(frozen=True)
class WorkloadStatus:
    succeeded: int = 0
    active: int = 0
    failed: int = 0
    completions: int | None = None
    failed_reason: str | None = None  # set once the job has a Failed=True condition


# ---------------------------------------------------------------------------
# Pod state (observed)
# ---------------------------------------------------------------------------


class ContainerState(StrEnum):
    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    state: ContainerState
    exit_code: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    uid: str
    name: str = ""


@dataclass(frozen=True)
class PodSummary:
    name: str
    namespace: str
    owner_references: tuple[OwnerReference, ...] = ()
    containers: tuple[ContainerStatus, ...] = ()

    def is_owned_by(self, handle: WorkloadHandle) -> bool:
        return any(
            ref.kind == handle.kind and ref.uid == handle.uid for ref in self.owner_references
        )


# Pod name -> summary, in discovery order
PodSnapshot: TypeAlias = dict[str, PodSummary]


@dataclass(frozen=True)
class ContainerDelta:
    previous: ContainerStatus | None  # None = first time this container is seen
    current: ContainerStatus


@dataclass(frozen=True)
class PodDelta:
    pod: PodSummary
    containers: tuple[ContainerDelta, ...]


Diff: TypeAlias = list[PodDelta]


# ---------------------------------------------------------------------------
# Run outcome
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    reason: str | None = None

    @classmethod
    def success(cls) -> RunOutcome:
        return cls(RunStatus.SUCCESS)

    @classmethod
    def failed(cls, reason: str) -> RunOutcome:
        return cls(RunStatus.FAILED, reason)

    @classmethod
    def cancelled(cls) -> RunOutcome:
        return cls(RunStatus.CANCELLED)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS
