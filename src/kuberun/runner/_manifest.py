"""Typed construction of the Job request sent to the API server."""

from __future__ import annotations

from kubernetes import client

from kuberun.types import ContainerTemplate, SecurityContext, Volume, WorkloadSpec


def _security_context(ctx: SecurityContext | None) -> client.V1SecurityContext | None:
    if ctx is None:
        return None
    return client.V1SecurityContext(
        run_as_user=ctx.run_as_user,
        run_as_group=ctx.run_as_group,
        privileged=ctx.privileged,
        read_only_root_filesystem=ctx.read_only_root_filesystem,
    )


def _container(tpl: ContainerTemplate) -> client.V1Container:
    return client.V1Container(
        name=tpl.name,
        image=tpl.image,
        command=tpl.command or None,
        args=tpl.args or None,
        working_dir=tpl.working_dir,
        image_pull_policy=tpl.image_pull_policy,
        env=[client.V1EnvVar(name=e.name, value=e.value) for e in tpl.env] or None,
        volume_mounts=[
            client.V1VolumeMount(name=m.name, mount_path=m.mount_path, read_only=m.read_only)
            for m in tpl.volume_mounts
        ]
        or None,
        security_context=_security_context(tpl.security_context),
    )


def _volume(vol: Volume) -> client.V1Volume:
    empty_dir = None
    if vol.empty_dir is not None:
        empty_dir = client.V1EmptyDirVolumeSource(
            medium=vol.empty_dir.medium or None,
            size_limit=vol.empty_dir.size_limit,
        )
    return client.V1Volume(name=vol.name, empty_dir=empty_dir)


def build_job_manifest(spec: WorkloadSpec) -> client.V1Job:
    """Translate a validated WorkloadSpec into a ``V1Job`` body.

    A non-empty ``spec.selector`` is sent as the job's selector and merged
    into the pod template labels (with ``manual_selector`` so the API server
    accepts it). Otherwise the server generates the selector.
    """
    pod_labels = {**spec.labels, **spec.selector}
    selector = None
    manual_selector = None
    if spec.selector:
        selector = client.V1LabelSelector(match_labels=dict(spec.selector))
        manual_selector = True

    pod_spec = client.V1PodSpec(
        containers=[_container(c) for c in spec.containers],
        volumes=[_volume(v) for v in spec.volumes] or None,
        restart_policy=spec.restart_policy,
        service_account_name=spec.service_account_name,
    )
    job_spec = client.V1JobSpec(
        template=client.V1PodTemplateSpec(
            metadata=client.V1ObjectMeta(labels=pod_labels or None),
            spec=pod_spec,
        ),
        completions=spec.completions,
        parallelism=spec.parallelism,
        backoff_limit=spec.backoff_limit,
        active_deadline_seconds=spec.active_deadline_seconds,
        ttl_seconds_after_finished=spec.ttl_seconds_after_finished,
        selector=selector,
        manual_selector=manual_selector,
    )
    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=spec.name,
            namespace=spec.namespace,
            labels=dict(spec.labels) or None,
        ),
        spec=job_spec,
    )
