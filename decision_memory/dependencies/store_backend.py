"""Control plane for the on-demand vector store.

The lifecycle controller talks to one of these backends. Statuses reported:
``stopped``, ``starting``, ``available``, ``stopping``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, runtime_checkable

from decision_memory.config import (
    get_aws_region,
    get_store_backend_kind,
    get_store_ecs_cluster,
    get_store_ecs_service,
)


logger = logging.getLogger("decision_memory.store_backend")

STATUS_STOPPED = "stopped"
STATUS_STARTING = "starting"
STATUS_AVAILABLE = "available"
STATUS_STOPPING = "stopping"


class StoreBackendError(RuntimeError):
    """The control plane rejected or failed a lifecycle call."""


@runtime_checkable
class StoreBackend(Protocol):
    manages_lifecycle: bool

    def status(self) -> str:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class StaticStoreBackend:
    """A store that is always running, such as a self-hosted Chroma container."""

    manages_lifecycle = False

    def status(self) -> str:
        return STATUS_AVAILABLE

    def start(self) -> None:
        return None

    def stop(self) -> None:
        logger.info("[store_backend.static.stop] ignored; store is not managed")


class EcsServiceBackend:
    """Scales the ECS service hosting the vector store between zero and one task."""

    manages_lifecycle = True

    def __init__(self, cluster: str, service: str, region: str, client: Optional[Any] = None):
        self.cluster = cluster
        self.service = service
        if client is None:
            import boto3

            client = boto3.client("ecs", region_name=region)
        self._client = client

    def _describe(self) -> dict:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            resp = self._client.describe_services(cluster=self.cluster, services=[self.service])
        except (BotoCoreError, ClientError) as e:
            raise StoreBackendError(f"describe_services failed: {e}") from e
        services = resp.get("services") or []
        if not services:
            raise StoreBackendError(f"ECS service {self.service} not found in {self.cluster}")
        return services[0]

    def status(self) -> str:
        svc = self._describe()
        desired = int(svc.get("desiredCount", 0))
        running = int(svc.get("runningCount", 0))
        if desired == 0:
            return STATUS_STOPPING if running > 0 else STATUS_STOPPED
        if running >= desired:
            return STATUS_AVAILABLE
        return STATUS_STARTING

    def _scale(self, desired: int) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client.update_service(
                cluster=self.cluster, service=self.service, desiredCount=desired
            )
        except (BotoCoreError, ClientError) as e:
            raise StoreBackendError(f"update_service desiredCount={desired} failed: {e}") from e
        logger.info(
            "[store_backend.ecs.scale] cluster=%s service=%s desired=%s",
            self.cluster,
            self.service,
            desired,
        )

    def start(self) -> None:
        self._scale(1)

    def stop(self) -> None:
        self._scale(0)


def build_store_backend() -> StoreBackend:
    """Pick the backend named by STORE_BACKEND."""
    kind = get_store_backend_kind()
    if kind == "ecs":
        cluster = get_store_ecs_cluster()
        service = get_store_ecs_service()
        if not cluster or not service:
            raise StoreBackendError("STORE_BACKEND=ecs requires STORE_ECS_CLUSTER and STORE_ECS_SERVICE")
        return EcsServiceBackend(cluster=cluster, service=service, region=get_aws_region())
    if kind != "static":
        logger.warning("[store_backend.unknown] kind=%s falling back to static", kind)
    return StaticStoreBackend()
