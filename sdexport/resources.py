"""Monitored resources that log entries of kubernetes events are attached to."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from sdexport.event_handler import Event
from sdexport.gce_config import MetadataError, metadata_uri

__all__ = [
    "ResourceModelVersion",
    "MonitoredResource",
    "MonitoredResourceFactoryConfig",
    "MonitoredResourceFactory",
    "get_resource_model_version",
    "new_monitored_resource_factory_config",
]

log = logging.getLogger(__name__)

GKE_CLUSTER = "gke_cluster"
K8S_CLUSTER = "k8s_cluster"
K8S_NODE = "k8s_node"
K8S_POD = "k8s_pod"

CLUSTER_NAME = "cluster_name"
LOCATION = "location"
PROJECT_ID = "project_id"
POD_NAME = "pod_name"
NODE_NAME = "node_name"
NAMESPACE_NAME = "namespace_name"

POD_KIND = "Pod"
NODE_KIND = "Node"


class ResourceModelVersion(str, enum.Enum):
    """Which monitored resource types are used."""

    NEW = "new"
    OLD = "old"


@dataclass
class MonitoredResource:
    """A monitored resource: its type and labels."""

    type: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "labels": dict(self.labels)}


@dataclass
class MonitoredResourceFactoryConfig:
    """Settings of a :class:`MonitoredResourceFactory`."""

    resource_model: ResourceModelVersion = ResourceModelVersion.OLD
    cluster_name: str = ""
    location: str = ""
    project_id: str = ""


class MonitoredResourceFactory:
    """Builds the monitored resource an event belongs to."""

    def __init__(self, config: MonitoredResourceFactoryConfig) -> None:
        self.resource_model = config.resource_model
        self.common_labels = {
            CLUSTER_NAME: config.cluster_name,
            LOCATION: config.location,
            PROJECT_ID: config.project_id,
        }
        resource_type = (
            GKE_CLUSTER if config.resource_model == ResourceModelVersion.OLD else K8S_CLUSTER
        )
        self.default_resource = MonitoredResource(resource_type, dict(self.common_labels))

    def resource_from_event(self, event: Event | None) -> MonitoredResource:
        """The pod, node or cluster resource for ``event``."""
        if self.resource_model == ResourceModelVersion.OLD or event is None:
            return self.default_resource
        involved = event.involved_object
        if involved.kind == POD_KIND:
            labels = dict(self.common_labels)
            labels[POD_NAME] = involved.name
            labels[NAMESPACE_NAME] = involved.namespace
            return MonitoredResource(K8S_POD, labels)
        if involved.kind == NODE_KIND:
            labels = dict(self.common_labels)
            labels[NODE_NAME] = involved.name
            return MonitoredResource(K8S_NODE, labels)
        return self.default_resource


def get_resource_model_version(model: str) -> ResourceModelVersion:
    """``NEW`` for ``"new"``, ``OLD`` for anything else."""
    if model == ResourceModelVersion.NEW.value:
        return ResourceModelVersion.NEW
    return ResourceModelVersion.OLD


def _metadata_value(resource: str) -> str:
    uri = metadata_uri(resource)
    try:
        response = httpx.get(uri, headers={"Metadata-Flavor": "Google"})
    except httpx.HTTPError as err:
        raise MetadataError(f"request {uri!r} for GCE metadata failed: {err}") from err
    if response.status_code == 404:
        raise MetadataError(f"GCE metadata {resource!r} not defined")
    if response.status_code != 200:
        raise MetadataError(
            f"GCE metadata {resource!r} returned status {response.status_code}"
        )
    return response.text


def new_monitored_resource_factory_config(
    resource_model_version: str,
) -> MonitoredResourceFactoryConfig:
    """Read cluster name, project and location from the GCE metadata server."""
    try:
        cluster_name = _metadata_value("/instance/attributes/cluster-name")
    except MetadataError:
        log.warning(
            "'cluster-name' label is not specified on the VM, defaulting to the empty value"
        )
        cluster_name = ""
    cluster_name = cluster_name.strip()

    try:
        project_id = _metadata_value("/project/project-id").strip()
    except MetadataError as err:
        raise MetadataError(f"failed to get project id: {err}") from err

    try:
        location = _metadata_value("/instance/attributes/cluster-location").strip()
        location_err: MetadataError | None = None
    except MetadataError as err:
        location, location_err = "", err
    if not location:
        log.warning(
            "Failed to retrieve cluster location, falling back to local zone: %s",
            location_err,
        )
        try:
            location = _metadata_value("/instance/zone").strip().split("/")[-1]
        except MetadataError as err:
            raise MetadataError(f"error while getting cluster location: {err}") from err

    return MonitoredResourceFactoryConfig(
        resource_model=get_resource_model_version(resource_model_version),
        cluster_name=cluster_name,
        location=location,
        project_id=project_id,
    )