"""Source configuration, filling unset values from the GCE metadata server."""

from __future__ import annotations

from datetime import timedelta

import httpx

from sdexport.monitor import SourceConfig

__all__ = [
    "GCE_METADATA_ENDPOINT",
    "GCE_METADATA_PREFIX",
    "USE_GCE",
    "MetadataError",
    "metadata_uri",
    "get_gce_metadata",
    "get_zone",
    "get_project_id",
    "get_cluster",
    "get_cluster_location",
    "get_kubelet_host",
    "get_instance",
    "get_instance_id",
    "new_configs",
]

GCE_METADATA_ENDPOINT = "http://169.254.169.254"
GCE_METADATA_PREFIX = "/computeMetadata/v1"

# A flag value asking for the setting to be read from the metadata server.
USE_GCE = "use-gce"
USE_INSTANCE_NAME = "use-instance-name"


class MetadataError(RuntimeError):
    """Raised when the GCE metadata server cannot be queried."""


def metadata_uri(resource: str) -> str:
    """Full metadata server URI of ``resource``."""
    return GCE_METADATA_ENDPOINT + GCE_METADATA_PREFIX + resource


def get_gce_metadata(uri: str) -> str:
    """Fetch ``uri`` from the instance's metadata server and return the body."""
    try:
        response = httpx.get(uri, headers={"Metadata-Flavor": "Google"})
    except httpx.InvalidURL as err:
        raise MetadataError(
            f"Failed to create request {uri!r} for GCE metadata: {err}"
        ) from err
    except httpx.HTTPError as err:
        raise MetadataError(f"Failed request {uri!r} for GCE metadata: {err}") from err
    try:
        return response.content.decode("utf-8", errors="replace")
    except httpx.HTTPError as err:
        raise MetadataError(
            f"Failed to read body for request {uri!r} for GCE metadata: {err}"
        ) from err


def _fetch(resource: str, failure: str) -> str:
    try:
        return get_gce_metadata(metadata_uri(resource))
    except MetadataError as err:
        raise MetadataError(f"{failure}: {err}") from err


def get_zone(zone: str) -> str:
    """The given zone, or the instance's zone from GCE when asked."""
    if zone == USE_GCE:
        body = _fetch("/instance/zone", "Failed to get zone from GCE")
        zone = body.split("/")[-1]
    return zone


def get_project_id(project_id: str) -> str:
    """The given project id, or the one from GCE when asked."""
    if project_id == USE_GCE:
        project_id = _fetch("/project/project-id", "Failed to get zone from GCE")
    return project_id


def get_cluster(cluster: str) -> str:
    """The given cluster name, or the one from GCE when asked."""
    if cluster == USE_GCE:
        cluster = _fetch(
            "/instance/attributes/cluster-name", "Failed to get cluster name from GCE"
        )
    return cluster


def get_cluster_location(cluster_location: str) -> str:
    """The given cluster location, or the one from GCE when asked."""
    if cluster_location == USE_GCE:
        cluster_location = _fetch(
            "/instance/attributes/cluster-location",
            "Failed to get cluster location from GCE",
        )
    return cluster_location


def get_kubelet_host(kubelet_host: str) -> str:
    """The kubelet host: as given, the IP of interface 0, or the instance name."""
    if kubelet_host == USE_GCE:
        kubelet_host = _fetch(
            "/instance/network-interfaces/0/ip", "Failed to get instance IP from GCE"
        )
    if kubelet_host == USE_INSTANCE_NAME:
        return get_instance(USE_GCE)
    return kubelet_host


def get_instance(instance: str) -> str:
    """The short instance name, taken from GCE when asked."""
    if instance == USE_GCE:
        instance = _fetch("/instance/hostname", "Failed to get hostname from GCE")
    return instance.split(".")[0]


def get_instance_id() -> str:
    """The instance id from GCE."""
    return _fetch("/instance/id", "Failed to get instance id from GCE")


def new_configs(
    zone: str,
    project_id: str,
    cluster: str,
    cluster_location: str,
    host: str,
    instance: str,
    schema_prefix: str,
    certificate_location: str,
    monitored_resource_labels: dict[str, str],
    kubelet_port: int,
    ctrl_port: int,
    resolution: timedelta,
) -> tuple[SourceConfig, SourceConfig]:
    """Configurations of the kubelet and the kube-controller sources."""
    zone = get_zone(zone)
    project_id = get_project_id(project_id)
    cluster = get_cluster(cluster)
    cluster_location = get_cluster_location(cluster_location)
    host = get_kubelet_host(host)
    instance = get_instance(instance)
    instance_id = get_instance_id()

    def build(port: int, certificate: str) -> SourceConfig:
        return SourceConfig(
            zone=zone,
            project=project_id,
            cluster=cluster,
            cluster_location=cluster_location,
            host=host,
            instance=instance,
            instance_id=instance_id,
            schema_prefix=schema_prefix,
            certificate_location=certificate,
            monitored_resource_labels=monitored_resource_labels,
            port=port,
            resolution=resolution,
        )

    return build(kubelet_port, certificate_location), build(ctrl_port, "")