"""Kubelet and kube-controller metrics to Cloud Monitoring, Kubernetes events to Cloud Logging."""

__version__ = "0.1.0"