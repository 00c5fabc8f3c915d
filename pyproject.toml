[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sdexport"
version = "0.1.0"
description = "Export Kubernetes node, container and event data to Google Cloud Monitoring and Logging"
requires-python = ">=3.10"
keywords = ["kubernetes", "kubelet", "monitoring", "logging", "stackdriver", "metrics", "events"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
kubelet-to-gcm = "sdexport.daemon:main"

[tool.hatch.build.targets.wheel]
packages = ["sdexport"]

[tool.pytest.ini_options]
addopts = "-ra"
