"""Creating the Stackdriver sink from command-line style options."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any

from sdexport.gce_config import MetadataError
from sdexport.resources import (
    MonitoredResourceFactory,
    new_monitored_resource_factory_config,
)
from sdexport.sink import (
    DEFAULT_ENDPOINT,
    DEFAULT_FLUSH_DELAY,
    DEFAULT_MAX_BUFFER_SIZE,
    DEFAULT_MAX_CONCURRENCY,
    StackdriverSink,
    new_gce_sink_config,
)
from sdexport.writer import LoggingWriter

__all__ = ["SinkOptions", "parse_sink_opts", "SinkFactory"]

_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6,
    "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> timedelta:
    rest, sign = text, 1
    if rest and rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total, pos = 0.0, 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if not match:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=sign * total)


@dataclass
class SinkOptions:
    """Settings given to the sink on the command line."""

    flush_delay: timedelta = DEFAULT_FLUSH_DELAY
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    stackdriver_resource_model: str = ""
    endpoint: str = DEFAULT_ENDPOINT


_PARSERS: dict[str, Callable[[str], Any]] = {
    "flush_delay": _parse_duration,
    "max_buffer_size": lambda text: int(text, 0),
    "max_concurrency": lambda text: int(text, 0),
    "stackdriver_resource_model": str,
    "endpoint": str,
}
_FLAG_NAMES = {f.name.replace("_", "-"): f.name for f in fields(SinkOptions)}


def parse_sink_opts(opts: Sequence[str]) -> SinkOptions:
    """Parse ``-name=value`` / ``-name value`` flags; parsing stops at the
    first argument that is not a flag, or after ``--``."""
    values: dict[str, Any] = {}
    args = list(opts)
    while args:
        arg = args[0]
        if len(arg) < 2 or arg[0] != "-":
            break
        dashes = 2 if arg.startswith("--") else 1
        name = arg[dashes:]
        args.pop(0)
        if not name:
            break
        if name[0] in "-=":
            raise ValueError(f"bad flag syntax: {arg}")
        name, has_value, value = name.partition("=")
        field_name = _FLAG_NAMES.get(name)
        if field_name is None:
            raise ValueError(f"flag provided but not defined: -{name}")
        if not has_value:
            if not args:
                raise ValueError(f"flag needs an argument: -{name}")
            value = args.pop(0)
        try:
            values[field_name] = _PARSERS[field_name](value)
        except ValueError as err:
            raise ValueError(f'invalid value "{value}" for flag -{name}: {err}') from err
    return SinkOptions(**values)


class SinkFactory:
    """Creates Stackdriver sinks from user-provided options."""

    def create_new(self, opts: Sequence[str]) -> StackdriverSink:
        """Build a sink configured by ``opts`` and the GCE metadata server."""
        try:
            options = parse_sink_opts(opts)
        except ValueError as err:
            raise ValueError(f"failed to parse sink opts: {err}") from err

        try:
            config = new_gce_sink_config()
        except RuntimeError as err:
            raise RuntimeError(f"failed to build sink config: {err}") from err
        config.flush_delay = options.flush_delay
        config.max_buffer_size = options.max_buffer_size
        config.max_concurrency = options.max_concurrency
        config.endpoint = options.endpoint

        try:
            resource_config = new_monitored_resource_factory_config(
                options.stackdriver_resource_model
            )
        except MetadataError as err:
            raise RuntimeError(
                f"failed to create stackdriver monitored resource factory: {err}"
            ) from err

        writer = LoggingWriter(endpoint=config.endpoint)
        return StackdriverSink(writer, config, MonitoredResourceFactory(resource_config))