#!/usr/bin/env python3

"""
smartctl JSON textfile collector.
Requires smartmontools 7.0 or later (for --json output).

Every device report printed by `smartctl --json --xall` is mapped onto a fixed catalog of
smartctl_* metrics: device identity, capacity, interface speed, ATA SMART attributes, ATA
device statistics, NVMe health log, temperatures and the overall SMART status.

Formatted with Black:
$ black -l 100 smartctl_metrics.py
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from types import MappingProxyType
from typing import Callable, Iterable, NamedTuple, Tuple

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

__doc__ = "Expose smartctl JSON device reports as Prometheus metrics."
__version__ = "0.1.0"

logger = logging.getLogger(__name__)

smartctl_path = "smartctl"

GAUGE = "gauge"
COUNTER = "counter"

IDENTITY_LABELS = ("device", "model_family", "model_name", "serial_number")

ATTRIBUTE_FLAGS = (
    "prefailure",
    "updated_online",
    "performance",
    "error_rate",
    "event_count",
    "auto_keep",
)

STATISTIC_FLAGS = (
    "valid",
    "normalized",
    "supports_dsn",
    "monitored_condition_met",
)

# Label value and JSON path of each value reported for an ATA SMART attribute.
ATTRIBUTE_VALUES = (
    ("value", "value"),
    ("worst", "worst"),
    ("thresh", "thresh"),
    ("raw", "raw.value"),
)

_missing = object()


class Error(Exception):
    pass


class SmartctlNotFoundError(Error):
    pass


class MetricDesc(NamedTuple):
    name: str
    documentation: str
    labelnames: Tuple[str, ...]
    kind: str = GAUGE


class Observation(NamedTuple):
    metric: MetricDesc
    value: float
    kind: str
    labels: Tuple[str, ...]


Sink = Callable[[Observation], None]

metrics = MappingProxyType({
    # fmt: off
    "version": MetricDesc(
        "smartctl_version",
        "smartctl version",
        ("json_format_version", "smartctl_version", "svn_revision", "build_info"),
    ),
    "device": MetricDesc(
        "smartctl_device",
        "Device info",
        (
            "device",
            "interface",
            "protocol",
            "model_family",
            "model_name",
            "serial_number",
            "ata_additional_product_id",
            "firmware_version",
            "ata_version",
            "sata_version",
        ),
    ),
    "capacity_blocks": MetricDesc(
        "smartctl_device_capacity_blocks",
        "Device capacity in blocks",
        IDENTITY_LABELS,
    ),
    "capacity_bytes": MetricDesc(
        "smartctl_device_capacity_bytes",
        "Device capacity in bytes",
        IDENTITY_LABELS,
    ),
    "block_size": MetricDesc(
        "smartctl_device_block_size",
        "Device block size",
        (*IDENTITY_LABELS, "blocks_type"),
    ),
    "interface_speed": MetricDesc(
        "smartctl_device_interface_speed",
        "Device interface speed, bits per second",
        (*IDENTITY_LABELS, "speed_type"),
    ),
    "attribute": MetricDesc(
        "smartctl_device_attribute",
        "Device attributes",
        (
            *IDENTITY_LABELS,
            "attribute_name",
            "attribute_flags_short",
            "attribute_flags_long",
            "attribute_value_type",
            "attribute_id",
        ),
    ),
    "power_on_seconds": MetricDesc(
        "smartctl_device_power_on_seconds",
        "Device power on seconds",
        IDENTITY_LABELS, COUNTER,
    ),
    "rotation_rate": MetricDesc(
        "smartctl_device_rotation_rate",
        "Device rotation rate",
        IDENTITY_LABELS,
    ),
    "temperature": MetricDesc(
        "smartctl_device_temperature",
        "Device temperature celsius",
        (*IDENTITY_LABELS, "temperature_type"),
    ),
    "power_cycle_count": MetricDesc(
        "smartctl_device_power_cycle_count",
        "Device power cycle count",
        IDENTITY_LABELS, COUNTER,
    ),
    "exit_status": MetricDesc(
        "smartctl_device_smartctl_exit_status",
        "Exit status of smartctl on device",
        IDENTITY_LABELS,
    ),
    "statistics": MetricDesc(
        "smartctl_device_statistics",
        "Device statistics",
        (
            *IDENTITY_LABELS,
            "statistic_table",
            "statistic_name",
            "statistic_flags_short",
            "statistic_flags_long",
        ),
    ),
    "critical_warning": MetricDesc(
        "smartctl_device_critical_warning",
        "Critical warning counter",
        IDENTITY_LABELS,
    ),
    "available_spare": MetricDesc(
        "smartctl_device_available_spare",
        "Available spare",
        IDENTITY_LABELS,
    ),
    "media_errors": MetricDesc(
        "smartctl_device_media_errors",
        "Media errors counter",
        IDENTITY_LABELS,
    ),
    "percentage_used": MetricDesc(
        "smartctl_device_percentage_used",
        "Percentage Used",
        IDENTITY_LABELS,
    ),
    "smart_status": MetricDesc(
        "smartctl_device_smart_status",
        "Smart status",
        IDENTITY_LABELS,
    ),
    # fmt: on
})


class Result:
    """A value found in a smartctl JSON report, or the absence of one.

    Lookups never raise: a missing path yields a Result that does not exist, and the typed
    accessors degrade to the zero value of their type when the field is absent or has an
    unexpected shape.
    """

    __slots__ = ("value",)

    def __init__(self, value=_missing):
        self.value = value

    def __repr__(self):
        if not self.exists():
            return "Result()"
        return "Result({!r})".format(self.value)

    def exists(self):
        return self.value is not _missing

    def get(self, path):
        """Look up a dot separated path, e.g. "user_capacity.blocks" or "pages.0.name"."""
        value = self.value
        for key in path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
                value = value[int(key)]
            else:
                return Result()
        return Result(value)

    def float(self):
        value = self.value
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                return 0.0
        return 0.0

    def string(self):
        value = self.value
        if not self.exists() or value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return value
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return str(int(value)) if value.is_integer() else repr(value)
        return json.dumps(value, separators=(",", ":"))

    def bool(self):
        value = self.value
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            return value.strip().lower() in ("1", "t", "true")
        return False

    def array(self):
        if not self.exists():
            return []
        if isinstance(self.value, list):
            return [Result(v) for v in self.value]
        return [self]

    def items(self):
        if not isinstance(self.value, dict):
            return []
        return [(key, Result(v)) for key, v in self.value.items()]

    def string_if_exists(self, path, default):
        result = self.get(path)
        return result.string() if result.exists() else default

    def float_if_exists(self, path, default):
        result = self.get(path)
        return result.float() if result.exists() else default


def as_result(report):
    return report if isinstance(report, Result) else Result(report)


def observe(metric, kind, value, labels):
    """Build an Observation, enforcing the value kind and label arity declared in the catalog."""
    labels = tuple(labels)
    if kind != metric.kind:
        raise ValueError("{} is a {}, not a {}".format(metric.name, metric.kind, kind))
    if len(labels) != len(metric.labelnames):
        raise ValueError(
            "{} expects {} label values {}, got {}".format(
                metric.name, len(metric.labelnames), metric.labelnames, labels
            )
        )
    return Observation(metric, float(value), kind, labels)


def long_flags(flags, candidates):
    """Comma separated names of the candidate flags set in a smartctl "flags" object.

    The output follows the order of `candidates`, not the order of the JSON document.
    """
    return ",".join(c for c in candidates if flags.get(c).exists() and flags.get(c).bool())


class SMARTDevice(NamedTuple):
    device: str
    serial: str
    family: str
    model: str


class SMARTctl:
    """Maps a single smartctl device report onto observations pushed to a sink."""

    def __init__(self, report, sink: Sink):
        self.json = as_result(report)
        self.sink = sink
        self.device = SMARTDevice(
            device=self.json.get("device.name").string().strip(),
            serial=self.json.get("serial_number").string().strip(),
            family=self.json.get("model_family").string().strip(),
            model=self.json.get("model_name").string().strip(),
        )
        logger.debug(
            "Collecting metrics from %s: %s, %s",
            self.device.device,
            self.device.family,
            self.device.model,
        )

    def collect(self):
        self.mine_exit_status()
        self.mine_device()
        self.mine_capacity()
        self.mine_interface_speed()
        self.mine_device_attributes()
        self.mine_power_on_seconds()
        self.mine_rotation_rate()
        self.mine_temperatures()
        self.mine_power_cycle_count()
        self.mine_device_statistics()
        self.mine_nvme_smart_health_information_log()
        self.mine_smart_status()

    def emit(self, key, kind, value, *labels):
        """Emit a catalog metric labeled with the device identity followed by `labels`."""
        identity = (self.device.device, self.device.family, self.device.model, self.device.serial)
        self.sink(observe(metrics[key], kind, value, identity + labels))

    def mine_exit_status(self):
        self.emit("exit_status", GAUGE, self.json.get("smartctl.exit_status").float())

    def mine_device(self):
        device = self.json.get("device")
        labels = (
            self.device.device,
            device.get("type").string(),
            device.get("protocol").string(),
            self.device.family,
            self.device.model,
            self.device.serial,
            self.json.string_if_exists("ata_additional_product_id", "unknown"),
            self.json.get("firmware_version").string(),
            self.json.get("ata_version.string").string(),
            self.json.get("sata_version.string").string(),
        )
        self.sink(observe(metrics["device"], GAUGE, 1, labels))

    def mine_capacity(self):
        capacity = self.json.get("user_capacity")
        self.emit("capacity_blocks", GAUGE, capacity.get("blocks").float())
        self.emit("capacity_bytes", GAUGE, capacity.get("bytes").float())
        for block_type in ("logical", "physical"):
            size = self.json.get("{}_block_size".format(block_type)).float()
            self.emit("block_size", GAUGE, size, block_type)

    def mine_interface_speed(self):
        interface_speed = self.json.get("interface_speed")
        for speed_type in ("max", "current"):
            speed = interface_speed.get(speed_type)
            bps = speed.get("units_per_second").float() * speed.get("bits_per_unit").float()
            self.emit("interface_speed", GAUGE, bps, speed_type)

    def mine_device_attributes(self):
        for attribute in self.json.get("ata_smart_attributes.table").array():
            name = attribute.get("name").string().strip()
            flags_short = attribute.get("flags.string").string().strip()
            flags_long = long_flags(attribute.get("flags"), ATTRIBUTE_FLAGS)
            attribute_id = attribute.get("id").string()
            for value_type, path in ATTRIBUTE_VALUES:
                self.emit(
                    "attribute",
                    GAUGE,
                    attribute.get(path).float(),
                    name,
                    flags_short,
                    flags_long,
                    value_type,
                    attribute_id,
                )

    def mine_power_on_seconds(self):
        power_on_time = self.json.get("power_on_time")
        seconds = (
            power_on_time.float_if_exists("hours", 0) * 60 * 60
            + power_on_time.float_if_exists("minutes", 0) * 60
        )
        self.emit("power_on_seconds", COUNTER, seconds)

    def mine_rotation_rate(self):
        # Absent or zero for solid state devices.
        rotation_rate = self.json.float_if_exists("rotation_rate", 0)
        if rotation_rate > 0:
            self.emit("rotation_rate", GAUGE, rotation_rate)

    def mine_temperatures(self):
        temperature = self.json.get("temperature")
        if not temperature.exists():
            return
        for temperature_type, value in temperature.items():
            self.emit("temperature", GAUGE, value.float(), temperature_type)

    def mine_power_cycle_count(self):
        self.emit("power_cycle_count", COUNTER, self.json.get("power_cycle_count").float())

    def mine_device_statistics(self):
        for page in self.json.get("ata_device_statistics.pages").array():
            table = page.get("name").string().strip()
            for statistic in page.get("table").array():
                self.emit(
                    "statistics",
                    GAUGE,
                    statistic.get("value").float(),
                    table,
                    statistic.get("name").string().strip(),
                    statistic.get("flags.string").string().strip(),
                    long_flags(statistic.get("flags"), STATISTIC_FLAGS),
                )

    def mine_nvme_smart_health_information_log(self):
        health = self.json.get("nvme_smart_health_information_log")
        if not health.exists():
            return
        self.emit("critical_warning", GAUGE, health.get("critical_warning").float())
        self.emit("available_spare", GAUGE, health.get("available_spare").float())
        self.emit("media_errors", GAUGE, health.get("media_errors").float())
        self.emit("percentage_used", GAUGE, health.get("percentage_used").float())

    def mine_smart_status(self):
        self.emit("smart_status", GAUGE, self.json.get("smart_status.passed").float())


def collect_version(report, sink: Sink):
    """Emit smartctl_version from the "smartctl" section of a report.

    Returns False when the report carries no version information.
    """
    report = as_result(report)
    smartctl = report.get("smartctl")
    if not smartctl.get("version").exists():
        return False
    labels = (
        ".".join(v.string() for v in report.get("json_format_version").array()),
        ".".join(v.string() for v in smartctl.get("version").array()),
        smartctl.get("svn_revision").string(),
        smartctl.get("build_info").string(),
    )
    sink(observe(metrics["version"], GAUGE, 1, labels))
    return True


def metric_family(metric):
    if metric.kind == COUNTER:
        return CounterMetricFamily(metric.name, metric.documentation, labels=metric.labelnames)
    return GaugeMetricFamily(metric.name, metric.documentation, labels=metric.labelnames)


class SmartctlCollector:
    """prometheus_client collector mapping device reports on every scrape.

    `load_reports` is called once per collection and returns an iterable of decoded smartctl
    JSON documents, one per device.
    """

    def __init__(self, load_reports: Callable[[], Iterable]):
        self.load_reports = load_reports

    def describe(self):
        return [metric_family(metric) for metric in metrics.values()]

    def collect(self):
        observations = []
        has_version = False
        for report in self.load_reports():
            report = as_result(report)
            if not has_version:
                has_version = collect_version(report, observations.append)
            SMARTctl(report, observations.append).collect()

        families = {metric.name: metric_family(metric) for metric in metrics.values()}
        for observation in observations:
            families[observation.metric.name].add_metric(observation.labels, observation.value)
        return iter(families.values())


def smart_ctl(*args):
    """Run smartctl with JSON output and return the decoded document.

    The exit status is not checked: smartctl reports device problems through its exit status
    bitmask, which is exported from the "smartctl.exit_status" field of the document.

    Raises:
        ValueError: smartctl printed something other than a UTF-8 JSON document.
    """
    cmd = [smartctl_path, "--json", *args]
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, env=dict(os.environ, LC_ALL="C"))
    except FileNotFoundError:
        raise SmartctlNotFoundError("{} is not installed. Aborting.".format(smartctl_path))
    except OSError as e:
        raise Error("unable to run {}: {}".format(smartctl_path, e))
    return json.loads(proc.stdout.decode("utf-8"))


def find_devices():
    """Find SMART devices.

    Yields:
        (tuple) Device name and smartctl device type, e.g. ("/dev/sda", "sat").
    """
    for device in Result(smart_ctl("--scan-open")).get("devices").array():
        yield device.get("name").string(), device.get("type").string() or "auto"


def device_report(name, device_type="auto"):
    return smart_ctl("--xall", "--device", device_type, name)


def query_reports(devices=()):
    """Yield the report of each device, discovering devices when none are given."""
    if devices:
        targets = [(name, "auto") for name in devices]
    else:
        try:
            targets = list(find_devices())
        except ValueError as e:
            raise Error("unable to parse smartctl --scan-open output: {}".format(e))

    for name, device_type in targets:
        try:
            yield device_report(name, device_type)
        except ValueError as e:
            logger.error("Unable to parse smartctl output for %s: %s", name, e)


def read_reports(paths):
    """Yield reports previously captured with `smartctl --json`, "-" reads stdin."""
    for path in paths:
        try:
            if path == "-":
                data = sys.stdin.read()
            else:
                with open(path, "rb") as f:
                    data = f.read()
            report = json.loads(data)
        except OSError as e:
            raise Error("unable to read {}: {}".format(path, e))
        except ValueError as e:
            logger.error("Unable to parse %s: %s", path, e)
            continue
        yield report


def main(argv=[__name__]):
    global smartctl_path

    parser = argparse.ArgumentParser(
        prog=os.path.basename(argv[0]),
        exit_on_error=False,
        description=__doc__,
    )
    parser.add_argument(
        "--smartctl",
        default="smartctl",
        dest="smartctl",
        metavar="PATH",
        help="Path to the smartctl binary",
    )
    parser.add_argument(
        "-d",
        "--device",
        action="append",
        default=[],
        dest="devices",
        metavar="DEVICE",
        help="Device to query, may be repeated (default: all devices found by smartctl --scan-open)",
    )
    parser.add_argument(
        "-f",
        "--from-json",
        action="append",
        default=[],
        dest="json_files",
        metavar="FILE",
        help="Read a captured smartctl --json report instead of running smartctl, may be repeated",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        dest="verbose",
        help="Log debug messages to stderr",
    )
    parser.add_argument("--version", action="version", version="%(prog)s {0}".format(__version__))

    try:
        args = parser.parse_args(argv[1:])
    except argparse.ArgumentError as err:
        print(err, file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    smartctl_path = args.smartctl

    if args.json_files:
        collector = SmartctlCollector(lambda: read_reports(args.json_files))
    else:
        collector = SmartctlCollector(lambda: query_reports(args.devices))

    registry = CollectorRegistry()
    registry.register(collector)

    try:
        output = generate_latest(registry).decode()
    except Error as e:
        print("ERROR: {}".format(e), file=sys.stderr)
        return 1

    print(output, end="")
    return 0


def cli():
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    cli()
