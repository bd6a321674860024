"""
Schema-free JSON to Prometheus exposition-format encoder.

Every leaf of an arbitrary JSON value becomes one gauge sample:

- A non-null top-level "id" becomes label id on every sample; "id" keys are
  never emitted as metrics, at any depth.
- Booleans emit 1/0, numbers and numeric strings emit their value, any other
  primitive emits 1 with label value set to its string form.
- Array elements carry label index (deeper arrays index_1, index_2, ...);
  an empty array emits value="none".
- null is skipped.
- A "# TYPE <name> gauge" header precedes the first sample of each metric.
- Keys that convert to the same name (fooBar, foo_bar) are not merged or
  rejected: each emits its own sample, so the output can repeat a series.

Usage:
    >>> print(encode({"a": {"b": 1}}, "p_"), end="")
    # TYPE p_a gauge
    p_a{name="b"} 1
"""

import enum
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .exceptions import EncodingError

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")
_SEPARATOR_RUN = re.compile(r"_{2,}")
_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_NUMERIC_STRING = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


class NamingPolicy(enum.Enum):
    """How a nested key path becomes a metric name.

    LABELED: first path segment is the metric name, the rest is label name.
    CONCATENATED: every segment joined into the metric name, no name label.
    """

    LABELED = "labeled"
    CONCATENATED = "concatenated"


def to_snake(key: Any) -> str:
    """Convert a key to a metric/label-safe token.

    >>> to_snake("downlinkThroughputBps")
    'downlink_throughput_bps'
    >>> to_snake("-- pop ping (ms) --")
    'pop_ping_ms'
    """
    token = _CAMEL_BOUNDARY.sub(r"\1_\2", str(key))
    token = _UNSAFE_CHARS.sub("_", token)
    token = _SEPARATOR_RUN.sub("_", token)
    return token.strip("_").lower()


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def format_value(value: Any) -> str:
    """Render a number as a sample value.

    Raises:
        EncodingError: For NaN and infinities
    """
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    value = float(value)
    if not math.isfinite(value):
        raise EncodingError(f"Non-finite value {value!r} cannot be encoded")
    if value.is_integer() and abs(value) < 2**53:
        return str(int(value))
    return repr(value)


def _string_form(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return format_value(value)
    return str(value)


def _numeric(value: Any) -> Optional[Any]:
    """Return the numeric interpretation of value, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if _NUMERIC_STRING.match(text):
            number = float(text)
            if math.isfinite(number):
                return number
    return None


class MetricsEncoder:
    """
    Encodes one JSON value per call; holds no state between calls.

    Attributes:
        prefix: Prepended to every metric name
        naming: NamingPolicy for nested keys
    """

    def __init__(self, prefix: str = "starlink_", naming: NamingPolicy = NamingPolicy.LABELED):
        self.prefix = prefix
        self.naming = NamingPolicy(naming)

    def encode(self, data: Any) -> str:
        """Encode data. None and an empty top-level object, array or string yield "".

        Raises:
            EncodingError: For non-finite numbers, cyclic structures, or names
                that cannot form a valid metric name
        """
        return _Encoding(self.prefix, self.naming, data).run()


class _Encoding:
    """State of one encode() call: output lines and emitted headers."""

    def __init__(self, prefix: str, naming: NamingPolicy, data: Any):
        self.prefix = prefix
        self.naming = naming
        self.data = data
        self.lines: List[str] = []
        self.headers: Set[str] = set()
        self.active: Set[int] = set()
        self.id_label: Optional[str] = None
        if isinstance(data, dict) and data.get("id") is not None:
            self.id_label = _string_form(data["id"])

    def run(self) -> str:
        if self.data is None or (
            isinstance(self.data, (dict, list, tuple, str)) and len(self.data) == 0
        ):
            return ""
        self.walk(self.data, (), ())
        return "".join(line + "\n" for line in self.lines)

    def walk(self, node: Any, path: Tuple[str, ...], indices: Tuple[str, ...]) -> None:
        if node is None:
            return
        if isinstance(node, dict):
            with self.visiting(node):
                for key, value in node.items():
                    if key == "id":
                        continue
                    self.walk(value, path + (str(key),), indices)
        elif isinstance(node, (list, tuple)):
            if not node:
                self.emit(path, indices, 1, value_label="none")
                return
            with self.visiting(node):
                for position, element in enumerate(node):
                    self.walk(element, path, indices + (str(position),))
        else:
            self.leaf(node, path, indices)

    def leaf(self, node: Any, path: Sequence[str], indices: Sequence[str]) -> None:
        if isinstance(node, bool):
            self.emit(path, indices, 1 if node else 0)
            return
        number = _numeric(node)
        if number is not None:
            self.emit(path, indices, number)
        else:
            self.emit(path, indices, 1, value_label=_string_form(node))

    def visiting(self, container: Any) -> "_Visit":
        return _Visit(self.active, container)

    def metric_name(self, path: Sequence[str]) -> Tuple[str, Optional[str]]:
        tokens = [to_snake(segment) for segment in path]
        if not tokens:
            return self.prefix.rstrip("_:"), None

        if self.naming is NamingPolicy.CONCATENATED:
            name = "_".join(t for t in tokens if t)
            return self.prefix + name, None

        label = "_".join(t for t in tokens[1:] if t) or None
        return self.prefix + tokens[0], label

    def emit(
        self,
        path: Sequence[str],
        indices: Sequence[str],
        value: Any,
        value_label: Optional[str] = None,
    ) -> None:
        name, name_label = self.metric_name(path)
        if not _METRIC_NAME.match(name):
            raise EncodingError(
                f"Cannot derive a valid metric name from path {list(path)!r}",
                details={"name": name},
            )

        labels: Dict[str, str] = {}
        if name_label is not None:
            labels["name"] = name_label
        for depth, position in enumerate(indices):
            labels["index" if depth == 0 else f"index_{depth}"] = position
        if value_label is not None:
            labels["value"] = value_label
        if self.id_label is not None:
            labels["id"] = self.id_label

        rendered_value = format_value(value)

        if name not in self.headers:
            self.headers.add(name)
            self.lines.append(f"# TYPE {name} gauge")

        if labels:
            label_str = ",".join(f'{k}="{escape_label_value(v)}"' for k, v in labels.items())
            self.lines.append(f"{name}{{{label_str}}} {rendered_value}")
        else:
            self.lines.append(f"{name} {rendered_value}")


class _Visit:
    """Context manager guarding against cyclic containers."""

    def __init__(self, active: Set[int], container: Any):
        self.active = active
        self.key = id(container)

    def __enter__(self):
        if self.key in self.active:
            raise EncodingError("Cyclic structure cannot be encoded")
        self.active.add(self.key)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.active.discard(self.key)
        return False


def encode(
    data: Any,
    prefix: str = "starlink_",
    naming: NamingPolicy = NamingPolicy.LABELED,
) -> str:
    """Encode a JSON value as exposition-format text (see module docstring)."""
    return MetricsEncoder(prefix, naming).encode(data)
